from prometheus_client import Counter, Histogram, Gauge
# Prometheus metrics definitions

# Extraction requests that reached the inference call, by endpoint category
analyze_requests_total = Counter(
    "analyze_requests_total", "Total extraction requests", ["category"]
)

# latency histogram covers the admission wait plus the inference call
_analyze_latency_buckets = (
    0.5,
    1.0,
    2.0,
    4.0,
    8.0,
    16.0,
    32.0,
    64.0,
)

analyze_latency_seconds = Histogram(
    "analyze_latency_seconds",
    "Extraction latency",
    buckets=_analyze_latency_buckets,
)

# Quota rejects when the weekly allotment and extra quota are both spent
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Incremented when the inference call exceeds its timeout
inference_timeout_total = Counter(
    "inference_timeout_total", "Number of inference timeouts"
)

inference_error_total = Counter(
    "inference_error_total", "Inference failures by error code", ["code"]
)

# Admission gate occupancy
admission_active = Gauge(
    "admission_active", "Heavy operations currently holding an admission slot"
)
admission_waiting = Gauge(
    "admission_waiting", "Heavy operations queued for an admission slot"
)

# Remote store failures served from the local file store instead
persistence_fallback_total = Counter(
    "persistence_fallback_total", "Remote store calls served by the fallback", ["op"]
)

# WATCH conflicts retried during read-modify-write
persistence_conflict_total = Counter(
    "persistence_conflict_total", "Optimistic transaction conflicts"
)

code_redeem_total = Counter(
    "code_redeem_total", "Redemption attempts by result", ["result"]
)

idle_reclaim_total = Counter(
    "idle_reclaim_total", "Idle reclamation passes by tier", ["tier"]
)

__all__ = [
    "analyze_requests_total",
    "analyze_latency_seconds",
    "quota_reject_total",
    "inference_timeout_total",
    "inference_error_total",
    "admission_active",
    "admission_waiting",
    "persistence_fallback_total",
    "persistence_conflict_total",
    "code_redeem_total",
    "idle_reclaim_total",
]
