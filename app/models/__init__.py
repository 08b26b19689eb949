from .error_code import ErrorCode
from .subject import (
    UNLIMITED_REMAINING,
    QuotaConfig,
    QuotaDecision,
    Subject,
    SubjectView,
    Tier,
)
from .code import CodeKind, RedeemResult, RedemptionCode
from .usage_event import (
    GeoInfo,
    JournalFilter,
    JournalPage,
    SubjectAggregate,
    UsageCategory,
    UsageEvent,
)

__all__ = [
    "ErrorCode",
    "UNLIMITED_REMAINING",
    "QuotaConfig",
    "QuotaDecision",
    "Subject",
    "SubjectView",
    "Tier",
    "CodeKind",
    "RedeemResult",
    "RedemptionCode",
    "GeoInfo",
    "JournalFilter",
    "JournalPage",
    "SubjectAggregate",
    "UsageCategory",
    "UsageEvent",
]
