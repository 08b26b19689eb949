from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.dependencies import get_runtime
from app.runtime import Runtime

router = APIRouter()


@router.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)):
    keys = runtime.extractor.api_keys
    return {
        "ok": True,
        "version": "v2",
        "backend": runtime.store.backend,
        "has_env_key": bool(keys),
        "key_count": len(keys),
        "admission": runtime.gate.snapshot(),
        "idle_state": runtime.reclaimer.state.value,
        "idle_seconds": round(runtime.reclaimer.idle_seconds(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
