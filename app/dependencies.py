from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, Request
from pydantic import BaseModel

from app.models import ErrorCode
from app.runtime import Runtime

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> str:
    """Caller address, honouring X-Forwarded-For only from trusted proxies."""
    runtime = get_runtime(request)
    client_host = request.client.host if request.client else ""
    ip = client_host
    xff = request.headers.get("X-Forwarded-For")
    trusted = runtime.settings.trusted_proxies
    if xff and client_host in trusted:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if forwarded and all(p in trusted for p in proxies):
            ip = forwarded[0]
    return ip


async def require_admin(
    request: Request,
    x_admin_token: str | None = Header(None, alias="X-Admin-Token"),
) -> None:
    expected = get_runtime(request).settings.admin_token
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("rejected admin call from %s", client_ip(request))
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="Invalid admin token")
        raise HTTPException(status_code=401, detail=err.model_dump())
