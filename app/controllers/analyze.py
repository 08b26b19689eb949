from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import (
    APIRouter,
    BackgroundTasks,
    File,
    Form,
    Header,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.dependencies import ErrorResponse, client_ip, get_runtime
from app.metrics import (
    analyze_latency_seconds,
    analyze_requests_total,
    inference_error_total,
    inference_timeout_total,
    quota_reject_total,
)
from app.models import ErrorCode, QuotaDecision, UsageCategory
from app.runtime import Runtime
from app.services.vision import InferenceError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024

router = APIRouter()


class ImageBase64Request(BaseModel):
    base64: str = Field(..., min_length=1)
    mime_type: str | None = None
    client_id: str | None = None
    nickname: str | None = None


class ExcelHeaderRequest(BaseModel):
    headers: list[str] = Field(..., min_length=1)
    client_id: str | None = None
    nickname: str | None = None


def _error(status: int, code: ErrorCode, message: str, **extra: Any) -> JSONResponse:
    err = ErrorResponse(code=code, message=message)
    return JSONResponse(status_code=status, content={**err.model_dump(), **extra})


def _quota_denied(decision: QuotaDecision) -> JSONResponse:
    quota_reject_total.inc()
    return _error(
        402,
        ErrorCode.QUOTA_EXCEEDED,
        "Weekly quota exhausted",
        remaining=0,
        tier=decision.tier.value if decision.tier else None,
    )


def _item_count(payload: dict[str, Any]) -> int | None:
    items = payload.get("items")
    return len(items) if isinstance(items, list) else None


async def _record_usage(
    runtime: Runtime,
    *,
    category: UsageCategory,
    subject_id: str | None,
    nickname: str | None,
    ip: str,
    image_count: int | None,
    item_count: int | None,
    duration_ms: int,
    outcome: str,
) -> None:
    geo = await runtime.geo.lookup(ip)
    await runtime.journal.append(
        category=category,
        subject_id=subject_id,
        nickname=nickname,
        network_origin=ip or None,
        geo=geo,
        image_count=image_count,
        item_count=item_count,
        duration_ms=duration_ms,
        outcome=outcome,
    )


async def _run_admitted(
    request: Request,
    background: BackgroundTasks,
    *,
    category: UsageCategory,
    subject_id: str | None,
    nickname: str | None,
    image_count: int | None,
    call: Callable[[], Awaitable[Any]],
    decision: QuotaDecision | None = None,
) -> JSONResponse | Any:
    """Hold an admission slot around ``call`` and journal the outcome."""
    runtime = get_runtime(request)
    ip = client_ip(request)
    runtime.reclaimer.touch()
    analyze_requests_total.labels(category=category.value).inc()

    start = time.perf_counter()
    outcome = "error"
    result: Any = None
    try:
        async with runtime.gate.slot():
            result = await call()
        outcome = "ok"
    except asyncio.TimeoutError:
        inference_timeout_total.inc()
        logger.warning("inference timed out (%s, subject %s)", category.value, subject_id)
        return _error(504, ErrorCode.INFERENCE_TIMEOUT, "Inference timed out")
    except InferenceError as exc:
        inference_error_total.labels(code=exc.code).inc()
        if exc.code == "NO_API_KEY":
            return _error(400, ErrorCode.NO_API_KEY, str(exc))
        if exc.code == "RATE_LIMIT":
            return _error(429, ErrorCode.RATE_LIMIT, str(exc))
        return _error(502, ErrorCode.INFERENCE_FAILED, str(exc))
    finally:
        elapsed = time.perf_counter() - start
        analyze_latency_seconds.observe(elapsed)
        runtime.reclaimer.touch()
        items = None
        if isinstance(result, dict):
            items = _item_count(result)
        elif isinstance(result, list):
            items = sum(_item_count(r) or 0 for r in result)
        background.add_task(
            _record_usage,
            runtime,
            category=category,
            subject_id=subject_id,
            nickname=nickname,
            ip=ip,
            image_count=image_count,
            item_count=items,
            duration_ms=int(elapsed * 1000),
            outcome=outcome,
        )

    if decision is not None and isinstance(result, dict):
        result = {**result, "quota": decision.model_dump(mode="json")}
    return result


@router.post(
    "/analyze/image",
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def analyze_image(
    request: Request,
    background: BackgroundTasks,
    file: UploadFile | None = File(None),
    client_id: str | None = Form(None),
    nickname: str | None = Form(None),
    x_gemini_api_key: str | None = Header(None, alias="X-Gemini-Api-Key"),
):
    if file is None:
        return _error(400, ErrorCode.BAD_REQUEST, "file is required")
    contents = await file.read(MAX_IMAGE_BYTES + 1)
    if len(contents) > MAX_IMAGE_BYTES:
        return _error(413, ErrorCode.BAD_REQUEST, "image too large")

    runtime = get_runtime(request)
    decision = await runtime.ledger.check_and_consume(client_id, nickname)
    if not decision.allowed:
        return _quota_denied(decision)

    return await _run_admitted(
        request,
        background,
        category=UsageCategory.IMAGE,
        subject_id=client_id,
        nickname=nickname,
        image_count=1,
        decision=decision,
        call=lambda: runtime.extractor.extract_record(
            contents, file.content_type, header_key=x_gemini_api_key
        ),
    )


@router.post(
    "/analyze/image-base64",
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def analyze_image_base64(
    request: Request,
    background: BackgroundTasks,
    body: ImageBase64Request,
    x_gemini_api_key: str | None = Header(None, alias="X-Gemini-Api-Key"),
):
    data = body.base64
    # drop a data URL prefix such as "data:image/png;base64,"
    if "," in data:
        data = data.split(",", 1)[1]
    # strip line wrapping and spaces
    data = "".join(data.split())
    if len(data) > ((MAX_IMAGE_BYTES + 2) // 3) * 4:
        return _error(413, ErrorCode.BAD_REQUEST, "image too large")
    try:
        contents = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return _error(400, ErrorCode.BAD_REQUEST, "invalid base64 image")

    runtime = get_runtime(request)
    decision = await runtime.ledger.check_and_consume(body.client_id, body.nickname)
    if not decision.allowed:
        return _quota_denied(decision)

    return await _run_admitted(
        request,
        background,
        category=UsageCategory.IMAGE_BASE64,
        subject_id=body.client_id,
        nickname=body.nickname,
        image_count=1,
        decision=decision,
        call=lambda: runtime.extractor.extract_record(
            contents, body.mime_type, header_key=x_gemini_api_key
        ),
    )


@router.post(
    "/analyze/images",
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def analyze_images(
    request: Request,
    background: BackgroundTasks,
    files: list[UploadFile] = File(...),
    client_id: str | None = Form(None),
    nickname: str | None = Form(None),
    x_gemini_api_key: str | None = Header(None, alias="X-Gemini-Api-Key"),
):
    runtime = get_runtime(request)
    if client_id:
        cap = (await runtime.ledger.status(client_id)).max_images
    else:
        cap = (await runtime.ledger.get_config()).normal_max_images
    if len(files) > cap:
        return _error(
            400, ErrorCode.TOO_MANY_IMAGES, f"at most {cap} images per request", limit=cap
        )

    images: list[tuple[bytes, str | None]] = []
    for upload in files:
        contents = await upload.read(MAX_IMAGE_BYTES + 1)
        if len(contents) > MAX_IMAGE_BYTES:
            return _error(413, ErrorCode.BAD_REQUEST, "image too large")
        images.append((contents, upload.content_type))

    decision = await runtime.ledger.check_and_consume(client_id, nickname)
    if not decision.allowed:
        return _quota_denied(decision)

    async def _extract_all() -> list[dict[str, Any]]:
        records = []
        for contents, mime_type in images:
            records.append(
                await runtime.extractor.extract_record(
                    contents, mime_type, header_key=x_gemini_api_key
                )
            )
        return records

    result = await _run_admitted(
        request,
        background,
        category=UsageCategory.IMAGE_BATCH,
        subject_id=client_id,
        nickname=nickname,
        image_count=len(images),
        call=_extract_all,
    )
    if isinstance(result, JSONResponse):
        return result
    return {"records": result, "quota": decision.model_dump(mode="json")}


@router.post(
    "/analyze/excel-header",
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def analyze_excel_header(
    request: Request,
    background: BackgroundTasks,
    body: ExcelHeaderRequest,
    x_gemini_api_key: str | None = Header(None, alias="X-Gemini-Api-Key"),
):
    runtime = get_runtime(request)
    return await _run_admitted(
        request,
        background,
        category=UsageCategory.EXCEL_HEADER,
        subject_id=body.client_id,
        nickname=body.nickname,
        image_count=None,
        call=lambda: runtime.extractor.map_excel_header(
            body.headers, header_key=x_gemini_api_key
        ),
    )
