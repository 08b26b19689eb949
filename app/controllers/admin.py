from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from app.dependencies import ErrorResponse, get_runtime, require_admin
from app.models import (
    CodeKind,
    ErrorCode,
    JournalFilter,
    JournalPage,
    QuotaConfig,
    RedemptionCode,
    SubjectView,
    Tier,
    UsageCategory,
)
from app.runtime import Runtime
from app.services.codes import MAX_BATCH

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(require_admin)],
    responses={401: {"model": ErrorResponse}},
)


class TierUpdate(BaseModel):
    tier: Tier


class ExtraQuotaUpdate(BaseModel):
    amount: int = Field(..., gt=0, le=100_000)


class RemarkUpdate(BaseModel):
    remark: str | None = Field(None, max_length=200)


class ConfigUpdate(BaseModel):
    normal_weekly_limit: int | None = None
    pro_weekly_limit: int | None = None
    normal_max_images: int | None = None
    pro_max_images: int | None = None
    unlimited_max_images: int | None = None


class GenerateCodesRequest(BaseModel):
    kind: CodeKind
    amount: int | None = Field(None, gt=0, le=100_000)
    count: int = Field(1, ge=1, le=MAX_BATCH)
    remark: str | None = Field(None, max_length=200)


def _bad_request(message: str) -> HTTPException:
    err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message=message)
    return HTTPException(status_code=400, detail=err.model_dump())


def _not_found(message: str) -> HTTPException:
    err = ErrorResponse(code=ErrorCode.NOT_FOUND, message=message)
    return HTTPException(status_code=404, detail=err.model_dump())


# Subjects ---------------------------------------------------------------


@router.get("/subjects", response_model=list[SubjectView])
async def list_subjects(runtime: Runtime = Depends(get_runtime)):
    return await runtime.ledger.list_subjects()


@router.post("/subjects/{subject_id}/tier", response_model=SubjectView)
async def set_tier(
    subject_id: str, body: TierUpdate, runtime: Runtime = Depends(get_runtime)
):
    view = await runtime.ledger.set_tier(subject_id, body.tier)
    logger.info("admin set tier of %s to %s", subject_id, body.tier.value)
    return view


@router.post("/subjects/{subject_id}/extra", response_model=SubjectView)
async def add_extra_quota(
    subject_id: str, body: ExtraQuotaUpdate, runtime: Runtime = Depends(get_runtime)
):
    view = await runtime.ledger.add_extra_quota(subject_id, body.amount)
    logger.info("admin granted %s extra to %s", body.amount, subject_id)
    return view


@router.post("/subjects/{subject_id}/remark", response_model=SubjectView)
async def set_subject_remark(
    subject_id: str, body: RemarkUpdate, runtime: Runtime = Depends(get_runtime)
):
    return await runtime.ledger.set_remark(subject_id, body.remark)


@router.delete("/subjects/{subject_id}")
async def purge_subject(subject_id: str, runtime: Runtime = Depends(get_runtime)):
    if not await runtime.ledger.purge_subject(subject_id):
        raise _not_found("Subject not found")
    return {"deleted": subject_id}


# Config -----------------------------------------------------------------


@router.get("/config", response_model=QuotaConfig)
async def get_config(runtime: Runtime = Depends(get_runtime)):
    return await runtime.ledger.get_config()


@router.put("/config", response_model=QuotaConfig)
async def update_config(body: ConfigUpdate, runtime: Runtime = Depends(get_runtime)):
    try:
        return await runtime.ledger.update_config(**body.model_dump())
    except ValidationError as exc:
        message = "; ".join(e.get("msg", "") for e in exc.errors())
        raise _bad_request(message) from exc


# Codes ------------------------------------------------------------------


@router.get("/codes", response_model=list[RedemptionCode])
async def list_codes(runtime: Runtime = Depends(get_runtime)):
    return await runtime.codes.list_codes()


@router.post("/codes", response_model=list[RedemptionCode])
async def generate_codes(
    body: GenerateCodesRequest, runtime: Runtime = Depends(get_runtime)
):
    try:
        return await runtime.codes.generate(body.kind, body.amount, body.count, body.remark)
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc


@router.delete("/codes/{code}")
async def delete_code(code: str, runtime: Runtime = Depends(get_runtime)):
    if not await runtime.codes.delete(code):
        raise _not_found("Code not found")
    return {"deleted": code}


@router.post("/codes/{code}/remark", response_model=RedemptionCode)
async def set_code_remark(
    code: str, body: RemarkUpdate, runtime: Runtime = Depends(get_runtime)
):
    updated = await runtime.codes.set_remark(code, body.remark)
    if updated is None:
        raise _not_found("Code not found")
    return updated


# Usage journal ----------------------------------------------------------


@router.get("/usage", response_model=JournalPage)
async def list_usage(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    subject: str | None = None,
    category: UsageCategory | None = None,
    outcome: str | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    flt = JournalFilter(subject=subject, category=category, outcome=outcome)
    return await runtime.journal.query_page(flt, page, page_size)


@router.delete("/usage")
async def purge_usage(runtime: Runtime = Depends(get_runtime)):
    return {"deleted": await runtime.journal.purge()}
