from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.dependencies import ErrorResponse, get_runtime
from app.models import ErrorCode, RedeemResult, SubjectView
from app.runtime import Runtime

router = APIRouter()


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    client_id: str = Field(..., min_length=1, max_length=128)
    nickname: str | None = Field(None, max_length=64)


@router.get(
    "/quota/{client_id}",
    response_model=SubjectView,
)
async def quota_status(client_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.ledger.status(client_id)


@router.post(
    "/redeem",
    response_model=RedeemResult,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def redeem(body: RedeemRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.codes.redeem(body.code, body.client_id, body.nickname)
    if result.reason == "conflict":
        err = ErrorResponse(
            code=ErrorCode.STORE_CONFLICT, message="Store busy, please retry"
        )
        return JSONResponse(status_code=503, content=err.model_dump())
    if not result.success:
        err = ErrorResponse(
            code=ErrorCode.CODE_NOT_FOUND, message="Code not found or already used"
        )
        return JSONResponse(status_code=404, content=err.model_dump())
    return result
