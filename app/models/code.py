from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .subject import SubjectView


class CodeKind(str, Enum):
    GRANT = "grant"
    PRO_UPGRADE = "pro_upgrade"
    UNLIMITED_UPGRADE = "unlimited_upgrade"


class RedemptionCode(BaseModel):
    """Single-use code; presence in the registry means it is unredeemed."""

    model_config = ConfigDict(extra="ignore")

    code: str
    kind: CodeKind
    amount: int | None = Field(None, gt=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    remark: str | None = None

    @model_validator(mode="after")
    def _grant_needs_amount(self) -> "RedemptionCode":
        if self.kind is CodeKind.GRANT and not self.amount:
            raise ValueError("grant codes require a positive amount")
        if self.kind is not CodeKind.GRANT:
            self.amount = None
        return self


class RedeemResult(BaseModel):
    success: bool
    reason: str | None = None
    kind: CodeKind | None = None
    amount: int | None = None
    subject: SubjectView | None = None
