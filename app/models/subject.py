from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# Reported as ``remaining`` for unlimited subjects
UNLIMITED_REMAINING = 999_999


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    NORMAL = "normal"
    PRO = "pro"
    UNLIMITED = "unlimited"


class Subject(BaseModel):
    """Entitlement row of one metered identity.

    ``weekly_usage`` only counts while ``week_id`` equals the current week
    label; a stale row is reset lazily on its next consumption.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    tier: Tier = Tier.NORMAL
    weekly_usage: int = Field(0, ge=0)
    week_id: str = ""
    extra_quota: int = Field(0, ge=0)
    total_usage: int = Field(0, ge=0)
    nickname: str | None = None
    remark: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def effective_weekly_usage(self, week_id: str) -> int:
        return self.weekly_usage if self.week_id == week_id else 0


class QuotaConfig(BaseModel):
    """Global tunables read by every quota check."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    normal_weekly_limit: int = Field(10, ge=0, le=100_000)
    pro_weekly_limit: int = Field(50, ge=0, le=100_000)
    normal_max_images: int = Field(3, ge=1, le=500)
    pro_max_images: int = Field(10, ge=1, le=500)
    unlimited_max_images: int = Field(30, ge=1, le=500)

    def weekly_limit(self, tier: Tier) -> int | None:
        if tier is Tier.PRO:
            return self.pro_weekly_limit
        if tier is Tier.NORMAL:
            return self.normal_weekly_limit
        return None

    def max_images(self, tier: Tier) -> int:
        if tier is Tier.PRO:
            return self.pro_max_images
        if tier is Tier.UNLIMITED:
            return self.unlimited_max_images
        return self.normal_max_images


class QuotaDecision(BaseModel):
    allowed: bool
    reason: str | None = None
    remaining: int
    tier: Tier | None = None
    source: Literal["anonymous", "weekly", "extra", "unlimited"] | None = None


class SubjectView(BaseModel):
    """Subject as shown to operators, with rollover applied."""

    id: str
    tier: Tier
    nickname: str | None = None
    remark: str | None = None
    week_id: str
    weekly_usage: int
    weekly_limit: int | None = None
    remaining: int
    extra_quota: int
    total_usage: int
    max_images: int
    updated_at: datetime
