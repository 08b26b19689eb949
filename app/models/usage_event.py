from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UsageCategory(str, Enum):
    IMAGE = "image"
    IMAGE_BASE64 = "image_base64"
    IMAGE_BATCH = "image_batch"
    EXCEL_HEADER = "excel_header"


class GeoInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    country: str | None = None
    region: str | None = None
    city: str | None = None
    isp: str | None = None


class UsageEvent(BaseModel):
    """Immutable journal record of one admitted operation."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    timestamp: datetime
    subject_key: str
    subject_id: str | None = None
    nickname: str | None = None
    category: UsageCategory
    network_origin: str | None = None
    geo: GeoInfo | None = None
    image_count: int | None = None
    item_count: int | None = None
    duration_ms: int | None = None
    outcome: str = "ok"
    subject_calls: int = 0
    subject_items: int = 0


class JournalFilter(BaseModel):
    subject: str | None = None
    category: UsageCategory | None = None
    outcome: str | None = None


class SubjectAggregate(BaseModel):
    subject_key: str
    calls: int = 0
    items: int = 0
    last_seen: datetime | None = None


class JournalPage(BaseModel):
    items: list[UsageEvent]
    page: int
    page_size: int
    total: int
    subjects: list[SubjectAggregate] = Field(default_factory=list)
