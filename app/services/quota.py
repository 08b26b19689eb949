"""Per-subject weekly quota ledger.

Normal and pro subjects get a weekly allotment that rolls over lazily when
the ISO week label changes; once it is spent, one-time extra quota granted
by redemption codes is drawn down. Unlimited subjects are only counted.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter, ValidationError

from app.models import (
    UNLIMITED_REMAINING,
    CodeKind,
    QuotaConfig,
    QuotaDecision,
    RedemptionCode,
    Subject,
    SubjectView,
    Tier,
)
from app.services.persistence import PersistenceFacade, WriteConflict, days

logger = logging.getLogger(__name__)

_subjects_adapter = TypeAdapter(dict[str, Subject])


def get_iso_week_key(dt: datetime | None = None) -> str:
    """Get ISO week key in format YYYY-Www (e.g., 2026-W01).

    The ISO year is used, so keys sort chronologically across year
    boundaries (2026-W53 < 2027-W01).
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    iso_cal = dt.isocalendar()
    return f"{iso_cal.year}-W{iso_cal.week:02d}"


def _load_subjects(raw: str | None) -> dict[str, Subject] | None:
    """Decode the ledger blob; ``None`` means it is unreadable."""
    if not raw:
        return {}
    try:
        return _subjects_adapter.validate_json(raw)
    except ValidationError:
        logger.exception("Subjects blob is corrupt; refusing to overwrite it")
        return None


def _dump_subjects(subjects: dict[str, Subject]) -> str:
    return _subjects_adapter.dump_json(subjects).decode()


class QuotaLedger:
    def __init__(
        self,
        store: PersistenceFacade,
        defaults: QuotaConfig | None = None,
        *,
        prefix: str = "labscan",
        subjects_ttl: int = days(30),
        config_ttl: int = days(30),
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.defaults = defaults or QuotaConfig()
        self.subjects_key = f"{prefix}:subjects"
        self.config_key = f"{prefix}:config"
        self.subjects_ttl = subjects_ttl
        self.config_ttl = config_ttl
        self._tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def current_week(self) -> str:
        return get_iso_week_key(self.now().astimezone(self._tz))

    # Config -----------------------------------------------------------

    async def get_config(self) -> QuotaConfig:
        raw = await self.store.get(self.config_key)
        if not raw:
            return self.defaults
        try:
            stored = QuotaConfig.model_validate_json(raw)
        except ValidationError:
            logger.exception("Stored quota config is invalid, using defaults")
            return self.defaults
        return self.defaults.model_copy(update=stored.model_dump(exclude_unset=True))

    async def update_config(self, **changes: Any) -> QuotaConfig:
        """Apply bounded changes to the global limits.

        Raises ``pydantic.ValidationError`` when a value is out of range.
        """
        current = await self.get_config()
        updated = QuotaConfig.model_validate(
            {**current.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
        )
        await self.store.set_with_expiry(
            self.config_key, updated.model_dump_json(), self.config_ttl
        )
        logger.info("quota config updated: %s", updated.model_dump())
        return updated

    # Metering ---------------------------------------------------------

    async def check_and_consume(
        self, subject_id: str | None, nickname: str | None = None
    ) -> QuotaDecision:
        if not subject_id:
            return QuotaDecision(allowed=True, reason="anonymous", remaining=1, source="anonymous")

        config = await self.get_config()
        week = self.current_week()
        now = self.now()

        def _consume(raw: str | None) -> tuple[str | None, QuotaDecision]:
            subjects = _load_subjects(raw)
            if subjects is None:
                return None, QuotaDecision(
                    allowed=True, reason="ledger_unreadable", remaining=1, source="anonymous"
                )
            subject = subjects.get(subject_id) or Subject(
                id=subject_id, week_id=week, created_at=now, updated_at=now
            )
            if nickname:
                subject.nickname = nickname

            if subject.tier is Tier.UNLIMITED:
                subject.total_usage += 1
                decision = QuotaDecision(
                    allowed=True,
                    remaining=UNLIMITED_REMAINING,
                    tier=subject.tier,
                    source="unlimited",
                )
            else:
                if subject.week_id != week:
                    subject.weekly_usage = 0
                    subject.week_id = week
                limit = config.weekly_limit(subject.tier) or 0
                if subject.weekly_usage < limit:
                    subject.weekly_usage += 1
                    subject.total_usage += 1
                    decision = QuotaDecision(
                        allowed=True,
                        remaining=limit - subject.weekly_usage,
                        tier=subject.tier,
                        source="weekly",
                    )
                elif subject.extra_quota > 0:
                    subject.extra_quota -= 1
                    subject.total_usage += 1
                    decision = QuotaDecision(
                        allowed=True,
                        remaining=subject.extra_quota,
                        tier=subject.tier,
                        source="extra",
                    )
                else:
                    decision = QuotaDecision(
                        allowed=False,
                        reason="quota_exceeded",
                        remaining=0,
                        tier=subject.tier,
                    )
            subject.updated_at = now
            subjects[subject_id] = subject
            return _dump_subjects(subjects), decision

        try:
            decision = await self.store.update(self.subjects_key, _consume, self.subjects_ttl)
        except WriteConflict as exc:
            # decision stands; this use went unrecorded
            decision = exc.result
        if not decision.allowed:
            logger.info("quota exceeded for subject %s", subject_id)
        return decision

    async def status(self, subject_id: str) -> SubjectView:
        """Current entitlement of a subject without consuming anything."""
        config = await self.get_config()
        subjects = _load_subjects(await self.store.get(self.subjects_key)) or {}
        subject = subjects.get(subject_id) or Subject(id=subject_id, week_id=self.current_week())
        return self._view(subject, config, self.current_week())

    async def list_subjects(self) -> list[SubjectView]:
        config = await self.get_config()
        week = self.current_week()
        subjects = _load_subjects(await self.store.get(self.subjects_key)) or {}
        views = [self._view(s, config, week) for s in subjects.values()]
        views.sort(key=lambda v: v.updated_at, reverse=True)
        return views

    # Administration ---------------------------------------------------

    async def set_tier(self, subject_id: str, tier: Tier | str) -> SubjectView:
        tier = Tier(tier)

        def _apply(subject: Subject) -> None:
            subject.tier = tier

        return await self._modify(subject_id, _apply)

    async def add_extra_quota(self, subject_id: str, amount: int) -> SubjectView:
        if amount <= 0:
            raise ValueError("amount must be positive")

        def _apply(subject: Subject) -> None:
            subject.extra_quota += amount

        return await self._modify(subject_id, _apply)

    async def set_remark(self, subject_id: str, remark: str | None) -> SubjectView:
        def _apply(subject: Subject) -> None:
            subject.remark = remark or None

        return await self._modify(subject_id, _apply)

    async def apply_redemption(
        self, subject_id: str, nickname: str | None, code: RedemptionCode
    ) -> SubjectView:
        def _apply(subject: Subject) -> None:
            if code.kind is CodeKind.UNLIMITED_UPGRADE:
                subject.tier = Tier.UNLIMITED
            elif code.kind is CodeKind.PRO_UPGRADE:
                # never downgrade an unlimited subject
                if subject.tier is not Tier.UNLIMITED:
                    subject.tier = Tier.PRO
            else:
                subject.extra_quota += code.amount or 0

        return await self._modify(subject_id, _apply, nickname=nickname)

    async def purge_subject(self, subject_id: str) -> bool:
        def _purge(raw: str | None) -> tuple[str | None, bool]:
            subjects = _load_subjects(raw)
            if not subjects or subject_id not in subjects:
                return None, False
            del subjects[subject_id]
            return _dump_subjects(subjects), True

        removed = await self.store.update(self.subjects_key, _purge, self.subjects_ttl)
        if removed:
            logger.info("subject %s purged", subject_id)
        return removed

    # Internal helpers -------------------------------------------------

    async def _modify(
        self,
        subject_id: str,
        apply: Callable[[Subject], None],
        *,
        nickname: str | None = None,
    ) -> SubjectView:
        if not subject_id:
            raise ValueError("subject id is required")
        config = await self.get_config()
        week = self.current_week()
        now = self.now()

        def _mutate(raw: str | None) -> tuple[str | None, Subject]:
            subjects = _load_subjects(raw)
            writable = subjects is not None
            subjects = subjects or {}
            subject = subjects.get(subject_id) or Subject(
                id=subject_id, week_id=week, created_at=now, updated_at=now
            )
            subject = subject.model_copy(deep=True)
            if nickname:
                subject.nickname = nickname
            apply(subject)
            subject.updated_at = now
            if not writable:
                return None, subject
            subjects[subject_id] = subject
            return _dump_subjects(subjects), subject

        subject = await self.store.update(self.subjects_key, _mutate, self.subjects_ttl)
        return self._view(subject, config, week)

    @staticmethod
    def _view(subject: Subject, config: QuotaConfig, week: str) -> SubjectView:
        used = subject.effective_weekly_usage(week)
        limit = config.weekly_limit(subject.tier)
        if limit is None:
            remaining = UNLIMITED_REMAINING
        else:
            remaining = max(limit - used, 0) + subject.extra_quota
        return SubjectView(
            id=subject.id,
            tier=subject.tier,
            nickname=subject.nickname,
            remark=subject.remark,
            week_id=week,
            weekly_usage=used,
            weekly_limit=limit,
            remaining=remaining,
            extra_quota=subject.extra_quota,
            total_usage=subject.total_usage,
            max_images=config.max_images(subject.tier),
            updated_at=subject.updated_at,
        )


__all__ = ["QuotaLedger", "get_iso_week_key"]
