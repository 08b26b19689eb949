"""Capped usage journal for the admin analytics view.

The journal lives in memory as a bounded deque mirrored to the store as one
JSON blob. Writes are fire-and-forget; losing one only loses analytics.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from collections import deque
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

from app.models import (
    GeoInfo,
    JournalFilter,
    JournalPage,
    SubjectAggregate,
    UsageCategory,
    UsageEvent,
)
from app.services.persistence import PersistenceFacade, days

logger = logging.getLogger(__name__)

_events_adapter = TypeAdapter(list[UsageEvent])


def new_event_id(ts: datetime) -> str:
    """Millisecond timestamp plus random suffix; sorts by creation time."""
    return f"{int(ts.timestamp() * 1000):013d}-{secrets.token_hex(3)}"


def subject_key_for(
    subject_id: str | None, nickname: str | None, network_origin: str | None
) -> str:
    return nickname or subject_id or network_origin or "unknown"


class UsageJournal:
    def __init__(
        self,
        store: PersistenceFacade,
        *,
        prefix: str = "labscan",
        max_entries: int = 500,
        ttl: int = days(21),
    ) -> None:
        self.store = store
        self.key = f"{prefix}:journal"
        self.max_entries = max_entries
        self.ttl = ttl
        self._entries: deque[UsageEvent] | None = None
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._version = 0
        self._written_version = 0
        self._pending: set[asyncio.Task[None]] = set()
        self.loads = 0

    @property
    def loaded(self) -> bool:
        return self._entries is not None

    async def _ensure_loaded(self) -> deque[UsageEvent]:
        if self._entries is not None:
            return self._entries
        async with self._load_lock:
            if self._entries is None:
                raw = await self.store.get(self.key)
                events: list[UsageEvent] = []
                if raw:
                    try:
                        events = _events_adapter.validate_json(raw)
                    except ValidationError:
                        logger.exception("Journal blob is corrupt, starting empty")
                self._entries = deque(events[-self.max_entries :], maxlen=self.max_entries)
                self.loads += 1
            return self._entries

    async def append(
        self,
        *,
        category: UsageCategory,
        subject_id: str | None = None,
        nickname: str | None = None,
        network_origin: str | None = None,
        geo: GeoInfo | None = None,
        image_count: int | None = None,
        item_count: int | None = None,
        duration_ms: int | None = None,
        outcome: str = "ok",
        timestamp: datetime | None = None,
    ) -> UsageEvent:
        entries = await self._ensure_loaded()
        ts = timestamp or datetime.now(timezone.utc)
        key = subject_key_for(subject_id, nickname, network_origin)

        calls, items = 1, item_count or 0
        for event in entries:
            if event.subject_key == key:
                calls += 1
                items += event.item_count or 0

        event = UsageEvent(
            id=new_event_id(ts),
            timestamp=ts,
            subject_key=key,
            subject_id=subject_id,
            nickname=nickname,
            category=category,
            network_origin=network_origin,
            geo=geo,
            image_count=image_count,
            item_count=item_count,
            duration_ms=duration_ms,
            outcome=outcome,
            subject_calls=calls,
            subject_items=items,
        )
        # deque(maxlen) drops the oldest entry on overflow
        entries.append(event)
        self._schedule_persist(entries)
        return event

    async def query_page(
        self,
        flt: JournalFilter | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> JournalPage:
        flt = flt or JournalFilter()
        page = max(page, 1)
        page_size = min(max(page_size, 1), 500)
        entries = await self._ensure_loaded()

        needle = (flt.subject or "").lower()
        matched = [
            e
            for e in reversed(entries)
            if (not needle or needle in e.subject_key.lower())
            and (flt.category is None or e.category == flt.category)
            and (flt.outcome is None or e.outcome == flt.outcome)
        ]

        aggregates: dict[str, SubjectAggregate] = {}
        for event in matched:
            agg = aggregates.setdefault(event.subject_key, SubjectAggregate(subject_key=event.subject_key))
            agg.calls += 1
            agg.items += event.item_count or 0
            if agg.last_seen is None or event.timestamp > agg.last_seen:
                agg.last_seen = event.timestamp

        start = (page - 1) * page_size
        return JournalPage(
            items=matched[start : start + page_size],
            page=page,
            page_size=page_size,
            total=len(matched),
            subjects=sorted(aggregates.values(), key=lambda a: a.calls, reverse=True),
        )

    async def purge(self) -> int:
        entries = await self._ensure_loaded()
        count = len(entries)
        entries.clear()
        await self.flush()
        self._version += 1
        async with self._write_lock:
            await self.store.delete(self.key)
            self._written_version = self._version
        logger.info("journal purged (%s entries)", count)
        return count

    def evict(self) -> bool:
        """Drop the in-memory mirror; the next access reloads it.

        Refused while a persist is still in flight so the reload cannot
        observe an older blob.
        """
        if self._entries is None:
            return False
        if self._pending or self._written_version != self._version:
            return False
        self._entries = None
        return True

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Internal helpers -------------------------------------------------

    def _schedule_persist(self, entries: deque[UsageEvent]) -> None:
        self._version += 1
        version = self._version
        payload = _events_adapter.dump_json(list(entries)).decode()
        task = asyncio.create_task(self._persist(version, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, version: int, payload: str) -> None:
        async with self._write_lock:
            if version <= self._written_version:
                return
            ok = await self.store.set_with_expiry(self.key, payload, self.ttl)
            if not ok:
                logger.warning("usage journal v%s kept in memory only", version)
                return
            self._written_version = version


__all__ = ["UsageJournal", "new_event_id", "subject_key_for"]
