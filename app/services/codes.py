from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

from app.metrics import code_redeem_total
from app.models import CodeKind, RedeemResult, RedemptionCode
from app.services.persistence import PersistenceFacade, WriteConflict, days
from app.services.quota import QuotaLedger

logger = logging.getLogger(__name__)

# no 0/O or 1/I/L so codes survive being read aloud or retyped
_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MAX_BATCH = 100

_codes_adapter = TypeAdapter(dict[str, RedemptionCode])


def _load_codes(raw: str | None) -> dict[str, RedemptionCode] | None:
    if not raw:
        return {}
    try:
        return _codes_adapter.validate_json(raw)
    except ValidationError:
        logger.exception("Codes blob is corrupt; refusing to overwrite it")
        return None


def _dump_codes(codes: dict[str, RedemptionCode]) -> str:
    return _codes_adapter.dump_json(codes).decode()


def _chunk(length: int = 4) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def format_code(kind: CodeKind, amount: int | None = None) -> str:
    if kind is CodeKind.UNLIMITED_UPGRADE:
        head = "VIP"
    elif kind is CodeKind.PRO_UPGRADE:
        head = "PRO"
    else:
        head = f"Q{amount}"
    return f"{head}-{_chunk()}-{_chunk()}"


def _lookup(codes: dict[str, RedemptionCode], code: str) -> str | None:
    """Exact match first, then upper- and lower-cased spellings."""
    for candidate in (code, code.upper(), code.lower()):
        if candidate in codes:
            return candidate
    return None


class RedemptionCodeRegistry:
    def __init__(
        self,
        store: PersistenceFacade,
        ledger: QuotaLedger,
        *,
        prefix: str = "labscan",
        ttl: int = days(30),
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.key = f"{prefix}:codes"
        self.ttl = ttl

    async def generate(
        self,
        kind: CodeKind | str,
        amount: int | None = None,
        count: int = 1,
        remark: str | None = None,
    ) -> list[RedemptionCode]:
        kind = CodeKind(kind)
        if not 1 <= count <= MAX_BATCH:
            raise ValueError(f"count must be between 1 and {MAX_BATCH}")
        now = datetime.now(timezone.utc)
        # validates the amount once before touching the store
        RedemptionCode(code="probe", kind=kind, amount=amount)

        def _mint(raw: str | None) -> tuple[str | None, list[RedemptionCode]]:
            codes = _load_codes(raw)
            if codes is None:
                return None, []
            minted: list[RedemptionCode] = []
            while len(minted) < count:
                token = format_code(kind, amount)
                if token in codes:
                    continue
                entry = RedemptionCode(
                    code=token, kind=kind, amount=amount, created_at=now, remark=remark
                )
                codes[token] = entry
                minted.append(entry)
            return _dump_codes(codes), minted

        minted = await self.store.update(self.key, _mint, self.ttl)
        logger.info("generated %s %s code(s)", len(minted), kind.value)
        return minted

    async def list_codes(self) -> list[RedemptionCode]:
        codes = _load_codes(await self.store.get(self.key)) or {}
        return sorted(codes.values(), key=lambda c: c.created_at, reverse=True)

    async def redeem(
        self, code: str, subject_id: str, nickname: str | None = None
    ) -> RedeemResult:
        """Consume ``code`` for ``subject_id``.

        The code is removed from the registry first, in one atomic update;
        only the caller that removed it goes on to change the subject, so
        two simultaneous redemptions cannot both succeed.
        """
        code = (code or "").strip()
        if not code or not subject_id:
            code_redeem_total.labels(result="invalid").inc()
            return RedeemResult(success=False, reason="not_found")

        def _take(raw: str | None) -> tuple[str | None, RedemptionCode | None]:
            codes = _load_codes(raw)
            if not codes:
                return None, None
            found = _lookup(codes, code)
            if found is None:
                return None, None
            entry = codes.pop(found)
            return _dump_codes(codes), entry

        try:
            entry = await self.store.update(self.key, _take, self.ttl)
        except WriteConflict:
            code_redeem_total.labels(result="conflict").inc()
            logger.warning("redeem of %s by subject %s lost to concurrent writes", code, subject_id)
            return RedeemResult(success=False, reason="conflict")
        if entry is None:
            code_redeem_total.labels(result="not_found").inc()
            logger.info("redeem failed: code %s not found (subject %s)", code, subject_id)
            return RedeemResult(success=False, reason="not_found")

        try:
            subject = await self.ledger.apply_redemption(subject_id, nickname, entry)
        except WriteConflict:
            logger.error(
                "code %s consumed but its %s effect was not saved for subject %s",
                entry.code,
                entry.kind.value,
                subject_id,
            )
            raise
        code_redeem_total.labels(result="success").inc()
        logger.info(
            "code %s (%s) redeemed by subject %s", entry.code, entry.kind.value, subject_id
        )
        return RedeemResult(
            success=True, kind=entry.kind, amount=entry.amount, subject=subject
        )

    async def delete(self, code: str) -> bool:
        def _remove(raw: str | None) -> tuple[str | None, bool]:
            codes = _load_codes(raw)
            if not codes:
                return None, False
            found = _lookup(codes, code)
            if found is None:
                return None, False
            del codes[found]
            return _dump_codes(codes), True

        return await self.store.update(self.key, _remove, self.ttl)

    async def set_remark(self, code: str, remark: str | None) -> RedemptionCode | None:
        def _annotate(raw: str | None) -> tuple[str | None, RedemptionCode | None]:
            codes = _load_codes(raw)
            if not codes:
                return None, None
            found = _lookup(codes, code)
            if found is None:
                return None, None
            updated = codes[found].model_copy(update={"remark": remark or None})
            codes[found] = updated
            return _dump_codes(codes), updated

        return await self.store.update(self.key, _annotate, self.ttl)


__all__ = ["RedemptionCodeRegistry", "format_code", "MAX_BATCH"]
