from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from app.config import Settings
from app.models import QuotaConfig
from app.services.admission import AdmissionGate
from app.services.codes import RedemptionCodeRegistry
from app.services.geo import GeoLocator
from app.services.journal import UsageJournal
from app.services.persistence import PersistenceFacade, days
from app.services.quota import QuotaLedger
from app.services.reclaimer import IdleReclaimer
from app.services.vision import VisionExtractor

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Per-process components shared by all request handlers."""

    settings: Settings
    store: PersistenceFacade
    ledger: QuotaLedger
    codes: RedemptionCodeRegistry
    journal: UsageJournal
    gate: AdmissionGate
    reclaimer: IdleReclaimer
    geo: GeoLocator
    extractor: VisionExtractor

    @classmethod
    def build(cls, cfg: Settings, store: PersistenceFacade | None = None) -> "Runtime":
        store = store or PersistenceFacade.from_settings(cfg)
        defaults = QuotaConfig(
            normal_weekly_limit=cfg.normal_weekly_limit,
            pro_weekly_limit=cfg.pro_weekly_limit,
            normal_max_images=cfg.normal_max_images,
            pro_max_images=cfg.pro_max_images,
            unlimited_max_images=cfg.unlimited_max_images,
        )
        ledger = QuotaLedger(
            store,
            defaults,
            prefix=cfg.kv_prefix,
            subjects_ttl=days(cfg.subjects_ttl_days),
            config_ttl=days(cfg.config_ttl_days),
            tz=cfg.quota_timezone,
        )
        codes = RedemptionCodeRegistry(
            store, ledger, prefix=cfg.kv_prefix, ttl=days(cfg.codes_ttl_days)
        )
        journal = UsageJournal(
            store,
            prefix=cfg.kv_prefix,
            max_entries=cfg.journal_max_entries,
            ttl=days(cfg.journal_ttl_days),
        )
        gate = AdmissionGate(cfg.admission_capacity)
        reclaimer = IdleReclaimer(
            light_after=cfg.idle_light_after_s,
            deep_after=cfg.idle_deep_after_s,
            interval=cfg.idle_check_interval_s,
            busy=lambda: gate.active > 0,
        )
        geo = GeoLocator(
            cfg.geo_lookup_url, timeout=cfg.geo_timeout_s, enabled=cfg.geo_enabled
        )
        extractor = VisionExtractor(
            cfg.api_keys,
            model=cfg.vision_model,
            base_url=cfg.vision_base_url,
            timeout=cfg.inference_timeout_s,
        )

        reclaimer.register_light("vision_clients", extractor.clear_clients)
        reclaimer.register_light("geo_cache", geo.clear_cache)
        reclaimer.register_deep("vision_sdk", extractor.unload)
        reclaimer.register_deep("geo_client", geo.close)
        reclaimer.register_deep("usage_journal", journal.evict)

        return cls(
            settings=cfg,
            store=store,
            ledger=ledger,
            codes=codes,
            journal=journal,
            gate=gate,
            reclaimer=reclaimer,
            geo=geo,
            extractor=extractor,
        )

    async def start(self) -> None:
        data_dir = self.store.data_dir
        if data_dir is not None:
            try:
                Path(data_dir).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("local store %s unavailable: %s", data_dir, exc)
        self.reclaimer.start()
        logger.info(
            "runtime started: backend=%s capacity=%s keys=%s",
            self.store.backend,
            self.gate.capacity,
            len(self.extractor.api_keys),
        )

    async def close(self) -> None:
        await self.reclaimer.stop()
        await self.journal.flush()
        await self.extractor.unload()
        await self.geo.close()
        await self.store.close()


__all__ = ["Runtime"]
