import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

# keep the module-level app in app.main away from real services
os.environ.setdefault("GEO_ENABLED", "false")

from app.config import Settings
from app.main import create_app
from app.models import QuotaConfig
from app.services.persistence import PersistenceFacade
from app.services.quota import QuotaLedger
from app.services.codes import RedemptionCodeRegistry
from app.services.journal import UsageJournal
from tests.utils.fakes import FakeRedis, make_fake_sdk


class Clock:
    """Mutable clock for ledger tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    # a Wednesday, mid ISO week 2026-W02
    return Clock(datetime(2026, 1, 7, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    """File-backed store, as used when no remote backend is configured."""
    return PersistenceFacade(None, tmp_path)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis, tmp_path):
    return PersistenceFacade(fake_redis, tmp_path)


@pytest.fixture
def ledger(store, clock):
    return QuotaLedger(
        store,
        QuotaConfig(normal_weekly_limit=3, pro_weekly_limit=5),
        tz="UTC",
        clock=clock,
    )


@pytest.fixture
def registry(store, ledger):
    return RedemptionCodeRegistry(store, ledger)


@pytest.fixture
def journal(store):
    return UsageJournal(store, max_entries=5)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        REDIS_URL=None,
        DATA_DIR=str(tmp_path / "data"),
        NORMAL_WEEKLY_LIMIT=2,
        GEMINI_API_KEY="key-a,key-b",
        GEO_ENABLED=False,
        ADMIN_TOKEN="test-admin-token",
    )


@pytest.fixture
def fake_sdk():
    return make_fake_sdk()


@pytest.fixture
def client(settings, fake_sdk):
    """TestClient with the lifespan running and the vision SDK faked."""
    app = create_app(settings)
    with TestClient(app) as client:
        client.app.state.runtime.extractor._sdk_loader = lambda: fake_sdk
        yield client
