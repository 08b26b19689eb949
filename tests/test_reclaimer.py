import asyncio

import pytest

from app.models import UsageCategory
from app.services.geo import GeoLocator
from app.services.journal import UsageJournal
from app.services.reclaimer import IdleReclaimer, ReclaimState
from app.services.vision import VisionExtractor
from tests.utils.fakes import make_fake_sdk


class Ticker:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _reclaimer(ticker, **kwargs):
    return IdleReclaimer(light_after=120, deep_after=300, interval=60, clock=ticker, **kwargs)


@pytest.mark.asyncio
async def test_tiers_run_in_order_once():
    ticker = Ticker()
    calls: list[str] = []
    reclaimer = _reclaimer(ticker)
    reclaimer.register_light("light", lambda: calls.append("light"))

    async def deep_hook():
        calls.append("deep")

    reclaimer.register_deep("deep", deep_hook)

    ticker.now += 60
    assert await reclaimer.tick() is ReclaimState.ACTIVE
    ticker.now += 60
    assert await reclaimer.tick() is ReclaimState.LIGHT
    assert await reclaimer.tick() is ReclaimState.LIGHT
    ticker.now += 200
    assert await reclaimer.tick() is ReclaimState.DEEP
    ticker.now += 1000
    assert await reclaimer.tick() is ReclaimState.DEEP

    assert calls == ["light", "deep"]


@pytest.mark.asyncio
async def test_long_gap_runs_both_tiers_in_one_tick():
    ticker = Ticker()
    calls: list[str] = []
    reclaimer = _reclaimer(ticker)
    reclaimer.register_light("light", lambda: calls.append("light"))
    reclaimer.register_deep("deep", lambda: calls.append("deep"))

    ticker.now += 301
    assert await reclaimer.tick() is ReclaimState.DEEP
    assert calls == ["light", "deep"]


@pytest.mark.asyncio
async def test_touch_starts_new_idle_period():
    ticker = Ticker()
    calls: list[str] = []
    reclaimer = _reclaimer(ticker)
    reclaimer.register_light("light", lambda: calls.append("light"))

    ticker.now += 150
    await reclaimer.tick()
    reclaimer.touch()
    assert reclaimer.state is ReclaimState.ACTIVE
    assert reclaimer.idle_seconds() == 0

    ticker.now += 100
    await reclaimer.tick()
    assert calls == ["light"]
    ticker.now += 30
    await reclaimer.tick()
    assert calls == ["light", "light"]


@pytest.mark.asyncio
async def test_busy_gate_blocks_reclaim():
    ticker = Ticker()
    busy = {"value": True}
    calls: list[str] = []
    reclaimer = _reclaimer(ticker, busy=lambda: busy["value"])
    reclaimer.register_light("light", lambda: calls.append("light"))

    ticker.now += 1000
    assert await reclaimer.tick() is ReclaimState.ACTIVE
    assert calls == []

    busy["value"] = False
    ticker.now += 121
    assert await reclaimer.tick() is ReclaimState.LIGHT


@pytest.mark.asyncio
async def test_failing_hook_does_not_stop_others(caplog):
    ticker = Ticker()
    calls: list[str] = []
    reclaimer = _reclaimer(ticker)

    def broken():
        raise RuntimeError("nope")

    reclaimer.register_light("broken", broken)
    reclaimer.register_light("ok", lambda: calls.append("ok"))

    ticker.now += 121
    assert await reclaimer.tick() is ReclaimState.LIGHT
    assert calls == ["ok"]
    assert "broken failed" in caplog.text


def test_deep_must_follow_light():
    with pytest.raises(ValueError):
        IdleReclaimer(light_after=300, deep_after=100)


@pytest.mark.asyncio
async def test_start_and_stop_background_loop():
    reclaimer = IdleReclaimer(light_after=0, deep_after=0, interval=0.01)
    seen = asyncio.Event()
    reclaimer.register_deep("mark", seen.set)

    task = reclaimer.start()
    assert reclaimer.start() is task
    await asyncio.wait_for(seen.wait(), timeout=1)
    await reclaimer.stop()
    assert task.done()


@pytest.mark.asyncio
async def test_reclaimed_caches_rebuild_transparently(store):
    ticker = Ticker()
    sdk = make_fake_sdk()
    extractor = VisionExtractor(["k1"], model="m", sdk_loader=lambda: sdk)
    geo = GeoLocator("http://geo.invalid/{ip}", enabled=False)
    journal = UsageJournal(store)

    reclaimer = _reclaimer(ticker)
    reclaimer.register_light("vision_clients", extractor.clear_clients)
    reclaimer.register_light("geo_cache", geo.clear_cache)
    reclaimer.register_deep("vision_sdk", extractor.unload)
    reclaimer.register_deep("geo_client", geo.close)
    reclaimer.register_deep("usage_journal", journal.evict)

    first = await extractor.extract_record(b"img", "image/png")
    await journal.append(category=UsageCategory.IMAGE, nickname="ann")
    await journal.flush()
    assert extractor.client_count == 1

    ticker.now += 121
    await reclaimer.tick()
    assert extractor.client_count == 0
    assert sdk.created[0].closed
    assert extractor.sdk_loaded

    ticker.now += 200
    await reclaimer.tick()
    assert not extractor.sdk_loaded
    assert not journal.loaded

    second = await extractor.extract_record(b"img", "image/png")
    assert second == first
    assert extractor.sdk_loads == 2
    assert (await journal.query_page()).total == 1


@pytest.mark.asyncio
async def test_activity_during_hooks_keeps_active():
    ticker = Ticker()
    release = asyncio.Event()
    entered = asyncio.Event()
    reclaimer = _reclaimer(ticker)

    async def slow_close():
        entered.set()
        await release.wait()

    reclaimer.register_light("slow", slow_close)

    ticker.now += 121
    tick = asyncio.create_task(reclaimer.tick())
    await entered.wait()
    reclaimer.touch()
    release.set()

    assert await tick is ReclaimState.ACTIVE
    assert reclaimer.state is ReclaimState.ACTIVE

    # the next idle period still gets its light pass
    ticker.now += 121
    assert await reclaimer.tick() is ReclaimState.LIGHT
