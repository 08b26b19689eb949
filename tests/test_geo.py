import httpx
import pytest

from app.services.geo import GeoLocator, is_public_ip


def _locator(handler, **kwargs):
    locator = GeoLocator("http://geo.test/json/{ip}", **kwargs)
    locator._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return locator


def test_public_ip_detection():
    assert is_public_ip("8.8.8.8")
    assert not is_public_ip("10.0.0.1")
    assert not is_public_ip("127.0.0.1")
    assert not is_public_ip("testclient")
    assert not is_public_ip(None)


@pytest.mark.asyncio
async def test_lookup_caches_success():
    hits: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.path)
        return httpx.Response(
            200,
            json={"status": "success", "country": "China", "regionName": "Zhejiang", "city": "Hangzhou", "isp": "CT"},
        )

    locator = _locator(handler)
    first = await locator.lookup("8.8.8.8")
    second = await locator.lookup("8.8.8.8")

    assert first.city == "Hangzhou"
    assert first.region == "Zhejiang"
    assert second == first
    assert hits == ["/json/8.8.8.8"]
    assert locator.clear_cache() == 1
    await locator.close()
    assert not locator.has_client


@pytest.mark.asyncio
async def test_private_and_disabled_skip_network():
    def handler(request):  # pragma: no cover - must not be called
        raise AssertionError("unexpected request")

    assert await _locator(handler).lookup("192.168.1.2") is None
    assert await _locator(handler, enabled=False).lookup("8.8.8.8") is None


@pytest.mark.asyncio
async def test_failures_return_none_and_are_not_cached():
    responses = iter(
        [
            httpx.Response(500),
            httpx.Response(200, json={"status": "fail", "message": "reserved range"}),
            httpx.Response(200, json={"status": "success", "country": "Japan"}),
        ]
    )
    locator = _locator(lambda request: next(responses))

    assert await locator.lookup("1.1.1.1") is None
    assert await locator.lookup("1.1.1.1") is None
    assert (await locator.lookup("1.1.1.1")).country == "Japan"
    assert locator.cached == 1
