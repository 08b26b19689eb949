import asyncio

import pytest

from app.services.vision import InferenceError, VisionExtractor, clean_json_text
from tests.utils.fakes import SAMPLE_RECORD, FakeRateLimitError, make_fake_sdk


def _extractor(sdk, keys=("k1", "k2"), **kwargs):
    return VisionExtractor(list(keys), model="gemini-test", sdk_loader=lambda: sdk, **kwargs)


def test_clean_json_text():
    assert clean_json_text('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert clean_json_text('Sure! {"a": {"b": 2}} hope it helps') == '{"a": {"b": 2}}'
    assert clean_json_text(None) == "{}"


def test_keys_rotate_round_robin():
    extractor = _extractor(make_fake_sdk(), keys=("a", "b", "c"))
    assert [extractor.pick_key() for _ in range(4)] == ["a", "b", "c", "a"]


def test_header_key_used_without_configured_keys():
    extractor = _extractor(make_fake_sdk(), keys=())
    assert extractor.pick_key("caller-key") == "caller-key"
    with pytest.raises(InferenceError) as exc:
        extractor.pick_key(None)
    assert exc.value.code == "NO_API_KEY"


@pytest.mark.asyncio
async def test_extract_record_parses_fenced_json():
    sdk = make_fake_sdk()
    extractor = _extractor(sdk)

    record = await extractor.extract_record(b"\x89PNG", "image/png")

    assert record == SAMPLE_RECORD
    request = sdk.requests[0]
    assert request["model"] == "gemini-test"
    image_part = request["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_clients_cached_per_key_and_sdk_loaded_once():
    sdk = make_fake_sdk()
    extractor = _extractor(sdk)

    for _ in range(4):
        await extractor.map_excel_header(["日期", "肌酐"])

    assert extractor.client_count == 2
    assert len(sdk.created) == 2
    assert extractor.sdk_loads == 1
    assert "肌酐" in sdk.requests[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_rate_limit_is_reported():
    extractor = _extractor(make_fake_sdk(error=FakeRateLimitError("slow down")))
    with pytest.raises(InferenceError) as exc:
        await extractor.extract_record(b"img")
    assert exc.value.code == "RATE_LIMIT"

    exhausted = _extractor(make_fake_sdk(error=RuntimeError("Resource has been exhausted")))
    with pytest.raises(InferenceError) as exc:
        await exhausted.extract_record(b"img")
    assert exc.value.code == "RATE_LIMIT"


@pytest.mark.asyncio
async def test_upstream_failure_and_malformed_reply():
    failing = _extractor(make_fake_sdk(error=RuntimeError("upstream 500")))
    with pytest.raises(InferenceError) as exc:
        await failing.extract_record(b"img")
    assert exc.value.code == "INFERENCE_FAILED"

    for content in ("not json at all", "[1, 2]"):
        garbled = _extractor(make_fake_sdk(content))
        with pytest.raises(InferenceError) as exc:
            await garbled.extract_record(b"img")
        assert exc.value.code == "INFERENCE_FAILED"


@pytest.mark.asyncio
async def test_timeout_propagates():
    extractor = _extractor(make_fake_sdk(delay=1.0), timeout=0.01)
    with pytest.raises(asyncio.TimeoutError):
        await extractor.extract_record(b"img")


@pytest.mark.asyncio
async def test_clear_and_unload():
    sdk = make_fake_sdk()
    extractor = _extractor(sdk)
    await extractor.extract_record(b"img")

    assert await extractor.clear_clients() == 1
    assert sdk.created[0].closed
    assert await extractor.unload() is True
    assert await extractor.unload() is False

    await extractor.extract_record(b"img")
    assert extractor.sdk_loads == 2


@pytest.mark.asyncio
async def test_sdk_load_failure_reported_as_inference_error():
    def broken_loader():
        raise ImportError("No module named 'openai'")

    extractor = VisionExtractor(["k1"], model="m", sdk_loader=broken_loader)
    with pytest.raises(InferenceError) as exc:
        await extractor.extract_record(b"img")
    assert exc.value.code == "INFERENCE_FAILED"
    assert not extractor.sdk_loaded
