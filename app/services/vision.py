"""Vision extraction through an OpenAI-compatible endpoint (Gemini by default)."""

from __future__ import annotations

import asyncio
import base64
import importlib
import itertools
import json
import logging
from types import ModuleType
from typing import Any, Callable

logger = logging.getLogger(__name__)

_RECORD_PROMPT = """
You extract laboratory examination results from photos of medical reports.
Return ONLY a JSON object of this shape:
{
  "title": "String",
  "date": Number (timestamp in milliseconds),
  "hospital": "String or 'Unknown'",
  "doctor": "String or empty",
  "notes": "String summary",
  "configName": "String (report type)",
  "items": [
    {"id": "String (standard code such as scr, egfr, bun, ua)",
     "name": "String", "value": "String", "unit": "String",
     "range": "String", "categoryName": "String"}
  ]
}
"""

_HEADER_PROMPT = """
Here is an Excel header row:
{headers}

Find the index of the date column and map the remaining medical columns to
standard ids. Return JSON:
{{"dateColumnIndex": Number,
  "mappings": [{{"columnIndex": Number, "id": "String", "name": "String", "category": "String"}}]}}
"""


class InferenceError(RuntimeError):
    """Inference call failed; ``code`` is one of the ErrorCode names."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def clean_json_text(text: str | None) -> str:
    """Strip code fences and anything outside the outermost braces."""
    if not text:
        return "{}"
    clean = text.replace("```json", "").replace("```JSON", "").replace("```", "").strip()
    first, last = clean.find("{"), clean.rfind("}")
    if first != -1 and last != -1:
        clean = clean[first : last + 1]
    return clean


def _is_rate_limit(sdk: ModuleType, exc: Exception) -> bool:
    rate_limit_error = getattr(sdk, "RateLimitError", None)
    if rate_limit_error is not None and isinstance(exc, rate_limit_error):
        return True
    message = str(exc)
    return "429" in message or "Resource has been exhausted" in message


def _load_openai() -> ModuleType:
    return importlib.import_module("openai")


class VisionExtractor:
    """Calls the vision model; clients are cached per API key.

    The SDK module handle and the per-key clients are both disposable:
    ``clear_clients`` and ``unload`` are wired to idle reclamation and the
    next call rebuilds whatever it needs.
    """

    def __init__(
        self,
        api_keys: list[str],
        *,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        sdk_loader: Callable[[], ModuleType] = _load_openai,
    ) -> None:
        self.api_keys = list(api_keys)
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._sdk_loader = sdk_loader
        self._sdk: ModuleType | None = None
        self._clients: dict[str, Any] = {}
        self._rotation = itertools.count()
        self.sdk_loads = 0

    @property
    def sdk_loaded(self) -> bool:
        return self._sdk is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def pick_key(self, header_key: str | None = None) -> str:
        """Round-robin over configured keys, else the caller's own key."""
        if self.api_keys:
            return self.api_keys[next(self._rotation) % len(self.api_keys)]
        if header_key:
            return header_key
        raise InferenceError("NO_API_KEY", "No API key configured or provided")

    def _get_sdk(self) -> ModuleType:
        if self._sdk is None:
            self._sdk = self._sdk_loader()
            self.sdk_loads += 1
            logger.info("vision SDK loaded")
        return self._sdk

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            sdk = self._get_sdk()
            client = sdk.AsyncOpenAI(api_key=api_key, base_url=self.base_url)
            self._clients[api_key] = client
        return client

    async def extract_record(
        self, image: bytes, mime_type: str | None = None, *, header_key: str | None = None
    ) -> dict[str, Any]:
        data_url = f"data:{mime_type or 'image/jpeg'};base64,{base64.b64encode(image).decode()}"
        messages = [
            {"role": "system", "content": _RECORD_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Extract medical data."},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ]
        return await self._complete(messages, header_key)

    async def map_excel_header(
        self, headers: list[str], *, header_key: str | None = None
    ) -> dict[str, Any]:
        prompt = _HEADER_PROMPT.format(headers=json.dumps(headers, ensure_ascii=False))
        return await self._complete([{"role": "user", "content": prompt}], header_key)

    async def _complete(
        self, messages: list[dict[str, Any]], header_key: str | None
    ) -> dict[str, Any]:
        api_key = self.pick_key(header_key)
        try:
            sdk = self._get_sdk()
            client = self._client_for(api_key)
        except Exception as exc:
            logger.exception("vision client setup failed")
            raise InferenceError("INFERENCE_FAILED", f"Vision client unavailable: {exc}") from exc

        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise
        except Exception as exc:
            if _is_rate_limit(sdk, exc):
                raise InferenceError("RATE_LIMIT", str(exc)) from exc
            logger.exception("vision request failed")
            raise InferenceError("INFERENCE_FAILED", str(exc)) from exc

        try:
            text = response.choices[0].message.content
            data = json.loads(clean_json_text(text))
        except (AttributeError, IndexError, TypeError, json.JSONDecodeError) as exc:
            raise InferenceError("INFERENCE_FAILED", "Malformed model response") from exc
        if not isinstance(data, dict):
            raise InferenceError("INFERENCE_FAILED", "Model response is not an object")
        return data

    async def clear_clients(self) -> int:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.exception("Failed to close vision client")
        return len(clients)

    async def unload(self) -> bool:
        await self.clear_clients()
        if self._sdk is None:
            return False
        self._sdk = None
        logger.info("vision SDK handle released")
        return True


__all__ = ["VisionExtractor", "InferenceError", "clean_json_text"]
