from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError


class FakePipeline:
    """Subset of ``redis.asyncio`` pipelines used by PersistenceFacade."""

    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self._watched: dict[str, int] = {}
        self._ops: list[tuple] = []
        self._multi = False

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.reset()

    async def watch(self, *keys: str) -> bool:
        for key in keys:
            self._watched[key] = self.redis.versions.get(key, 0)
        return True

    async def unwatch(self) -> bool:
        self._watched.clear()
        return True

    async def get(self, key: str) -> str | None:
        return self.redis.store.get(key)

    def multi(self) -> None:
        self._multi = True

    def setex(self, key: str, ttl: int, value: str) -> "FakePipeline":
        self._ops.append((key, ttl, value))
        return self

    async def execute(self) -> list[bool]:
        try:
            if self.redis.before_execute is not None:
                self.redis.before_execute(self.redis)
            for key, version in self._watched.items():
                if self.redis.versions.get(key, 0) != version:
                    raise WatchError("Watched variable changed.")
            for key, ttl, value in self._ops:
                self.redis._write(key, value, ttl)
            return [True] * len(self._ops)
        finally:
            await self.reset()

    async def reset(self) -> None:
        self._watched.clear()
        self._ops.clear()
        self._multi = False


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.versions: dict[str, int] = {}
        self.before_execute: Callable[["FakeRedis"], None] | None = None
        self.closed = False

    def _write(self, key: str, value: str, ttl: int) -> None:
        self.store[key] = value
        self.ttls[key] = ttl
        self.versions[key] = self.versions.get(key, 0) + 1

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._write(key, value, ttl)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
                self.versions[key] = self.versions.get(key, 0) + 1
        return removed

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class FailingRedis:
    """Every call fails like an unreachable server."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args: Any, **kwargs: Any):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def get(self, key: str):
        self._fail()

    async def setex(self, key: str, ttl: int, value: str):
        self._fail()

    async def delete(self, *keys: str):
        self._fail()

    def pipeline(self, transaction: bool = True):
        self._fail()

    async def aclose(self) -> None:
        return None


# Vision SDK -------------------------------------------------------------

SAMPLE_RECORD = {
    "title": "复查记录",
    "date": 1735689600000,
    "hospital": "Unknown",
    "doctor": "",
    "notes": "",
    "configName": "肾功能常规",
    "items": [
        {"id": "scr", "name": "肌酐", "value": "88", "unit": "umol/L", "range": "57-111", "categoryName": "肾功能"},
        {"id": "bun", "name": "尿素氮", "value": "5.1", "unit": "mmol/L", "range": "3.1-8.0", "categoryName": "肾功能"},
    ],
}


class FakeRateLimitError(Exception):
    pass


def make_fake_sdk(
    content: str | None = None,
    *,
    error: Exception | None = None,
    delay: float = 0.0,
) -> SimpleNamespace:
    """Stand-in for the ``openai`` module exposing ``AsyncOpenAI``."""
    import asyncio

    payload = content if content is not None else "```json\n" + json.dumps(SAMPLE_RECORD) + "\n```"
    created: list[Any] = []
    requests: list[dict[str, Any]] = []

    class _Completions:
        async def create(self, **kwargs: Any):
            requests.append(kwargs)
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            message = SimpleNamespace(content=payload)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    class AsyncOpenAI:
        def __init__(self, api_key: str, base_url: str | None = None) -> None:
            self.api_key = api_key
            self.base_url = base_url
            self.closed = False
            self.chat = SimpleNamespace(completions=_Completions())
            created.append(self)

        async def close(self) -> None:
            self.closed = True

    return SimpleNamespace(
        AsyncOpenAI=AsyncOpenAI,
        RateLimitError=FakeRateLimitError,
        created=created,
        requests=requests,
    )
