"""Key-value persistence over Redis with a local file fallback.

Public coroutines degrade instead of raising on transport failures: a failed
remote read is retried against the local store, and a write that cannot land
anywhere is logged and dropped. The one error surfaced is ``WriteConflict``,
when an atomic update keeps losing to concurrent writers.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.config import Settings
from app.metrics import persistence_conflict_total, persistence_fallback_total

logger = logging.getLogger(__name__)

T = TypeVar("T")

# mutate(current) -> (new value or None for "leave untouched", caller result)
Mutator = Callable[[str | None], tuple[str | None, T]]

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_DAY = 24 * 60 * 60


def days(n: int) -> int:
    return n * _DAY


class WriteConflict(RuntimeError):
    """Optimistic write gave up; nothing was committed.

    ``result`` is what the last attempt would have returned had it landed.
    """

    def __init__(self, key: str, result: object) -> None:
        super().__init__(f"conflicting writes on {key}; change not persisted")
        self.key = key
        self.result = result


class PersistenceFacade:
    def __init__(
        self,
        client: redis.Redis | None = None,
        data_dir: str | os.PathLike[str] | None = None,
        *,
        max_retries: int = 10,
    ) -> None:
        self._client = client
        self._data_dir = Path(data_dir) if data_dir else None
        self._max_retries = max_retries
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "PersistenceFacade":
        client = None
        if cfg.redis_url:
            kwargs = {"encoding": "utf-8", "decode_responses": True}
            if cfg.redis_token:
                kwargs["password"] = cfg.redis_token
            client = redis.from_url(cfg.redis_url, **kwargs)
        return cls(client, cfg.data_dir)

    @property
    def backend(self) -> str:
        return "redis" if self._client is not None else "file"

    @property
    def data_dir(self) -> Path | None:
        return self._data_dir

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to close redis client")

    # Public API -------------------------------------------------------

    async def get(self, key: str) -> str | None:
        if self._client is not None:
            try:
                return await self._client.get(key)
            except (RedisError, OSError) as exc:
                persistence_fallback_total.labels(op="get").inc()
                logger.warning("redis get %s failed, using local store: %s", key, exc)
        return await asyncio.to_thread(self._read_file, key)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store ``value``; TTL applies to the remote backend only."""
        if self._client is not None:
            try:
                await self._client.setex(key, ttl_seconds, value)
                return True
            except (RedisError, OSError) as exc:
                persistence_fallback_total.labels(op="set").inc()
                logger.warning("redis setex %s failed, using local store: %s", key, exc)
        return await asyncio.to_thread(self._write_file, key, value)

    async def delete(self, key: str) -> bool:
        removed = False
        if self._client is not None:
            try:
                removed = bool(await self._client.delete(key))
            except (RedisError, OSError) as exc:
                persistence_fallback_total.labels(op="delete").inc()
                logger.warning("redis delete %s failed: %s", key, exc)
        return await asyncio.to_thread(self._remove_file, key) or removed

    async def update(self, key: str, mutate: Mutator[T], ttl_seconds: int) -> T:
        """Atomically read, transform and write one key.

        Calls for the same key are serialized inside the process; on Redis
        the write is additionally guarded by WATCH so a concurrent writer in
        another process forces a re-read instead of being overwritten.
        ``mutate`` may run more than once and must not have side effects.
        Raises ``WriteConflict`` when the retries run out.
        """
        async with self._locks[key]:
            if self._client is not None:
                try:
                    return await self._update_remote(key, mutate, ttl_seconds)
                except (RedisError, OSError) as exc:
                    persistence_fallback_total.labels(op="update").inc()
                    logger.warning(
                        "redis update %s failed, using local store: %s", key, exc
                    )
            return await self._update_local(key, mutate)

    # Remote -----------------------------------------------------------

    async def _update_remote(self, key: str, mutate: Mutator[T], ttl_seconds: int) -> T:
        async with self._client.pipeline(transaction=True) as pipe:
            for attempt in range(self._max_retries):
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    value, result = mutate(current)
                    if value is None:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.setex(key, ttl_seconds, value)
                    await pipe.execute()
                    return result
                except WatchError:
                    persistence_conflict_total.inc()
                    logger.info("write conflict on %s (attempt %s)", key, attempt + 1)
                    continue
        logger.error(
            "giving up on %s after %s conflicting writes; change not persisted",
            key,
            self._max_retries,
        )
        raise WriteConflict(key, result)

    # Local ------------------------------------------------------------

    async def _update_local(self, key: str, mutate: Mutator[T]) -> T:
        current = await asyncio.to_thread(self._read_file, key)
        value, result = mutate(current)
        if value is not None:
            await asyncio.to_thread(self._write_file, key, value)
        return result

    def _path(self, key: str) -> Path | None:
        if self._data_dir is None:
            return None
        return self._data_dir / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def _read_file(self, key: str) -> str | None:
        path = self._path(key)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("Failed to read %s", path)
            return None

    def _write_file(self, key: str, value: str) -> bool:
        path = self._path(key)
        if path is None or not path.parent.is_dir():
            logger.debug("no local store for %s, value kept in memory only", key)
            return False
        tmp: str | None = None
        try:
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, path)
        except OSError:
            logger.exception("Failed to write %s", path)
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            return False
        return True

    def _remove_file(self, key: str) -> bool:
        path = self._path(key)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("Failed to remove %s", path)
            return False
        return True


__all__ = ["PersistenceFacade", "WriteConflict", "Mutator", "days"]
