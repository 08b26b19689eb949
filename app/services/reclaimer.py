from __future__ import annotations

import asyncio
import gc
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable

from app.metrics import idle_reclaim_total

logger = logging.getLogger(__name__)

Hook = Callable[[], Any]


class ReclaimState(str, Enum):
    ACTIVE = "active"
    LIGHT = "lightly_reclaimed"
    DEEP = "deeply_reclaimed"


class IdleReclaimer:
    """Sheds rebuildable caches after a period without admitted work.

    Light hooks run once idle time passes ``light_after``; deep hooks (plus
    a GC pass) once it passes ``deep_after``. Each tier runs at most once
    per idle period; ``touch()`` starts a new period.
    """

    def __init__(
        self,
        *,
        light_after: float = 120.0,
        deep_after: float = 300.0,
        interval: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        busy: Callable[[], bool] | None = None,
    ) -> None:
        if deep_after < light_after:
            raise ValueError("deep_after must not be shorter than light_after")
        self.light_after = light_after
        self.deep_after = deep_after
        self.interval = interval
        self._clock = clock
        self._busy = busy or (lambda: False)
        self._last_activity = clock()
        self._epoch = 0
        self._state = ReclaimState.ACTIVE
        self._light: list[tuple[str, Hook]] = []
        self._deep: list[tuple[str, Hook]] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ReclaimState:
        return self._state

    def idle_seconds(self) -> float:
        return max(self._clock() - self._last_activity, 0.0)

    def register_light(self, name: str, hook: Hook) -> None:
        self._light.append((name, hook))

    def register_deep(self, name: str, hook: Hook) -> None:
        self._deep.append((name, hook))

    def touch(self) -> None:
        self._last_activity = self._clock()
        self._epoch += 1
        self._state = ReclaimState.ACTIVE

    async def tick(self) -> ReclaimState:
        if self._busy():
            self.touch()
            return self._state

        idle = self.idle_seconds()
        epoch = self._epoch
        if idle >= self.light_after and self._state is ReclaimState.ACTIVE:
            await self._run("light", self._light)
            # activity during the hooks keeps the reclaimer active
            if self._epoch != epoch:
                return self._state
            self._state = ReclaimState.LIGHT
        if idle >= self.deep_after and self._state is ReclaimState.LIGHT:
            await self._run("deep", self._deep)
            collected = gc.collect()
            logger.info("idle %.0fs: deep reclaim done, gc collected %s", idle, collected)
            if self._epoch != epoch:
                return self._state
            self._state = ReclaimState.DEEP
        return self._state

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self, tier: str, hooks: list[tuple[str, Hook]]) -> None:
        idle_reclaim_total.labels(tier=tier).inc()
        for name, hook in hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception("%s reclaim hook %s failed", tier, name)
                continue
            logger.info("%s reclaim: %s -> %s", tier, name, result)


__all__ = ["IdleReclaimer", "ReclaimState"]
