from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.metrics import admission_active, admission_waiting


class AdmissionGate:
    """Process-wide cap on concurrent heavy calls with FIFO waiters.

    A released slot is handed straight to the oldest waiter, so the counter
    never dips while someone is queued. A waiter cancelled while queued is
    dropped from the queue; one cancelled just after being handed a slot
    passes the slot on.
    """

    def __init__(self, capacity: int = 2) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def snapshot(self) -> dict[str, int]:
        return {"capacity": self.capacity, "active": self.active, "waiting": self.waiting}

    async def acquire(self) -> None:
        if self._active < self.capacity and not self.waiting:
            self._active += 1
            self._publish()
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        self._publish()
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was granted in the same tick the caller gave up
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
                self._publish()
            raise

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a held slot")
        self._active -= 1
        while self._waiters:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._active += 1
            fut.set_result(None)
            break
        self._publish()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def _publish(self) -> None:
        admission_active.set(self._active)
        admission_waiting.set(self.waiting)


__all__ = ["AdmissionGate"]
