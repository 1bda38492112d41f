from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .app_logging import log_with_fields
from .utils import short_id


class GateError(RuntimeError):
    pass


class ConcurrencyGate:
    """FIFO admission control for in-flight scan jobs.

    Every mutation runs synchronously on the event loop thread, so check and
    update never interleave with another task.
    """

    def __init__(self, max_slots: int = 5, logger: logging.Logger | None = None) -> None:
        if max_slots < 1:
            raise ValueError("max_slots must be >= 1")
        self.max_slots = max_slots
        self.logger = logger or logging.getLogger("spinescan.gate")
        self._active: set[str] = set()
        self._waiters: OrderedDict[str, asyncio.Future[None]] = OrderedDict()
        self.acquired_total = 0
        self.released_total = 0

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queue_depth(self) -> int:
        return len(self._waiters)

    def active_jobs(self) -> list[str]:
        return sorted(self._active)

    def queued_jobs(self) -> list[str]:
        return list(self._waiters)

    async def acquire(self, job_id: str) -> None:
        if job_id in self._active or job_id in self._waiters:
            raise GateError(f"job {job_id} already holds or awaits a slot")

        if len(self._active) < self.max_slots and not self._waiters:
            self._grant(job_id)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[job_id] = future
        log_with_fields(
            self.logger,
            logging.INFO,
            "gate_queued",
            job_id=short_id(job_id),
            active=self.active_count,
            queued=self.queue_depth,
        )
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # slot was handed over just before the cancel landed
                self.release(job_id)
            else:
                self._waiters.pop(job_id, None)
            raise

    def release(self, job_id: str) -> None:
        if job_id not in self._active:
            raise GateError(f"job {job_id} does not hold a slot")
        self._active.remove(job_id)
        self.released_total += 1
        log_with_fields(
            self.logger,
            logging.INFO,
            "gate_released",
            job_id=short_id(job_id),
            active=self.active_count,
            queued=self.queue_depth,
        )
        self._hand_over()

    @asynccontextmanager
    async def slot(self, job_id: str) -> AsyncIterator[None]:
        await self.acquire(job_id)
        try:
            yield
        finally:
            self.release(job_id)

    def _grant(self, job_id: str) -> None:
        self._active.add(job_id)
        self.acquired_total += 1
        log_with_fields(
            self.logger,
            logging.INFO,
            "gate_admitted",
            job_id=short_id(job_id),
            active=self.active_count,
            queued=self.queue_depth,
        )

    def _hand_over(self) -> None:
        while self._waiters and len(self._active) < self.max_slots:
            job_id, future = self._waiters.popitem(last=False)
            if future.done():
                continue
            self._grant(job_id)
            future.set_result(None)
