from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .app_logging import log_with_fields
from .models import JobState, OfflineEntry
from .store import Store
from .utils import new_local_id, sha256_bytes, short_id

DrainSubmit = Callable[[OfflineEntry], Awaitable[JobState | None]]


@dataclass(slots=True)
class DrainSummary:
    attempted: int = 0
    done: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    remaining: int = 0
    stopped_offline: bool = False
    already_running: bool = False


class OfflineQueue:
    """Durable FIFO of captures made without connectivity.

    The sqlite table is only touched through this class, under one lock.
    """

    def __init__(self, store: Store, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger("spinescan.offline")
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    async def enqueue(self, payload: bytes) -> OfflineEntry:
        async with self._lock:
            entry = self.store.insert_offline_entry(new_local_id(), payload)
            depth = self.store.count_offline_entries()
        log_with_fields(
            self.logger,
            logging.INFO,
            "offline_enqueued",
            entry_id=short_id(entry.entry_id),
            bytes=len(payload),
            sha256=sha256_bytes(payload)[:16],
            depth=depth,
        )
        return entry

    async def entries(self) -> list[OfflineEntry]:
        async with self._lock:
            return self.store.list_offline_entries()

    async def get(self, entry_id: str) -> OfflineEntry | None:
        async with self._lock:
            return self.store.get_offline_entry(entry_id)

    async def remove(self, entry_id: str) -> bool:
        async with self._lock:
            removed = self.store.delete_offline_entry(entry_id)
        if removed:
            log_with_fields(self.logger, logging.INFO, "offline_removed", entry_id=short_id(entry_id))
        return removed

    async def count(self) -> int:
        async with self._lock:
            return self.store.count_offline_entries()

    async def drain(self, submit: DrainSubmit) -> DrainSummary:
        """Resubmit entries oldest first, one at a time.

        `submit` runs the entry's job until it settles and returns its state, or
        None when the entry was skipped. A job that falls back to Offline ends
        the drain; the remaining entries wait for the next restored signal.
        """
        if self._drain_lock.locked():
            log_with_fields(self.logger, logging.INFO, "offline_drain_already_running")
            return DrainSummary(already_running=True)

        summary = DrainSummary()
        async with self._drain_lock:
            pending = await self.entries()
            log_with_fields(self.logger, logging.INFO, "offline_drain_started", entries=len(pending))
            for entry in pending:
                state = await submit(entry)
                if state is None:
                    summary.skipped += 1
                    continue
                summary.attempted += 1
                if state is JobState.DONE:
                    summary.done += 1
                elif state in (JobState.ERROR, JobState.CANCELED):
                    summary.failed += 1
                else:
                    summary.deferred += 1
                if state is JobState.OFFLINE:
                    summary.stopped_offline = True
                    break
            summary.remaining = await self.count()

        log_with_fields(
            self.logger,
            logging.INFO,
            "offline_drain_finished",
            attempted=summary.attempted,
            done=summary.done,
            failed=summary.failed,
            deferred=summary.deferred,
            skipped=summary.skipped,
            remaining=summary.remaining,
            stopped_offline=summary.stopped_offline,
        )
        return summary
