from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from spinescan.models import JobState, OfflineEntry
from spinescan.offline import OfflineQueue
from spinescan.store import Store


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("spinescan.test.offline")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class OfflineQueueTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.store = Store(Path(self.temp_dir.name) / "spinescan.db")
        self.store.init_schema()
        self.queue = OfflineQueue(self.store, quiet_logger())

    async def asyncTearDown(self) -> None:
        self.store.close()
        self.temp_dir.cleanup()

    async def test_entries_survive_a_new_queue(self) -> None:
        first = await self.queue.enqueue(b"first")
        second = await self.queue.enqueue(b"second")
        self.assertEqual(await self.queue.count(), 2)

        reopened = OfflineQueue(self.store, quiet_logger())
        entries = await reopened.entries()
        self.assertEqual([entry.entry_id for entry in entries], [first.entry_id, second.entry_id])
        self.assertEqual((await reopened.get(second.entry_id)).payload, b"second")

        self.assertTrue(await reopened.remove(first.entry_id))
        self.assertFalse(await reopened.remove(first.entry_id))
        self.assertEqual(await reopened.count(), 1)

    async def test_drain_runs_entries_one_at_a_time_in_order(self) -> None:
        entries = [await self.queue.enqueue(f"image-{index}".encode()) for index in range(3)]
        running = 0
        seen: list[str] = []

        async def submit(entry: OfflineEntry) -> JobState:
            nonlocal running
            running += 1
            self.assertEqual(running, 1)
            seen.append(entry.entry_id)
            await asyncio.sleep(0.01)
            await self.queue.remove(entry.entry_id)
            running -= 1
            return JobState.DONE

        summary = await self.queue.drain(submit)
        self.assertEqual(seen, [entry.entry_id for entry in entries])
        self.assertEqual(summary.done, 3)
        self.assertEqual(summary.remaining, 0)

    async def test_drain_stops_when_a_job_goes_offline_again(self) -> None:
        for index in range(3):
            await self.queue.enqueue(f"image-{index}".encode())
        outcomes = iter([None, JobState.OFFLINE, JobState.DONE])
        calls = 0

        async def submit(entry: OfflineEntry) -> JobState | None:
            nonlocal calls
            calls += 1
            return next(outcomes)

        summary = await self.queue.drain(submit)
        self.assertEqual(calls, 2)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.deferred, 1)
        self.assertTrue(summary.stopped_offline)
        self.assertEqual(summary.remaining, 3)

    async def test_only_one_drain_at_a_time(self) -> None:
        await self.queue.enqueue(b"image")
        release = asyncio.Event()

        async def submit(entry: OfflineEntry) -> JobState:
            await release.wait()
            return JobState.ERROR

        first = asyncio.create_task(self.queue.drain(submit))
        await asyncio.sleep(0.01)
        self.assertTrue(self.queue.draining)
        second = await self.queue.drain(submit)
        self.assertTrue(second.already_running)

        release.set()
        summary = await first
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.remaining, 1)


if __name__ == "__main__":
    unittest.main()
