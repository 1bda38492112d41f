from __future__ import annotations

import asyncio
import logging
import unittest

from spinescan.gate import ConcurrencyGate, GateError


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("spinescan.test.gate")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class ConcurrencyGateTest(unittest.IsolatedAsyncioTestCase):
    async def test_admits_up_to_max_and_hands_over_fifo(self) -> None:
        gate = ConcurrencyGate(max_slots=2, logger=quiet_logger())
        admitted: list[str] = []

        async def take(job_id: str) -> None:
            await gate.acquire(job_id)
            admitted.append(job_id)

        tasks = [asyncio.create_task(take(f"job-{index}")) for index in range(4)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.assertEqual(admitted, ["job-0", "job-1"])
        self.assertEqual(gate.active_count, 2)
        self.assertEqual(gate.queued_jobs(), ["job-2", "job-3"])

        gate.release("job-1")
        await asyncio.sleep(0)
        self.assertEqual(admitted, ["job-0", "job-1", "job-2"])
        self.assertEqual(gate.queue_depth, 1)

        gate.release("job-0")
        await asyncio.gather(*tasks)
        self.assertEqual(admitted[-1], "job-3")
        self.assertEqual(gate.active_jobs(), ["job-2", "job-3"])

    async def test_double_acquire_and_double_release_are_rejected(self) -> None:
        gate = ConcurrencyGate(max_slots=1, logger=quiet_logger())
        await gate.acquire("job-a")
        with self.assertRaises(GateError):
            await gate.acquire("job-a")
        gate.release("job-a")
        with self.assertRaises(GateError):
            gate.release("job-a")
        self.assertEqual(gate.acquired_total, 1)
        self.assertEqual(gate.released_total, 1)

    async def test_cancelled_waiter_leaves_the_queue(self) -> None:
        gate = ConcurrencyGate(max_slots=1, logger=quiet_logger())
        await gate.acquire("holder")
        waiter = asyncio.create_task(gate.acquire("waiter"))
        follower = asyncio.create_task(gate.acquire("follower"))
        await asyncio.sleep(0)
        self.assertEqual(gate.queued_jobs(), ["waiter", "follower"])

        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        self.assertEqual(gate.queued_jobs(), ["follower"])

        gate.release("holder")
        await follower
        self.assertEqual(gate.active_jobs(), ["follower"])

    async def test_cancel_after_handover_releases_the_slot(self) -> None:
        gate = ConcurrencyGate(max_slots=1, logger=quiet_logger())
        await gate.acquire("holder")
        waiter = asyncio.create_task(gate.acquire("waiter"))
        await asyncio.sleep(0)

        gate.release("holder")
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        self.assertEqual(gate.active_count, 0)
        self.assertEqual(gate.acquired_total, gate.released_total)

    async def test_slot_releases_on_error(self) -> None:
        gate = ConcurrencyGate(max_slots=1, logger=quiet_logger())
        with self.assertRaises(RuntimeError):
            async with gate.slot("job-a"):
                self.assertEqual(gate.active_jobs(), ["job-a"])
                raise RuntimeError("boom")
        self.assertEqual(gate.active_jobs(), [])
        self.assertEqual(gate.released_total, 1)


if __name__ == "__main__":
    unittest.main()
