from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Iterable

from .app_logging import log_with_fields
from .catalog import Catalog, StoreCatalog
from .config import AppConfig
from .connectivity import ConnectivityMonitor
from .coordinator import JobCoordinator
from .gate import ConcurrencyGate
from .models import InvalidTransition, JobState, OfflineEntry, ScanJob
from .observers import JobObserver
from .offline import DrainSummary, OfflineQueue
from .rate_limit import RateLimiter
from .service import ScanService
from .store import Store
from .utils import short_id

RATE_LIMIT_HOLD_MESSAGE = "Waiting for the rate limit to clear"
OFFLINE_MESSAGE = "Offline - queued for upload"


class ScanPipeline:
    """Owns the visible job set and the components shared by every job."""

    def __init__(
        self,
        config: AppConfig,
        service: ScanService,
        store: Store,
        logger: logging.Logger,
        *,
        catalog: Catalog | None = None,
        connectivity: ConnectivityMonitor | None = None,
        gate: ConcurrencyGate | None = None,
        rate_limiter: RateLimiter | None = None,
        offline_queue: OfflineQueue | None = None,
        observers: Iterable[JobObserver] = (),
    ) -> None:
        self.config = config
        self.service = service
        self.store = store
        self.logger = logger
        self.catalog = catalog or StoreCatalog(store, logger)
        self.connectivity = connectivity or ConnectivityMonitor(logger=logger)
        self.gate = gate or ConcurrencyGate(config.pipeline.max_concurrent_jobs, logger)
        self.rate_limiter = rate_limiter or RateLimiter(
            default_cooldown=config.rate_limit.default_cooldown_seconds,
            tick_seconds=config.rate_limit.tick_seconds,
            logger=logger,
        )
        self.offline_queue = offline_queue or OfflineQueue(store, logger)
        self.observers: list[JobObserver] = list(observers)

        self._jobs: dict[str, ScanJob] = {}
        self._tasks: dict[str, asyncio.Task[JobState]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._expiry: dict[str, asyncio.TimerHandle] = {}

        self.rate_limiter.set_resubmit(self.resume)
        self.rate_limiter.add_listener(self._on_rate_limit_tick)
        self.connectivity.add_listener(self._on_connectivity_changed)

    @property
    def jobs(self) -> list[ScanJob]:
        return list(self._jobs.values())

    def get_job(self, job_id: str) -> ScanJob | None:
        return self._jobs.get(job_id)

    def task_for(self, job_id: str) -> asyncio.Task[JobState] | None:
        return self._tasks.get(job_id)

    def add_observer(self, observer: JobObserver) -> None:
        self.observers.append(observer)

    async def submit(self, payload: bytes) -> ScanJob:
        """Create a job for one captured image and route it."""
        job = ScanJob(payload=payload)
        self._register(job)
        await self._dispatch(job)
        return job

    async def resume(self, job: ScanJob) -> None:
        """Resubmit a job released from the rate-limit hold-queue."""
        if self._jobs.get(job.id) is not job or job.state is not JobState.RATE_LIMITED:
            return
        if not self.connectivity.connected:
            await self._park_offline(job)
            return
        if await self.rate_limiter.hold(job):
            return
        self._start(job)

    async def retry(self, job_id: str) -> ScanJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        if job.state is not JobState.ERROR:
            raise InvalidTransition(f"job {job_id} is {job.state.value}; only failed jobs can be retried")

        self._forget(job_id)
        fresh = ScanJob(payload=job.payload, retry_of=job.id, offline_entry_id=job.offline_entry_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_retried",
            job_id=short_id(fresh.id),
            retry_of=short_id(job.id),
        )
        self._register(fresh)
        await self._dispatch(fresh)
        return fresh

    async def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.state.is_terminal:
            return False

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self.rate_limiter.discard(job_id)

        if not job.state.is_terminal:
            # deferred jobs have no running coordinator
            job.transition(JobState.CANCELED, "Canceled")
            self._emit(job, True)
            self._on_terminal(job)
        return True

    async def cancel_all(self) -> int:
        canceled = 0
        for job in list(self._jobs.values()):
            if await self.cancel(job.id):
                canceled += 1
        if canceled:
            log_with_fields(self.logger, logging.INFO, "jobs_canceled", count=canceled)
        return canceled

    async def discard_offline(self, entry_id: str) -> bool:
        """Drop a durable offline entry; its job, if visible, is canceled."""
        for job in list(self._jobs.values()):
            if job.offline_entry_id == entry_id:
                await self.cancel(job.id)
                job.offline_entry_id = None
        return await self.offline_queue.remove(entry_id)

    async def restore(self) -> list[ScanJob]:
        """Show entries persisted by an earlier run as Offline jobs."""
        restored: list[ScanJob] = []
        for entry in await self.offline_queue.entries():
            if self._job_for_entry(entry.entry_id) is not None:
                continue
            job = ScanJob(
                payload=entry.payload,
                state=JobState.OFFLINE,
                offline_entry_id=entry.entry_id,
                progress_message=OFFLINE_MESSAGE,
            )
            self._register(job)
            restored.append(job)
        if restored:
            log_with_fields(self.logger, logging.INFO, "offline_restored", jobs=len(restored))
        return restored

    async def drain_offline(self) -> DrainSummary:
        return await self.offline_queue.drain(self._drain_submit)

    async def wait_settled(self, job_id: str) -> JobState | None:
        """Wait until the job's coordinator has stopped; returns its state then."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        job = self._jobs.get(job_id)
        return job.state if job is not None else None

    async def wait_idle(self) -> None:
        """Wait until no job is running, held for a rate limit, or being drained."""
        while True:
            tasks = list(self._tasks.values())
            if tasks:
                await asyncio.wait(tasks)
                continue
            held = any(job.state is JobState.RATE_LIMITED for job in self._jobs.values())
            if held or self.offline_queue.draining:
                await asyncio.sleep(min(self.rate_limiter.tick_seconds, 0.1))
                continue
            return

    async def aclose(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        await self.rate_limiter.close()
        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.wait(background)

    def _register(self, job: ScanJob) -> None:
        self._jobs[job.id] = job
        self._emit(job, True)

    async def _dispatch(self, job: ScanJob) -> None:
        if await self.rate_limiter.hold(job):
            job.transition(JobState.RATE_LIMITED, RATE_LIMIT_HOLD_MESSAGE)
            self._emit(job, True)
            return
        if not self.connectivity.connected:
            await self._park_offline(job)
            return
        self._start(job)

    async def _park_offline(self, job: ScanJob) -> None:
        if job.offline_entry_id is None:
            entry = await self.offline_queue.enqueue(job.payload)
            job.offline_entry_id = entry.entry_id
        if job.state is not JobState.OFFLINE:
            job.transition(JobState.OFFLINE, OFFLINE_MESSAGE)
            self._emit(job, True)

    def _start(self, job: ScanJob) -> asyncio.Task[JobState]:
        coordinator = JobCoordinator(
            job,
            self.service,
            gate=self.gate,
            rate_limiter=self.rate_limiter,
            offline_queue=self.offline_queue,
            catalog=self.catalog,
            emit=self._emit,
            on_terminal=self._on_terminal,
            spawn=self._spawn,
            on_connection_lost=self._on_connection_lost,
            logger=self.logger,
        )
        task = asyncio.create_task(coordinator.run(), name=f"scan-{short_id(job.id)}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda done, job_id=job.id: self._task_finished(job_id, done))
        return task

    def _task_finished(self, job_id: str, task: asyncio.Task[JobState]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_task_failed",
                job_id=short_id(job_id),
                error=str(task.exception()),
            )

    async def _drain_submit(self, entry: OfflineEntry) -> JobState | None:
        job = self._job_for_entry(entry.entry_id)
        if job is not None:
            if job.id in self._tasks or job.state is JobState.RATE_LIMITED:
                return None
            if job.state.is_terminal:
                previous = job
                self._forget(previous.id)
                job = ScanJob(payload=entry.payload, offline_entry_id=entry.entry_id, retry_of=previous.id)
                self._register(job)
        else:
            job = ScanJob(payload=entry.payload, offline_entry_id=entry.entry_id)
            self._register(job)

        await self._dispatch(job)
        return await self.wait_settled(job.id)

    def _job_for_entry(self, entry_id: str) -> ScanJob | None:
        for job in self._jobs.values():
            if job.offline_entry_id == entry_id:
                return job
        return None

    def _emit(self, job: ScanJob, state_changed: bool) -> None:
        if state_changed:
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_state_changed",
                job_id=short_id(job.id),
                state=job.state.value,
                progress=job.progress_message,
            )
            self.store.add_event(
                job.id,
                job.state.value,
                {
                    "remote_job_id": job.remote_job_id,
                    "message": job.progress_message,
                    "error": job.error_detail,
                },
            )
        snapshot = job.snapshot()
        for observer in self.observers:
            observer.job_updated(snapshot)

    def _on_terminal(self, job: ScanJob) -> None:
        if job.state is JobState.CANCELED:
            delay = self.config.pipeline.canceled_expiry_seconds
        else:
            delay = self.config.pipeline.terminal_expiry_seconds
        previous = self._expiry.pop(job.id, None)
        if previous is not None:
            previous.cancel()
        self._expiry[job.id] = asyncio.get_running_loop().call_later(delay, self._expire, job.id)

    def _expire(self, job_id: str) -> None:
        self._expiry.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.state.is_terminal:
            self._forget(job_id)

    def _forget(self, job_id: str) -> None:
        handle = self._expiry.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        if self._jobs.pop(job_id, None) is None:
            return
        for observer in self.observers:
            observer.job_removed(job_id)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_finished)

    def _background_finished(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "background_task_failed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    def _on_rate_limit_tick(self, remaining_seconds: int, held: int) -> None:
        for observer in self.observers:
            observer.rate_limit_tick(remaining_seconds, held)

    def _on_connection_lost(self) -> None:
        self.connectivity.set_connected(False)

    def _on_connectivity_changed(self, connected: bool) -> None:
        if connected:
            self._spawn(self._drain_in_background(), "offline-drain")

    async def _drain_in_background(self) -> None:
        await self.drain_offline()
