from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Callable, Coroutine

from .app_logging import log_with_fields
from .catalog import Catalog
from .errors import ProtocolError, RateLimited, ResolutionError, ScanError, TransportError
from .gate import ConcurrencyGate
from .models import (
    JobState,
    Progress,
    ScanJob,
    TerminalCanceled,
    TerminalError,
    TerminalEvent,
)
from .offline import OfflineQueue
from .rate_limit import RateLimiter
from .service import ScanService
from .utils import short_id

EmitCallback = Callable[[ScanJob, bool], None]
TerminalCallback = Callable[[ScanJob], None]
SpawnCallback = Callable[[Coroutine[Any, Any, None], str], None]
ConnectionLostCallback = Callable[[], None]

WAITING_FOR_SLOT = "Waiting for a free slot"


class JobCoordinator:
    """Runs one ScanJob through upload, streaming and resolution.

    The gate slot is held only while the job talks to the server; rate-limit
    and offline deferrals happen after it has been released.
    """

    def __init__(
        self,
        job: ScanJob,
        service: ScanService,
        *,
        gate: ConcurrencyGate,
        rate_limiter: RateLimiter,
        offline_queue: OfflineQueue,
        catalog: Catalog,
        emit: EmitCallback,
        on_terminal: TerminalCallback,
        spawn: SpawnCallback,
        on_connection_lost: ConnectionLostCallback,
        logger: logging.Logger,
    ) -> None:
        self.job = job
        self.service = service
        self.gate = gate
        self.rate_limiter = rate_limiter
        self.offline_queue = offline_queue
        self.catalog = catalog
        self.emit = emit
        self.on_terminal = on_terminal
        self.spawn = spawn
        self.on_connection_lost = on_connection_lost
        self.logger = logger
        self._finished = False

    async def run(self) -> JobState:
        job = self.job
        try:
            if self.gate.active_count >= self.gate.max_slots or self.gate.queue_depth:
                job.set_progress(WAITING_FOR_SLOT)
                self.emit(job, False)
            async with self.gate.slot(job.id):
                deferral = await self._run_admitted()

            if isinstance(deferral, RateLimited):
                await self._defer_rate_limited(deferral)
            elif isinstance(deferral, TransportError):
                await self._defer_offline(deferral)
        except asyncio.CancelledError:
            if not job.state.is_terminal:
                self._transition(JobState.CANCELED, "Canceled")
            self._finish()
            raise
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_crashed",
                exc_info=True,
                job_id=short_id(job.id),
                state=job.state.value,
                error=str(exc),
            )
            if not job.state.is_terminal:
                self._fail(f"Unexpected error: {exc}")

        if job.state.is_terminal:
            self._finish()
        return job.state

    async def _run_admitted(self) -> ScanError | None:
        """Returns the deferral signal when the upload was refused, else None."""
        job = self.job
        self._transition(JobState.UPLOADING, "Uploading...")
        try:
            receipt = await self.service.upload(job.payload)
        except (RateLimited, TransportError) as exc:
            return exc
        except ProtocolError as exc:
            self._fail(f"Upload failed: {exc}")
            return None

        job.assign_remote(receipt)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_uploaded",
            job_id=short_id(job.id),
            remote_job_id=receipt.job_id,
        )
        self._transition(JobState.STREAMING, "Analyzing...")

        terminal = await self._consume_stream()
        if isinstance(terminal, TerminalError):
            detail = terminal.detail if terminal.code is None else f"{terminal.detail} ({terminal.code})"
            self._fail(detail)
            return None
        if isinstance(terminal, TerminalCanceled):
            self._transition(JobState.CANCELED, "Canceled by server")
            return None

        job.results_url = terminal.results_url
        self._transition(JobState.RESOLVING, "Fetching results...")
        try:
            books = await self.service.resolve(terminal.results_url, job.auth_token)
        except ResolutionError as exc:
            self._fail(f"Could not fetch results: {exc}")
            return None

        try:
            decisions = await self.catalog.add_books(job.id, books)
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "catalog_failed",
                exc_info=True,
                job_id=short_id(job.id),
                error=str(exc),
            )
            self._fail(f"Could not save books: {exc}")
            return None

        job.books = books
        duplicates = sum(1 for decision in decisions if decision.action == "duplicate")
        message = f"Found {len(books)} book(s)"
        if duplicates:
            message += f", {duplicates} flagged for review"
        self._transition(JobState.DONE, message)
        if job.offline_entry_id is not None:
            await self.offline_queue.remove(job.offline_entry_id)
        return None

    async def _consume_stream(self) -> TerminalEvent:
        job = self.job
        assert job.stream_url is not None

        def on_attempt(attempt: int) -> None:
            job.attempt = attempt
            if attempt > 1:
                job.set_progress(f"Reconnecting (attempt {attempt})...")
                self.emit(job, False)

        async with aclosing(self.service.stream(job.stream_url, job.auth_token, on_attempt)) as events:
            async for event in events:
                if isinstance(event, Progress):
                    job.set_progress(event.message)
                    self.emit(job, False)
                    continue
                return event
        return TerminalError("stream ended without a terminal event")

    async def _defer_rate_limited(self, signal: RateLimited) -> None:
        job = self.job
        self._transition(JobState.RATE_LIMITED, str(signal))
        cooldown = await self.rate_limiter.defer(job, signal.retry_after)
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_rate_limited",
            job_id=short_id(job.id),
            cooldown_seconds=cooldown,
        )

    async def _defer_offline(self, error: TransportError) -> None:
        job = self.job
        if job.offline_entry_id is None:
            entry = await self.offline_queue.enqueue(job.payload)
            job.offline_entry_id = entry.entry_id
        self._transition(JobState.OFFLINE, "Offline - will upload when the connection returns")
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_offline",
            job_id=short_id(job.id),
            entry_id=short_id(job.offline_entry_id),
            error=str(error),
        )
        # the next restored signal drains this entry
        self.on_connection_lost()

    def _transition(self, state: JobState, message: str | None = None) -> None:
        self.job.transition(state, message)
        self.emit(self.job, True)

    def _fail(self, detail: str) -> None:
        job = self.job
        job.error_detail = detail
        log_with_fields(
            self.logger,
            logging.ERROR,
            "job_failed",
            job_id=short_id(job.id),
            remote_job_id=job.remote_job_id,
            state=job.state.value,
            error=detail,
        )
        self._transition(JobState.ERROR, detail)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        job = self.job
        if job.remote_job_id is not None:
            self.spawn(
                self._cleanup(job.remote_job_id, job.auth_token),
                f"cleanup-{short_id(job.remote_job_id)}",
            )
        self.on_terminal(job)

    async def _cleanup(self, remote_job_id: str, auth_token: str | None) -> None:
        try:
            await self.service.cleanup(remote_job_id, auth_token)
        except ScanError as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "cleanup_failed",
                remote_job_id=remote_job_id,
                error=str(exc),
            )
