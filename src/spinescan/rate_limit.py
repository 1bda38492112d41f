from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping

from .app_logging import log_with_fields
from .models import ScanJob
from .utils import short_id

RETRY_AFTER_HEADER = "Retry-After"
RETRY_AFTER_MS_FIELD = "retryAfterMs"

ResubmitCallback = Callable[[ScanJob], Awaitable[None] | None]
TickListener = Callable[[int, int], None]


def _header_seconds(value: str | None, now: datetime | None = None) -> float | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        try:
            moment = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        seconds = (moment - (now or datetime.now(UTC))).total_seconds()
    if math.isnan(seconds) or seconds < 0:
        return None
    return seconds


def _body_milliseconds(body: Any) -> float | None:
    if not isinstance(body, dict):
        return None
    candidates = [body]
    for nested_key in ("error", "details", "data"):
        nested = body.get(nested_key)
        if isinstance(nested, dict):
            candidates.append(nested)
    for candidate in candidates:
        value = candidate.get(RETRY_AFTER_MS_FIELD)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value >= 0:
            return float(value) / 1000.0
        if isinstance(value, str):
            try:
                parsed = float(value)
            except ValueError:
                continue
            if parsed >= 0:
                return parsed / 1000.0
    return None


def parse_retry_after(
    headers: Mapping[str, str] | None,
    body: Any = None,
    *,
    now: datetime | None = None,
) -> float | None:
    """Normalize the server's cooldown guidance to seconds.

    `Retry-After` is in seconds (or an HTTP date); the problem body's
    `retryAfterMs` is in milliseconds. When both are present the longer one wins.
    Returns None when neither is usable.
    """
    header_value = None
    if headers is not None:
        header_value = headers.get(RETRY_AFTER_HEADER)
        if header_value is None:
            header_value = headers.get(RETRY_AFTER_HEADER.lower())
    found = [
        value
        for value in (_header_seconds(header_value, now), _body_milliseconds(body))
        if value is not None
    ]
    if not found:
        return None
    return max(found)


@dataclass(slots=True)
class RateLimitWindow:
    active: bool = False
    expires_at: float | None = None
    held: list[ScanJob] = field(default_factory=list)


class RateLimiter:
    def __init__(
        self,
        *,
        default_cooldown: float = 60.0,
        tick_seconds: float = 1.0,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_cooldown = default_cooldown
        self.tick_seconds = tick_seconds
        self.logger = logger or logging.getLogger("spinescan.rate_limit")
        self.clock = clock
        self.window = RateLimitWindow()
        self._lock = asyncio.Lock()
        self._countdown: asyncio.Task[None] | None = None
        self._resubmit: ResubmitCallback | None = None
        self._listeners: list[TickListener] = []

    def set_resubmit(self, callback: ResubmitCallback) -> None:
        self._resubmit = callback

    def add_listener(self, listener: TickListener) -> None:
        self._listeners.append(listener)

    @property
    def active(self) -> bool:
        return self.window.active

    @property
    def held_count(self) -> int:
        return len(self.window.held)

    def held_jobs(self) -> list[str]:
        return [job.id for job in self.window.held]

    def remaining_seconds(self) -> int:
        if not self.window.active or self.window.expires_at is None:
            return 0
        return max(0, math.ceil(self.window.expires_at - self.clock()))

    async def defer(self, job: ScanJob, retry_after: float | None) -> float:
        """Open (or extend) the window and hold `job` until it closes."""
        cooldown = retry_after if retry_after is not None and retry_after > 0 else self.default_cooldown
        async with self._lock:
            expires_at = self.clock() + cooldown
            if not self.window.active or (self.window.expires_at or 0.0) < expires_at:
                self.window.expires_at = expires_at
            self.window.active = True
            self._append(job)
            held = len(self.window.held)
            if self._countdown is None or self._countdown.done():
                self._countdown = asyncio.create_task(self._run_countdown(), name="rate-limit-countdown")
        log_with_fields(
            self.logger,
            logging.WARNING,
            "rate_limit_window_opened",
            job_id=short_id(job.id),
            cooldown_seconds=cooldown,
            held=held,
        )
        return cooldown

    async def hold(self, job: ScanJob) -> bool:
        """Hold `job` if a window is open; False means submit it normally."""
        async with self._lock:
            if not self.window.active:
                return False
            self._append(job)
            held = len(self.window.held)
        log_with_fields(self.logger, logging.INFO, "rate_limit_job_held", job_id=short_id(job.id), held=held)
        return True

    async def discard(self, job_id: str) -> bool:
        async with self._lock:
            before = len(self.window.held)
            self.window.held = [job for job in self.window.held if job.id != job_id]
            return len(self.window.held) != before

    async def close(self) -> None:
        task = self._countdown
        self._countdown = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _append(self, job: ScanJob) -> None:
        if all(held.id != job.id for held in self.window.held):
            self.window.held.append(job)

    async def _run_countdown(self) -> None:
        while True:
            async with self._lock:
                expires_at = self.window.expires_at or self.clock()
                left = expires_at - self.clock()
                if left <= 0:
                    released = list(self.window.held)
                    self.window = RateLimitWindow()
                    # a 429 during resubmission must start a fresh countdown
                    self._countdown = None
                    break
                remaining = math.ceil(left)
                held = len(self.window.held)
            self._notify(remaining, held)
            await asyncio.sleep(min(self.tick_seconds, left))

        self._notify(0, 0)
        log_with_fields(self.logger, logging.INFO, "rate_limit_window_closed", resubmitting=len(released))
        for job in released:
            await self._resubmit_one(job)

    async def _resubmit_one(self, job: ScanJob) -> None:
        if self._resubmit is None:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "rate_limit_resubmit_missing",
                job_id=short_id(job.id),
            )
            return
        try:
            result = self._resubmit(job)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "rate_limit_resubmit_failed",
                exc_info=True,
                job_id=short_id(job.id),
                error=str(exc),
            )

    def _notify(self, remaining: int, held: int) -> None:
        for listener in self._listeners:
            listener(remaining, held)
