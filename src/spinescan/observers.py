from __future__ import annotations

import logging
from typing import Protocol

from .app_logging import log_with_fields
from .models import JobSnapshot
from .utils import short_id


class JobObserver(Protocol):
    def job_updated(self, snapshot: JobSnapshot) -> None:
        ...

    def job_removed(self, job_id: str) -> None:
        ...

    def rate_limit_tick(self, remaining_seconds: int, held: int) -> None:
        ...


class LoggingObserver:
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def job_updated(self, snapshot: JobSnapshot) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_updated",
            job_id=short_id(snapshot.id),
            state=snapshot.state.value,
            progress=snapshot.progress_message,
        )

    def job_removed(self, job_id: str) -> None:
        log_with_fields(self.logger, logging.DEBUG, "job_removed", job_id=short_id(job_id))

    def rate_limit_tick(self, remaining_seconds: int, held: int) -> None:
        log_with_fields(
            self.logger,
            logging.DEBUG,
            "rate_limit_tick",
            remaining_seconds=remaining_seconds,
            held=held,
        )
