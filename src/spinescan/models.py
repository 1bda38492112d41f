from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .utils import new_local_id, utc_now_iso


class JobState(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    STREAMING = "streaming"
    RESOLVING = "resolving"
    DONE = "done"
    RATE_LIMITED = "rate_limited"
    OFFLINE = "offline"
    ERROR = "error"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_deferred(self) -> bool:
        return self in DEFERRED_STATES


TERMINAL_STATES = frozenset({JobState.DONE, JobState.ERROR, JobState.CANCELED})
DEFERRED_STATES = frozenset({JobState.RATE_LIMITED, JobState.OFFLINE})

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset(
        {JobState.UPLOADING, JobState.RATE_LIMITED, JobState.OFFLINE, JobState.ERROR, JobState.CANCELED}
    ),
    JobState.UPLOADING: frozenset(
        {JobState.STREAMING, JobState.RATE_LIMITED, JobState.OFFLINE, JobState.ERROR, JobState.CANCELED}
    ),
    JobState.STREAMING: frozenset({JobState.RESOLVING, JobState.ERROR, JobState.CANCELED}),
    JobState.RESOLVING: frozenset({JobState.DONE, JobState.ERROR, JobState.CANCELED}),
    JobState.RATE_LIMITED: frozenset(
        {JobState.UPLOADING, JobState.OFFLINE, JobState.ERROR, JobState.CANCELED}
    ),
    JobState.OFFLINE: frozenset(
        {JobState.UPLOADING, JobState.RATE_LIMITED, JobState.ERROR, JobState.CANCELED}
    ),
    JobState.DONE: frozenset(),
    JobState.ERROR: frozenset(),
    JobState.CANCELED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(slots=True)
class BookRecord:
    title: str
    author: str
    isbn: str | None = None
    cover_url: str | None = None
    publisher: str | None = None
    published_date: str | None = None
    page_count: int | None = None
    format: str | None = None
    confidence: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> BookRecord:
        if not isinstance(payload, dict):
            raise ValueError("book record must be an object")
        title = payload.get("title")
        author = payload.get("author")
        if not isinstance(title, str) or not title.strip():
            raise ValueError("book record is missing `title`")
        if not isinstance(author, str):
            raise ValueError("book record is missing `author`")

        page_count = payload.get("pageCount")
        confidence = payload.get("confidence")
        return cls(
            title=title.strip(),
            author=author.strip(),
            isbn=_optional_str(payload.get("isbn")),
            cover_url=_optional_str(payload.get("coverUrl")),
            publisher=_optional_str(payload.get("publisher")),
            published_date=_optional_str(payload.get("publishedDate")),
            page_count=int(page_count) if isinstance(page_count, (int, float)) else None,
            format=_optional_str(payload.get("format")),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
            raw=dict(payload),
        )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True, frozen=True)
class UploadReceipt:
    job_id: str
    stream_url: str
    auth_token: str | None = None


@dataclass(slots=True, frozen=True)
class Progress:
    message: str


@dataclass(slots=True, frozen=True)
class TerminalComplete:
    results_url: str | None


@dataclass(slots=True, frozen=True)
class TerminalError:
    detail: str
    code: str | None = None
    retryable: bool = False


@dataclass(slots=True, frozen=True)
class TerminalCanceled:
    pass


StreamEvent = Union[Progress, TerminalComplete, TerminalError, TerminalCanceled]
TerminalEvent = Union[TerminalComplete, TerminalError, TerminalCanceled]


@dataclass(slots=True, frozen=True)
class OfflineEntry:
    entry_id: str
    payload: bytes
    enqueued_at: str


@dataclass(slots=True, frozen=True)
class CatalogDecision:
    book: BookRecord
    action: str
    book_id: int | None = None
    duplicate_of: int | None = None


@dataclass(slots=True, frozen=True)
class JobSnapshot:
    id: str
    state: JobState
    remote_job_id: str | None
    progress_message: str | None
    error_detail: str | None
    attempt: int
    book_count: int
    offline_entry_id: str | None
    retry_of: str | None
    updated_at: str


@dataclass(slots=True)
class ScanJob:
    payload: bytes
    id: str = field(default_factory=new_local_id)
    state: JobState = JobState.CREATED
    remote_job_id: str | None = None
    stream_url: str | None = None
    results_url: str | None = None
    auth_token: str | None = None
    progress_message: str | None = None
    error_detail: str | None = None
    attempt: int = 0
    offline_entry_id: str | None = None
    retry_of: str | None = None
    books: list[BookRecord] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def can_transition(self, state: JobState) -> bool:
        return state in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, state: JobState, message: str | None = None) -> None:
        if not self.can_transition(state):
            raise InvalidTransition(f"job {self.id}: {self.state.value} -> {state.value} is not allowed")
        self.state = state
        self.progress_message = message
        self.updated_at = utc_now_iso()

    def set_progress(self, message: str) -> None:
        self.progress_message = message
        self.updated_at = utc_now_iso()

    def assign_remote(self, receipt: UploadReceipt) -> None:
        if self.remote_job_id is not None and self.remote_job_id != receipt.job_id:
            raise InvalidTransition(
                f"job {self.id} already has remote id {self.remote_job_id}, refusing {receipt.job_id}"
            )
        self.remote_job_id = receipt.job_id
        self.stream_url = receipt.stream_url
        self.auth_token = receipt.auth_token
        self.updated_at = utc_now_iso()

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            state=self.state,
            remote_job_id=self.remote_job_id,
            progress_message=self.progress_message,
            error_detail=self.error_detail,
            attempt=self.attempt,
            book_count=len(self.books),
            offline_entry_id=self.offline_entry_id,
            retry_of=self.retry_of,
            updated_at=self.updated_at,
        )
