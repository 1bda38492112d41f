from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx

from .app_logging import log_with_fields
from .models import (
    Progress,
    StreamEvent,
    TerminalCanceled,
    TerminalComplete,
    TerminalError,
)
from .remote import RemoteClient

TERMINAL_EVENTS = (TerminalComplete, TerminalError, TerminalCanceled)
IGNORED_EVENT_TYPES = frozenset({"ping", "heartbeat", "enrichment_degraded"})


@dataclass(slots=True, frozen=True)
class ServerSentEvent:
    event: str
    data: str
    id: str | None = None


class SSEDecoder:
    """Incremental decoder for the text/event-stream line format."""

    def __init__(self) -> None:
        self.last_event_id: str | None = None
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> ServerSentEvent | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id" and "\0" not in value:
            self.last_event_id = value
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if self._event is None and not self._data:
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self.last_event_id,
        )
        self._event = None
        self._data = []
        return event


def _json_object(data: str) -> dict[str, Any] | None:
    if not data.strip():
        return None
    try:
        value = json.loads(data)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_event(sse: ServerSentEvent, logger: logging.Logger | None = None) -> StreamEvent | None:
    """Map one server-sent event to a pipeline event; None means skip it."""
    logger = logger or logging.getLogger("spinescan.streaming")
    kind = sse.event.strip().lower()
    payload = _json_object(sse.data)

    if kind == "progress":
        message = payload.get("message") if payload else None
        if not isinstance(message, str):
            log_with_fields(logger, logging.WARNING, "stream_event_malformed", event=kind, data=sse.data[:200])
            return None
        return Progress(message)

    if kind == "book_progress":
        current = payload.get("current") if payload else None
        total = payload.get("total") if payload else None
        if not isinstance(current, int) or not isinstance(total, int):
            log_with_fields(logger, logging.WARNING, "stream_event_malformed", event=kind, data=sse.data[:200])
            return None
        return Progress(f"Processing book {current}/{total}")

    if kind == "segmented":
        total_books = payload.get("totalBooks") if payload else None
        if not isinstance(total_books, int):
            log_with_fields(logger, logging.WARNING, "stream_event_malformed", event=kind, data=sse.data[:200])
            return None
        return Progress(f"Detected {total_books} books")

    if kind in ("complete", "completed"):
        results_url = payload.get("resultsUrl") if payload else None
        return TerminalComplete(results_url if isinstance(results_url, str) and results_url else None)

    if kind == "error":
        message = payload.get("message") if payload else None
        code = payload.get("code") if payload else None
        retryable = payload.get("retryable") if payload else None
        return TerminalError(
            detail=message if isinstance(message, str) and message else "Unknown error",
            code=str(code) if code else None,
            retryable=bool(retryable),
        )

    if kind in ("canceled", "cancelled"):
        return TerminalCanceled()

    if kind not in IGNORED_EVENT_TYPES:
        log_with_fields(logger, logging.INFO, "stream_event_unknown", event=kind)
    return None


class StreamingEventClient:
    def __init__(
        self,
        remote: RemoteClient,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 300.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.remote = remote
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("spinescan.streaming")

    async def events(
        self,
        stream_url: str,
        auth_token: str | None = None,
        on_attempt: Callable[[int], None] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events for one job until the first terminal one.

        Connection problems before any event are retried; after the first event
        a disconnect ends the sequence with TerminalError. Closing the generator
        closes the HTTP response.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        delivered = False
        failure = "no connection attempt made"
        headers = {**self.remote.headers(auth_token), "Accept": "text/event-stream"}

        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            request = self.remote.client.build_request(
                "GET",
                stream_url,
                headers=headers,
                timeout=httpx.Timeout(None, connect=self.remote.api_config.connect_timeout_seconds),
            )
            response: httpx.Response | None = None
            try:
                async with asyncio.timeout_at(deadline):
                    response = await self.remote.client.send(request, stream=True)

                if response.status_code != 200:
                    failure = f"stream connect returned HTTP {response.status_code}"
                else:
                    decoder = SSEDecoder()
                    lines = response.aiter_lines()
                    while True:
                        try:
                            async with asyncio.timeout_at(deadline):
                                line = await anext(lines)
                        except StopAsyncIteration:
                            break
                        sse = decoder.feed(line)
                        if sse is None:
                            continue
                        event = parse_event(sse, self.logger)
                        if event is None:
                            continue
                        delivered = True
                        yield event
                        if isinstance(event, TERMINAL_EVENTS):
                            return
                    if delivered:
                        yield TerminalError("stream closed before a terminal event")
                        return
                    failure = "stream closed before any event"
            except TimeoutError:
                log_with_fields(self.logger, logging.WARNING, "stream_timeout", stream_url=stream_url)
                yield TerminalError(f"stream timed out after {self.timeout_seconds:g}s")
                return
            except httpx.HTTPError as exc:
                if delivered:
                    log_with_fields(
                        self.logger,
                        logging.WARNING,
                        "stream_disconnected",
                        stream_url=stream_url,
                        error=str(exc),
                    )
                    yield TerminalError(f"stream disconnected: {str(exc) or type(exc).__name__}")
                    return
                failure = f"stream connection failed: {str(exc) or type(exc).__name__}"
            finally:
                if response is not None:
                    await response.aclose()

            log_with_fields(
                self.logger,
                logging.WARNING,
                "stream_connect_failed",
                stream_url=stream_url,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=failure,
            )
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                if loop.time() + delay >= deadline:
                    yield TerminalError(f"stream timed out after {self.timeout_seconds:g}s")
                    return
                await asyncio.sleep(delay)

        yield TerminalError(f"stream unavailable after {self.max_attempts} attempts: {failure}")
