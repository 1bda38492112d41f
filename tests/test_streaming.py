from __future__ import annotations

import asyncio
import logging
import unittest
from contextlib import aclosing
from typing import AsyncIterator, Callable

import httpx

from spinescan.config import ApiConfig
from spinescan.models import Progress, TerminalCanceled, TerminalComplete, TerminalError
from spinescan.remote import RemoteClient
from spinescan.streaming import ServerSentEvent, SSEDecoder, StreamingEventClient, parse_event

BASE_URL = "https://scan.example.com"
STREAM_URL = f"{BASE_URL}/v3/jobs/scans/job-1/stream"


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("spinescan.test.streaming")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def make_streamer(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    timeout_seconds: float = 5.0,
) -> StreamingEventClient:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    remote = RemoteClient(ApiConfig(base_url=BASE_URL), "device-123", client=client, logger=quiet_logger())
    return StreamingEventClient(
        remote,
        max_attempts=3,
        backoff_seconds=0.01,
        timeout_seconds=timeout_seconds,
        logger=quiet_logger(),
    )


def sse_response(body: str) -> httpx.Response:
    return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, content=body.encode())


async def collect(streamer: StreamingEventClient, **kwargs: object) -> list[object]:
    events: list[object] = []
    async with aclosing(streamer.events(STREAM_URL, **kwargs)) as stream:
        async for event in stream:
            events.append(event)
    await streamer.remote.aclose()
    return events


class SSEDecoderTest(unittest.TestCase):
    def test_multiline_data_comments_and_ids(self) -> None:
        decoder = SSEDecoder()
        lines = [
            ": keep-alive",
            "id: 7",
            "event: progress",
            'data: {"message":',
            'data: "Reading spines"}',
            "",
            "",
        ]
        events = [event for event in (decoder.feed(line) for line in lines) if event is not None]
        self.assertEqual(
            events,
            [ServerSentEvent(event="progress", data='{"message":\n"Reading spines"}', id="7")],
        )

    def test_parse_event_mapping(self) -> None:
        self.assertEqual(
            parse_event(ServerSentEvent("segmented", '{"totalBooks": 4}')),
            Progress("Detected 4 books"),
        )
        self.assertEqual(
            parse_event(ServerSentEvent("error", '{"message": "Model overloaded", "code": "E_BUSY", "retryable": true}')),
            TerminalError("Model overloaded", code="E_BUSY", retryable=True),
        )
        self.assertEqual(parse_event(ServerSentEvent("error", "not json")), TerminalError("Unknown error"))
        self.assertEqual(parse_event(ServerSentEvent("completed", "")), TerminalComplete(None))
        self.assertEqual(parse_event(ServerSentEvent("canceled", "{}")), TerminalCanceled())
        self.assertIsNone(parse_event(ServerSentEvent("ping", ""), quiet_logger()))
        self.assertIsNone(parse_event(ServerSentEvent("progress", "[1, 2]"), quiet_logger()))
        self.assertIsNone(parse_event(ServerSentEvent("mystery", "{}"), quiet_logger()))


class StreamingEventClientTest(unittest.IsolatedAsyncioTestCase):
    async def test_progress_then_complete(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return sse_response(
                "event: progress\ndata: {\"message\": \"Uploading\"}\n\n"
                ": heartbeat\n\n"
                "event: ping\ndata: {}\n\n"
                "event: book_progress\ndata: {\"current\": 1, \"total\": 3}\n\n"
                f"event: complete\ndata: {{\"resultsUrl\": \"{BASE_URL}/v3/jobs/scans/job-1/results\"}}\n\n"
                "event: progress\ndata: {\"message\": \"never delivered\"}\n\n"
            )

        events = await collect(make_streamer(handler), auth_token="token-abc")
        self.assertEqual(
            events,
            [
                Progress("Uploading"),
                Progress("Processing book 1/3"),
                TerminalComplete(f"{BASE_URL}/v3/jobs/scans/job-1/results"),
            ],
        )
        self.assertEqual(seen[0].headers["Authorization"], "Bearer token-abc")
        self.assertEqual(seen[0].headers["Accept"], "text/event-stream")

    async def test_retries_before_first_event(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused", request=request)
            if calls == 2:
                return httpx.Response(503)
            return sse_response("event: canceled\ndata: {}\n\n")

        attempts: list[int] = []
        events = await collect(make_streamer(handler), on_attempt=attempts.append)
        self.assertEqual(attempts, [1, 2, 3])
        self.assertEqual(events, [TerminalCanceled()])

    async def test_exhausted_attempts_end_in_error(self) -> None:
        events = await collect(make_streamer(lambda request: httpx.Response(502)))
        self.assertEqual(len(events), 1)
        assert isinstance(events[0], TerminalError)
        self.assertIn("after 3 attempts", events[0].detail)
        self.assertIn("HTTP 502", events[0].detail)

    async def test_disconnect_after_first_event_is_terminal(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return sse_response("event: progress\ndata: {\"message\": \"Reading\"}\n\n")

        events = await collect(make_streamer(handler))
        self.assertEqual(calls, 1)
        self.assertEqual(events[0], Progress("Reading"))
        assert isinstance(events[1], TerminalError)
        self.assertIn("before a terminal event", events[1].detail)

    async def test_stream_deadline(self) -> None:
        async def slow_body() -> AsyncIterator[bytes]:
            yield b"event: progress\ndata: {\"message\": \"Reading\"}\n\n"
            await asyncio.sleep(10)
            yield b"event: complete\ndata: {}\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, content=slow_body())

        events = await collect(make_streamer(handler, timeout_seconds=0.2))
        self.assertEqual(events[0], Progress("Reading"))
        assert isinstance(events[1], TerminalError)
        self.assertIn("timed out", events[1].detail)


if __name__ == "__main__":
    unittest.main()
