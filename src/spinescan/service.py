from __future__ import annotations

import logging
from typing import AsyncIterator, Callable

from .config import AppConfig
from .models import BookRecord, StreamEvent, UploadReceipt
from .remote import RemoteClient
from .resolver import ResultsResolver
from .streaming import StreamingEventClient
from .upload import UploadClient


class ScanService:
    """The remote calls one job makes, bundled so a coordinator can be handed a fake."""

    def __init__(
        self,
        uploader: UploadClient,
        streamer: StreamingEventClient,
        resolver: ResultsResolver,
        remote: RemoteClient,
    ) -> None:
        self.uploader = uploader
        self.streamer = streamer
        self.resolver = resolver
        self.remote = remote

    @classmethod
    def from_config(cls, config: AppConfig, device_id: str, logger: logging.Logger) -> ScanService:
        remote = RemoteClient(config.api, device_id, logger=logger)
        return cls(
            uploader=UploadClient(remote, logger),
            streamer=StreamingEventClient(
                remote,
                max_attempts=config.pipeline.stream_max_attempts,
                backoff_seconds=config.pipeline.stream_backoff_seconds,
                timeout_seconds=config.pipeline.stream_timeout_seconds,
                logger=logger,
            ),
            resolver=ResultsResolver(remote, logger),
            remote=remote,
        )

    async def upload(self, payload: bytes) -> UploadReceipt:
        return await self.uploader.upload(payload)

    def stream(
        self,
        stream_url: str,
        auth_token: str | None = None,
        on_attempt: Callable[[int], None] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        return self.streamer.events(stream_url, auth_token, on_attempt)

    async def resolve(self, results_url: str | None, auth_token: str | None = None) -> list[BookRecord]:
        return await self.resolver.resolve(results_url, auth_token)

    async def cleanup(self, remote_job_id: str, auth_token: str | None = None) -> None:
        await self.remote.cleanup_job(remote_job_id, auth_token)

    async def aclose(self) -> None:
        await self.remote.aclose()
