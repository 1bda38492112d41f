from __future__ import annotations

import logging
from urllib.parse import urlsplit

import httpx

from .app_logging import log_with_fields
from .errors import ResolutionError, TransportError
from .models import BookRecord
from .remote import RemoteClient, problem_detail


def _is_absolute_http(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class ResultsResolver:
    """Second phase of a scan: turn a `complete` event's results address into books."""

    def __init__(self, remote: RemoteClient, logger: logging.Logger | None = None) -> None:
        self.remote = remote
        self.logger = logger or logging.getLogger("spinescan.resolver")

    async def resolve(self, results_url: str | None, auth_token: str | None = None) -> list[BookRecord]:
        if not results_url:
            raise ResolutionError("scan completed without a results address")
        try:
            address = self.remote.absolute_url(results_url)
        except (httpx.InvalidURL, ValueError) as exc:
            raise ResolutionError(f"results address cannot be parsed: {results_url!r}") from exc
        if not _is_absolute_http(address):
            raise ResolutionError(f"results address is not an http(s) URL: {results_url!r}")

        try:
            response = await self.remote.request(
                "GET",
                address,
                context="results fetch",
                headers=self.remote.headers(auth_token),
                timeout=self.remote.api_config.results_timeout_seconds,
            )
        except TransportError as exc:
            raise ResolutionError(str(exc)) from exc

        if response.status_code != 200:
            detail, _, _ = problem_detail(response)
            raise ResolutionError(f"results fetch returned HTTP {response.status_code}: {detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ResolutionError("results response is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ResolutionError("results response is not a JSON object")
        if body.get("success") is False:
            detail, _, _ = problem_detail(response)
            raise ResolutionError(f"results fetch reported failure: {detail}")

        data = body.get("data")
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ResolutionError("results response is missing `data.results`")

        books: list[BookRecord] = []
        for index, item in enumerate(results):
            try:
                books.append(BookRecord.from_payload(item))
            except ValueError as exc:
                raise ResolutionError(f"result {index}: {exc}") from exc

        if not books:
            log_with_fields(self.logger, logging.WARNING, "results_empty", results_url=results_url)
        else:
            log_with_fields(self.logger, logging.INFO, "results_resolved", books=len(books))
        return books
