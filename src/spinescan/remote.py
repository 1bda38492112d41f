from __future__ import annotations

import logging
from typing import Any

import httpx

from .app_logging import log_with_fields
from .config import ApiConfig
from .errors import ProtocolError, TransportError

DEVICE_HEADER = "X-Device-ID"
SCANS_PATH = "/v3/jobs/scans"


def problem_detail(response: httpx.Response) -> tuple[str, str | None, Any]:
    """Pull a human-readable detail out of an error response.

    The service answers errors with RFC 9457 problem documents; older paths use
    `{"message": ...}` or plain text.
    """
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None

    code: str | None = None
    if isinstance(body, dict):
        for source in (body, body.get("error") if isinstance(body.get("error"), dict) else None):
            if not source:
                continue
            code = code or (str(source["code"]) if source.get("code") else None)
            for key in ("detail", "title", "message"):
                value = source.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip(), code, body
    text = response.text.strip() if body is None else ""
    if text:
        return text[:300], code, body
    return f"Server error (HTTP {response.status_code} {response.reason_phrase})".strip(), code, body


class RemoteClient:
    """Shared HTTP plumbing for the scan service: base URL, device header, error mapping."""

    def __init__(
        self,
        api_config: ApiConfig,
        device_id: str,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_config = api_config
        self.device_id = device_id
        self.logger = logger or logging.getLogger("spinescan.remote")
        self.client = client or httpx.AsyncClient(
            base_url=api_config.base_url,
            headers={"User-Agent": api_config.user_agent},
            timeout=httpx.Timeout(
                api_config.upload_timeout_seconds,
                connect=api_config.connect_timeout_seconds,
            ),
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def headers(self, auth_token: str | None = None) -> dict[str, str]:
        headers = {DEVICE_HEADER: self.device_id}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        return headers

    def absolute_url(self, url: str) -> str:
        return str(self.client.base_url.join(url))

    async def request(self, method: str, url: str, *, context: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{context} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{context} failed: {str(exc) or type(exc).__name__}") from exc

    async def cleanup_job(self, remote_job_id: str, auth_token: str | None = None) -> None:
        response = await self.request(
            "DELETE",
            f"{SCANS_PATH}/{remote_job_id}/cleanup",
            context=f"cleanup of job {remote_job_id}",
            headers=self.headers(auth_token),
            timeout=self.api_config.cleanup_timeout_seconds,
        )
        if response.status_code in (200, 202, 204, 404):
            log_with_fields(
                self.logger,
                logging.INFO,
                "remote_cleanup_done",
                remote_job_id=remote_job_id,
                status=response.status_code,
            )
            return
        detail, code, _ = problem_detail(response)
        raise ProtocolError(detail, status_code=response.status_code, code=code)
