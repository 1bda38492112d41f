from __future__ import annotations

import logging
from typing import Any

from .app_logging import log_with_fields
from .errors import ProtocolError, RateLimited
from .models import UploadReceipt
from .rate_limit import parse_retry_after
from .remote import SCANS_PATH, RemoteClient, problem_detail

IMAGE_FIELD = "photos[]"
IMAGE_FILENAME = "spine.jpg"
IMAGE_CONTENT_TYPE = "image/jpeg"
ACCEPTED_STATUSES = (200, 202)


def _receipt_from_body(body: Any) -> tuple[str, str, str | None]:
    if not isinstance(body, dict):
        raise ProtocolError("upload response is not a JSON object")
    if body.get("success") is False:
        raise ProtocolError("upload response reported success=false")
    data = body.get("data") if isinstance(body.get("data"), dict) else body

    job_id = data.get("jobId")
    stream_url = data.get("streamUrl") or data.get("sseUrl")
    if not isinstance(job_id, str) or not job_id:
        raise ProtocolError("upload response is missing `jobId`")
    if not isinstance(stream_url, str) or not stream_url:
        raise ProtocolError("upload response is missing `streamUrl`")
    auth_token = data.get("authToken")
    return job_id, stream_url, auth_token if isinstance(auth_token, str) and auth_token else None


class UploadClient:
    def __init__(self, remote: RemoteClient, logger: logging.Logger | None = None) -> None:
        self.remote = remote
        self.logger = logger or logging.getLogger("spinescan.upload")

    async def upload(self, payload: bytes) -> UploadReceipt:
        """Submit one image. Raises TransportError, RateLimited or ProtocolError."""
        response = await self.remote.request(
            "POST",
            SCANS_PATH,
            context="scan upload",
            headers=self.remote.headers(),
            files={IMAGE_FIELD: (IMAGE_FILENAME, payload, IMAGE_CONTENT_TYPE)},
            timeout=self.remote.api_config.upload_timeout_seconds,
        )

        if response.status_code == 429:
            detail, _, body = problem_detail(response)
            retry_after = parse_retry_after(response.headers, body)
            log_with_fields(
                self.logger,
                logging.WARNING,
                "upload_rate_limited",
                retry_after=retry_after,
                detail=detail,
            )
            raise RateLimited(retry_after)

        if response.status_code not in ACCEPTED_STATUSES:
            detail, code, _ = problem_detail(response)
            raise ProtocolError(detail, status_code=response.status_code, code=code)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError("upload response is not valid JSON", status_code=response.status_code) from exc
        job_id, stream_url, auth_token = _receipt_from_body(body)

        receipt = UploadReceipt(
            job_id=job_id,
            stream_url=self.remote.absolute_url(stream_url),
            auth_token=auth_token,
        )
        log_with_fields(
            self.logger,
            logging.INFO,
            "upload_accepted",
            remote_job_id=receipt.job_id,
            status=response.status_code,
            bytes=len(payload),
        )
        return receipt
