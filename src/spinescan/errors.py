from __future__ import annotations


class ScanError(Exception):
    """Base class for everything the scan pipeline raises on purpose."""


class TransportError(ScanError):
    """No connectivity, or the request timed out before a response arrived."""


class RateLimited(ScanError):
    """The server refused the request for now; carries the normalized delay."""

    def __init__(self, retry_after: float | None, detail: str | None = None) -> None:
        self.retry_after = retry_after
        if detail is None:
            if retry_after is None:
                detail = "Rate limited - retry later"
            else:
                detail = f"Rate limited - retry after {int(retry_after)}s"
        super().__init__(detail)


class ProtocolError(ScanError):
    """The server answered, but not with something this client understands."""

    def __init__(self, detail: str, *, status_code: int | None = None, code: str | None = None) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(detail)


class ResolutionError(ScanError):
    """A job finished remotely but its results could not be obtained."""
