"""Error taxonomy for orchestrated fetches."""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    RATE_LIMITED = "RateLimited"
    NETWORK_FAILURE = "NetworkFailure"
    TIMEOUT = "Timeout"
    EXHAUSTED = "Exhausted"


class FetchError(Exception):
    """Base class for terminal fetch failures."""

    kind: ErrorKind

    def __init__(self, message: str, *, key: str = "", endpoint: str = "") -> None:
        super().__init__(message)
        self.key = key
        self.endpoint = endpoint


class RateLimitedError(FetchError):
    """The endpoint's window is exhausted or it is blocked after throttling."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        key: str = "",
        endpoint: str = "",
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message, key=key, endpoint=endpoint)
        self.retry_after_ms = retry_after_ms


class NetworkFailureError(FetchError):
    """do_fetch failed for a reason other than throttling."""

    kind = ErrorKind.NETWORK_FAILURE


class FetchTimeoutError(FetchError):
    """A pending request outlived the stale-pending threshold."""

    kind = ErrorKind.TIMEOUT


class ExhaustedError(FetchError):
    """Retries ran out and no stale value could be served."""

    kind = ErrorKind.EXHAUSTED

    def __init__(
        self,
        message: str,
        *,
        key: str = "",
        endpoint: str = "",
        attempts: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, key=key, endpoint=endpoint)
        self.attempts = attempts
        self.last_error = last_error


class ThrottledError(Exception):
    """Raised by a do_fetch to signal the remote side throttled the call."""

    def __init__(
        self, message: str = "throttled", *, retry_after_ms: float | None = None
    ) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


__all__ = [
    "ErrorKind",
    "ExhaustedError",
    "FetchError",
    "FetchTimeoutError",
    "NetworkFailureError",
    "RateLimitedError",
    "ThrottledError",
]
