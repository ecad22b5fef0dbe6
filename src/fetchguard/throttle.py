"""Recognizing "throttled, retry after N ms" signals in fetch failures."""

from __future__ import annotations

import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from fetchguard.errors import ThrottledError

THROTTLE_STATUS_CODES = frozenset({429})


@dataclass(frozen=True, slots=True)
class ThrottleSignal:
    """A failure recognized as throttling, with the server's hint if any."""

    retry_after_ms: float | None = None


def parse_retry_after(value: str | None, *, now: float | None = None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date) to milliseconds."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        current = time.time() if now is None else now
        return max(when.timestamp() - current, 0.0) * 1000
    return max(seconds, 0.0) * 1000


def detect_throttle(error: BaseException) -> ThrottleSignal | None:
    """Return a ThrottleSignal if ``error`` means the call was throttled."""
    if isinstance(error, ThrottledError):
        return ThrottleSignal(retry_after_ms=error.retry_after_ms)

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        if response.status_code in THROTTLE_STATUS_CODES:
            return ThrottleSignal(
                retry_after_ms=parse_retry_after(response.headers.get("retry-after"))
            )
        return None

    retry_after_ms = getattr(error, "retry_after_ms", None)
    if isinstance(retry_after_ms, (int, float)):
        return ThrottleSignal(retry_after_ms=float(retry_after_ms))
    if getattr(error, "status_code", None) in THROTTLE_STATUS_CODES:
        return ThrottleSignal()
    return None


__all__ = ["THROTTLE_STATUS_CODES", "ThrottleSignal", "detect_throttle", "parse_retry_after"]
