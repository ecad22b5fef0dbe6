"""Core types for the fetchguard coordination layer."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Duration type alias
Duration = str | int | float  # "300ms", "1.5s", "1m30s" or milliseconds


class FetchState(enum.Enum):
    """States of a single orchestrated fetch."""

    CACHE_HIT = "cache_hit"
    DEBOUNCING = "debouncing"
    RATE_LIMITED = "rate_limited"
    IN_FLIGHT = "in_flight"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED_WITH_FALLBACK = "failed_with_fallback"
    FAILED_HARD = "failed_hard"


class ResultSource(enum.Enum):
    """Where the value of a FetchResult came from."""

    CACHE = "cache"
    NETWORK = "network"
    FALLBACK = "fallback"


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata. Timestamps are clock milliseconds."""

    key: str
    value: T
    inserted_at: float
    expires_at: float
    last_accessed_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True, slots=True)
class CacheLookup(Generic[T]):
    """Result of a cache read: the entry and whether it is still fresh."""

    entry: CacheEntry[T]
    fresh: bool

    @property
    def value(self) -> T:
        return self.entry.value


@dataclass(slots=True)
class RateLimitState:
    """Sliding-window counters and backoff state for one endpoint."""

    window_start: float
    request_count: int = 0
    limit: int | None = None
    window_ms: float | None = None
    blocked_until: float | None = None


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Request budget for an endpoint: ``limit`` calls per ``window``."""

    limit: int
    window: Duration = "1m"

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("rate limit must allow at least one request")


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    allowed: bool
    retry_after_ms: float | None = None


@dataclass(slots=True)
class DebounceTimer:
    """An armed trailing-edge timer for one key."""

    key: str
    handle: Any  # clock TimerHandle
    delay_ms: float
    action: Callable[[], object]


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Per-call options for Orchestrator.fetch.

    Args:
        ttl: How long a successful result stays fresh.
        debounce: Quiet period before the fetch is issued; 0 disables.
        max_retries: Retries after the first attempt.
        allow_stale_fallback: Serve a stale entry (tagged degraded) when
            the endpoint is limited or retries are exhausted.
        rate_limit: Request budget for the endpoint, if any.
        force: Skip the fresh cache check.
    """

    ttl: Duration = "30s"
    debounce: Duration = 0
    max_retries: int = 3
    allow_stale_fallback: bool = True
    rate_limit: RateLimitConfig | None = None
    force: bool = False

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True, slots=True)
class FetchResult(Generic[T]):
    """Value returned by the orchestrator.

    ``degraded`` is set whenever the value is stale; callers should
    surface that to users rather than present it as current data.
    """

    value: T
    source: ResultSource
    fetched_at: float
    degraded: bool = False
    error: BaseException | None = None

    @property
    def fresh(self) -> bool:
        return not self.degraded


@dataclass(frozen=True, slots=True)
class FetchEvent:
    """Terminal failure notification handed to the observability hook."""

    key: str
    endpoint: str
    state: FetchState
    attempts: int
    error: BaseException | None


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Cache store counters."""

    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    fresh_entries: int
    stale_entries: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

