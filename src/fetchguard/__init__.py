"""fetchguard - resilient data-fetch coordination for asyncio."""

from fetchguard.cache_store import CacheStore
from fetchguard.clock import Clock, SystemClock, VirtualClock
from fetchguard.debounce import DebounceScheduler

# Duration parsing
from fetchguard.duration import parse_duration

# Errors
from fetchguard.errors import (
    ErrorKind,
    ExhaustedError,
    FetchError,
    FetchTimeoutError,
    NetworkFailureError,
    RateLimitedError,
    ThrottledError,
)
from fetchguard.inflight import InFlightRegistry, PendingRequest
from fetchguard.keys import make_key

# Orchestrator API
from fetchguard.orchestrator import Orchestrator, create_orchestrator
from fetchguard.rate_limit import RateLimitTracker
from fetchguard.table_client import TableClient
from fetchguard.throttle import ThrottleSignal, detect_throttle, parse_retry_after

# Core types
from fetchguard.types import (
    CacheEntry,
    CacheLookup,
    CacheStats,
    Duration,
    FetchEvent,
    FetchOptions,
    FetchResult,
    FetchState,
    RateLimitConfig,
    RateLimitDecision,
    RateLimitState,
    ResultSource,
)

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "CacheStats",
    "CacheStore",
    "Clock",
    "DebounceScheduler",
    "Duration",
    "ErrorKind",
    "ExhaustedError",
    "FetchError",
    "FetchEvent",
    "FetchOptions",
    "FetchResult",
    "FetchState",
    "FetchTimeoutError",
    "InFlightRegistry",
    "NetworkFailureError",
    "Orchestrator",
    "PendingRequest",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitState",
    "RateLimitTracker",
    "RateLimitedError",
    "ResultSource",
    "SystemClock",
    "TableClient",
    "ThrottleSignal",
    "ThrottledError",
    "VirtualClock",
    "create_orchestrator",
    "detect_throttle",
    "make_key",
    "parse_duration",
    "parse_retry_after",
]
