"""Fetch orchestrator - composes cache, rate limits, dedup and debouncing.

A fetch goes through these steps:
- fresh cache entry: returned immediately
- request already in flight for the key: join it
- debounce window (if requested): wait for the burst to end
- rate limit check: blocked endpoints serve stale data or fail fast
- real fetch with exponential backoff; success is written to the cache
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from fetchguard.cache_store import CacheStore
from fetchguard.clock import Clock, SystemClock
from fetchguard.debounce import DebounceScheduler
from fetchguard.duration import parse_duration
from fetchguard.errors import (
    ExhaustedError,
    FetchError,
    FetchTimeoutError,
    NetworkFailureError,
    RateLimitedError,
)
from fetchguard.inflight import InFlightRegistry, PendingRequest
from fetchguard.rate_limit import RateLimitTracker
from fetchguard.throttle import detect_throttle
from fetchguard.types import (
    CacheStats,
    Duration,
    FetchEvent,
    FetchOptions,
    FetchResult,
    FetchState,
    RateLimitConfig,
    RateLimitDecision,
    ResultSource,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventHook = Callable[[FetchEvent], object]


class Orchestrator:
    """Resilient fetch coordinator.

    Components are injected so each instance (and each test) has isolated
    state; use ``create_orchestrator()`` to build one with defaults.
    """

    def __init__(
        self,
        *,
        cache: CacheStore,
        rate_limiter: RateLimitTracker,
        inflight: InFlightRegistry,
        debouncer: DebounceScheduler,
        clock: Clock,
        backoff_base: Duration = "500ms",
        backoff_max: Duration = "10s",
        backoff_jitter: float = 0.1,
        cancel_pending_on_throttle: bool = False,
        on_event: EventHook | None = None,
        on_transition: EventHook | None = None,
        default_options: FetchOptions | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not 0 <= backoff_jitter <= 1:
            raise ValueError("backoff_jitter must be between 0 and 1")
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._inflight = inflight
        self._debouncer = debouncer
        self._clock = clock
        self._backoff_base_ms = parse_duration(backoff_base)
        self._backoff_max_ms = parse_duration(backoff_max)
        if self._backoff_base_ms > self._backoff_max_ms:
            raise ValueError("backoff_base must not exceed backoff_max")
        self._backoff_jitter = backoff_jitter
        self._cancel_pending_on_throttle = cancel_pending_on_throttle
        self._on_event = on_event
        self._on_transition = on_transition
        self._default_options = default_options or FetchOptions()
        self._rng = rng or random.Random()
        self._debounce_waiters: dict[str, list[asyncio.Future[FetchResult[Any]]]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def rate_limiter(self) -> RateLimitTracker:
        return self._rate_limiter

    @property
    def inflight(self) -> InFlightRegistry:
        return self._inflight

    @property
    def debouncer(self) -> DebounceScheduler:
        return self._debouncer

    async def fetch(
        self,
        key: str,
        endpoint: str,
        do_fetch: Callable[[], Awaitable[T]],
        options: FetchOptions | None = None,
    ) -> FetchResult[T]:
        """Get data for ``key``, fetching it through ``do_fetch`` if needed.

        Args:
            key: Logical query identity (see ``make_key``).
            endpoint: Rate limit group for the remote call.
            do_fetch: Zero-argument coroutine function doing the real call.
            options: Per-call options (default: orchestrator defaults).

        Returns:
            The value, tagged ``degraded`` when served from stale cache.

        Raises:
            RateLimitedError: Endpoint limited and no stale value usable.
            FetchTimeoutError: The shared request hung past the threshold.
            ExhaustedError: Retries exhausted and no stale value usable.
        """
        options = options or self._default_options

        if not options.force:
            lookup = self._cache.get(key)
            if lookup is not None and lookup.fresh:
                self._transition(key, endpoint, FetchState.CACHE_HIT)
                return FetchResult(
                    value=lookup.value,
                    source=ResultSource.CACHE,
                    fetched_at=lookup.entry.inserted_at,
                )

        pending = self._inflight.get(key)
        if pending is not None:
            self._transition(key, endpoint, FetchState.IN_FLIGHT)
            return await pending.wait()

        debounce_ms = parse_duration(options.debounce)
        if debounce_ms > 0 and not options.force:
            return await self._debounce(key, endpoint, do_fetch, options, debounce_ms)
        return await self._dispatch(key, endpoint, do_fetch, options)

    # -------------------------------------------------------------------------
    # Management operations
    # -------------------------------------------------------------------------

    def invalidate(self, key: str) -> bool:
        """Drop the cached entry for ``key``."""
        return self._cache.invalidate(key)

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Drop every cached entry whose key starts with ``prefix``."""
        return self._cache.invalidate_by_prefix(prefix)

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def configure_rate_limit(self, endpoint: str, config: RateLimitConfig | None) -> None:
        self._rate_limiter.configure(endpoint, config)

    def flush(self, key: str) -> bool:
        """Run a debounced fetch for ``key`` now instead of after its delay."""
        return self._debouncer.flush(key)

    def cancel(self, key: str) -> bool:
        """Cancel a debounced fetch before it fires.

        Callers waiting on it get ``asyncio.CancelledError``; nothing is
        fetched. Fetches already running are not affected.
        """
        cancelled = self._debouncer.cancel(key)
        for waiter in self._debounce_waiters.pop(key, []):
            waiter.cancel()
        return cancelled

    def dispose(self) -> None:
        """Cancel timers and running fetches, fail waiters and drop all state."""
        self._debouncer.dispose()
        for waiters in self._debounce_waiters.values():
            for waiter in waiters:
                waiter.cancel()
        self._debounce_waiters.clear()
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()
        self._inflight.dispose()
        self._rate_limiter.dispose()
        self._cache.dispose()

    async def __aenter__(self) -> Orchestrator:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.dispose()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _debounce(
        self,
        key: str,
        endpoint: str,
        do_fetch: Callable[[], Awaitable[T]],
        options: FetchOptions,
        delay_ms: float,
    ) -> FetchResult[T]:
        waiter: asyncio.Future[FetchResult[Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._debounce_waiters.setdefault(key, []).append(waiter)
        self._transition(key, endpoint, FetchState.DEBOUNCING)
        # Last call wins: its do_fetch and options are the ones that run
        self._debouncer.schedule(
            key,
            delay_ms,
            lambda: self._fire_debounced(key, endpoint, do_fetch, options),
        )
        return await waiter

    def _fire_debounced(
        self,
        key: str,
        endpoint: str,
        do_fetch: Callable[[], Awaitable[Any]],
        options: FetchOptions,
    ) -> None:
        waiters = self._debounce_waiters.pop(key, [])
        task = asyncio.ensure_future(self._dispatch(key, endpoint, do_fetch, options))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t: _relay(t, waiters))

    async def _dispatch(
        self,
        key: str,
        endpoint: str,
        do_fetch: Callable[[], Awaitable[T]],
        options: FetchOptions,
    ) -> FetchResult[T]:
        # No await between the registry lookup and registration
        pending = self._inflight.get(key)
        if pending is not None:
            self._transition(key, endpoint, FetchState.IN_FLIGHT)
            return await pending.wait()

        decision = self._rate_limiter.check_and_record(endpoint, options.rate_limit)
        if not decision.allowed:
            return self._rate_limited(
                key, endpoint, options, decision.retry_after_ms, attempts=0
            )

        pending = self._inflight.get_or_create(
            key,
            lambda: self._run(key, endpoint, do_fetch, options),
            endpoint=endpoint,
            # Throttled sibling: stale fallback or RateLimitedError, as if limited here
            on_abort=lambda error: self._rate_limited(
                key,
                endpoint,
                options,
                getattr(error, "retry_after_ms", None),
                attempts=0,
                cause=error,
            ),
        )
        pending.subscribe(lambda f: self._on_settled(pending, f))
        return await pending.wait()

    async def _run(
        self,
        key: str,
        endpoint: str,
        do_fetch: Callable[[], Awaitable[T]],
        options: FetchOptions,
    ) -> FetchResult[T]:
        ttl_ms = parse_duration(options.ttl)
        delay = 0.0
        throttle_wait = 0.0
        attempts = 0
        last_error: FetchError | None = None

        # The stale entry may still be needed as fallback
        self._cache.pin(key)
        try:
            for attempt in range(options.max_retries + 1):
                if attempt > 0:
                    delay = self._backoff_delay(attempt - 1, delay, throttle_wait)
                    logger.debug(
                        "Retrying %s in %.0fms (attempt %d/%d)",
                        key, delay, attempt + 1, options.max_retries + 1,
                    )
                    self._transition(
                        key, endpoint, FetchState.RETRYING, attempts, last_error
                    )
                    await self._clock.sleep(delay)
                    self._ensure_owner(key, endpoint, attempts)
                    decision = await self._wait_for_window(endpoint, options)
                    self._ensure_owner(key, endpoint, attempts)
                    if not decision.allowed:
                        return self._rate_limited(
                            key,
                            endpoint,
                            options,
                            decision.retry_after_ms,
                            attempts,
                            last_error,
                        )

                attempts += 1
                self._transition(key, endpoint, FetchState.FETCHING, attempts)
                try:
                    value = await do_fetch()
                except Exception as e:
                    last_error, throttle_wait = self._classify_failure(key, endpoint, e)
                    logger.debug(
                        "Attempt %d for %s failed: %s", attempts, key, last_error
                    )
                    # Timed out or disposed meanwhile: no further attempts
                    self._ensure_owner(key, endpoint, attempts)
                    continue

                return self._succeed(key, endpoint, value, ttl_ms, attempts)

            return self._exhausted(key, endpoint, options, attempts, last_error)
        finally:
            self._cache.unpin(key)

    def _ensure_owner(self, key: str, endpoint: str, attempts: int) -> None:
        """Stop a fetch whose registry entry was expired, aborted or disposed.

        Its waiters were already settled, so the error raised here reaches
        nobody and no event is reported.
        """
        if self._inflight.owns(key):
            return
        logger.debug("Abandoning fetch for %s after %d attempts", key, attempts)
        raise FetchTimeoutError(
            f"fetch for {key!r} no longer owns its request", key=key, endpoint=endpoint
        )

    def _succeed(
        self, key: str, endpoint: str, value: T, ttl_ms: float, attempts: int
    ) -> FetchResult[T]:
        if self._inflight.owns(key):
            entry = self._cache.set(key, value, ttl_ms)
            fetched_at = entry.inserted_at
            self._transition(key, endpoint, FetchState.SUCCEEDED, attempts)
        else:
            # Swept as stale; a newer request may own the key by now
            logger.debug("Discarding late result for %s", key)
            fetched_at = self._clock.now()
        return FetchResult(value=value, source=ResultSource.NETWORK, fetched_at=fetched_at)

    def _classify_failure(
        self, key: str, endpoint: str, error: Exception
    ) -> tuple[FetchError, float]:
        signal = detect_throttle(error)
        if signal is None:
            failure: FetchError = NetworkFailureError(
                str(error) or type(error).__name__, key=key, endpoint=endpoint
            )
            failure.__cause__ = error
            return failure, 0.0

        blocked_until = self._rate_limiter.report_limit_response(
            endpoint, signal.retry_after_ms
        )
        wait = max(blocked_until - self._clock.now(), 0.0)
        failure = RateLimitedError(
            f"endpoint {endpoint!r} throttled the request",
            key=key,
            endpoint=endpoint,
            retry_after_ms=wait,
        )
        failure.__cause__ = error
        if self._cancel_pending_on_throttle:
            failed = self._inflight.fail_endpoint(
                endpoint,
                RateLimitedError(
                    f"endpoint {endpoint!r} throttled a sibling request",
                    endpoint=endpoint,
                    retry_after_ms=wait,
                ),
                exclude=key,
            )
            if failed:
                logger.info("Failed %d pending requests for %s", failed, endpoint)
        return failure, wait

    async def _wait_for_window(
        self, endpoint: str, options: FetchOptions
    ) -> RateLimitDecision:
        decision = self._rate_limiter.check_and_record(endpoint, options.rate_limit)
        if decision.allowed or decision.retry_after_ms is None:
            return decision
        if decision.retry_after_ms > self._backoff_max_ms:
            return decision
        # Short waits are sat out instead of failing the retry
        await self._clock.sleep(decision.retry_after_ms)
        return self._rate_limiter.check_and_record(endpoint, options.rate_limit)

    def _backoff_delay(self, retry: int, previous: float, throttle_wait: float) -> float:
        delay = self._backoff_base_ms * (2**retry)
        if self._backoff_jitter:
            delay *= 1 + self._backoff_jitter * self._rng.random()
        delay = min(max(delay, throttle_wait), self._backoff_max_ms)
        return max(delay, previous)

    def _rate_limited(
        self,
        key: str,
        endpoint: str,
        options: FetchOptions,
        retry_after_ms: float | None,
        attempts: int,
        cause: BaseException | None = None,
    ) -> FetchResult[Any]:
        self._transition(key, endpoint, FetchState.RATE_LIMITED, attempts, cause)
        error = RateLimitedError(
            f"endpoint {endpoint!r} is rate limited",
            key=key,
            endpoint=endpoint,
            retry_after_ms=retry_after_ms,
        )
        if cause is not None:
            error.__cause__ = cause
        fallback = self._fallback(key, endpoint, options, attempts, error)
        if fallback is not None:
            return fallback
        self._report(FetchEvent(key, endpoint, FetchState.FAILED_HARD, attempts, error))
        raise error

    def _exhausted(
        self,
        key: str,
        endpoint: str,
        options: FetchOptions,
        attempts: int,
        last_error: FetchError | None,
    ) -> FetchResult[Any]:
        fallback = self._fallback(key, endpoint, options, attempts, last_error)
        if fallback is not None:
            return fallback
        error = ExhaustedError(
            f"fetch for {key!r} failed after {attempts} attempts",
            key=key,
            endpoint=endpoint,
            attempts=attempts,
            last_error=last_error,
        )
        self._report(FetchEvent(key, endpoint, FetchState.FAILED_HARD, attempts, error))
        raise error from last_error

    def _fallback(
        self,
        key: str,
        endpoint: str,
        options: FetchOptions,
        attempts: int,
        error: BaseException | None,
    ) -> FetchResult[Any] | None:
        if not options.allow_stale_fallback:
            return None
        lookup = self._cache.get(key, track=False)
        if lookup is None:
            return None
        self._report(
            FetchEvent(key, endpoint, FetchState.FAILED_WITH_FALLBACK, attempts, error)
        )
        return FetchResult(
            value=lookup.value,
            source=ResultSource.FALLBACK,
            fetched_at=lookup.entry.inserted_at,
            degraded=True,
            error=error,
        )

    def _on_settled(
        self, pending: PendingRequest[Any], future: asyncio.Future[Any]
    ) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, FetchTimeoutError):
            self._report(
                FetchEvent(pending.key, pending.endpoint, FetchState.FAILED_HARD, 0, error)
            )

    def _report(self, event: FetchEvent) -> None:
        if event.state is FetchState.FAILED_WITH_FALLBACK:
            logger.warning(
                "Serving stale data for %s (endpoint %s) after %d attempts: %s",
                event.key, event.endpoint, event.attempts, event.error,
            )
        else:
            logger.warning(
                "Fetch failed for %s (endpoint %s) after %d attempts: %s",
                event.key, event.endpoint, event.attempts, event.error,
            )
        if self._on_transition is not None:
            self._notify(self._on_transition, event)
        if self._on_event is not None:
            self._notify(self._on_event, event)

    def _transition(
        self,
        key: str,
        endpoint: str,
        state: FetchState,
        attempts: int = 0,
        error: BaseException | None = None,
    ) -> None:
        logger.debug("%s (endpoint %s): %s", key, endpoint, state.value)
        if self._on_transition is not None:
            self._notify(
                self._on_transition, FetchEvent(key, endpoint, state, attempts, error)
            )

    def _notify(self, hook: EventHook, event: FetchEvent) -> None:
        try:
            result = hook(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)
                task.add_done_callback(_log_hook_failure)
        except Exception:
            logger.exception("Event hook failed for %s", event.key)


def _relay(task: asyncio.Task[Any], waiters: list[asyncio.Future[Any]]) -> None:
    """Copy a finished dispatch onto every debounced caller."""
    if task.cancelled():
        for waiter in waiters:
            waiter.cancel()
        return
    error = task.exception()
    for waiter in waiters:
        if waiter.done():
            continue
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(task.result())


def _log_hook_failure(task: asyncio.Task[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Event hook failed", exc_info=task.exception())


def create_orchestrator(
    *,
    clock: Clock | None = None,
    max_entries: int = 500,
    stale_pending: Duration = "30s",
    backoff_base: Duration = "500ms",
    backoff_max: Duration = "10s",
    backoff_jitter: float = 0.1,
    default_throttle_backoff: Duration = "1s",
    cancel_pending_on_throttle: bool = False,
    rate_limits: Mapping[str, RateLimitConfig] | None = None,
    on_event: EventHook | None = None,
    on_transition: EventHook | None = None,
    default_options: FetchOptions | None = None,
    rng: random.Random | None = None,
) -> Orchestrator:
    """Create an orchestrator with its own cache, tracker, registry and scheduler.

    Args:
        clock: Time source (default: event loop time)
        max_entries: Cache capacity before LRU eviction
        stale_pending: Age after which a hung request is failed with Timeout
        backoff_base: First retry delay; doubles per retry
        backoff_max: Cap for any single retry delay
        backoff_jitter: Extra random fraction (0.0-1.0) added to retry delays
        default_throttle_backoff: Block length when a throttle has no hint
        cancel_pending_on_throttle: Fail sibling requests to a throttled endpoint
        rate_limits: Request budgets per endpoint
        on_event: Called with a FetchEvent on every fallback or hard failure
        on_transition: Called with a FetchEvent on every state change
        default_options: Options used when fetch() is called without any
        rng: Random source for jitter

    Returns:
        Orchestrator instance
    """
    clock = clock or SystemClock()
    rate_limiter = RateLimitTracker(clock=clock, default_backoff=default_throttle_backoff)
    for endpoint, config in (rate_limits or {}).items():
        rate_limiter.configure(endpoint, config)

    return Orchestrator(
        cache=CacheStore(max_entries, clock=clock),
        rate_limiter=rate_limiter,
        inflight=InFlightRegistry(clock=clock, stale_after=stale_pending),
        debouncer=DebounceScheduler(clock=clock),
        clock=clock,
        backoff_base=backoff_base,
        backoff_max=backoff_max,
        backoff_jitter=backoff_jitter,
        cancel_pending_on_throttle=cancel_pending_on_throttle,
        on_event=on_event,
        on_transition=on_transition,
        default_options=default_options,
        rng=rng,
    )


__all__ = ["Orchestrator", "create_orchestrator"]
