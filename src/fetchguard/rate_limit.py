"""Per-endpoint windowed request counting and throttle backoff."""

from __future__ import annotations

import logging

from fetchguard.clock import Clock, SystemClock
from fetchguard.duration import parse_duration
from fetchguard.types import Duration, RateLimitConfig, RateLimitDecision, RateLimitState

logger = logging.getLogger(__name__)


class RateLimitTracker:
    """Decides whether a request to an endpoint may go out now.

    Counting uses fixed windows that restart once ``window_ms`` has passed
    since the window opened. Endpoints without a configured budget are never
    limited by count, but a block set by ``report_limit_response()`` applies
    to every endpoint.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        default_backoff: Duration = "1s",
    ) -> None:
        self._clock = clock or SystemClock()
        self._default_backoff_ms = parse_duration(default_backoff)
        self._configs: dict[str, RateLimitConfig] = {}
        self._states: dict[str, RateLimitState] = {}

    def configure(self, endpoint: str, config: RateLimitConfig | None) -> None:
        """Set or remove the request budget for an endpoint."""
        if config is None:
            self._configs.pop(endpoint, None)
        else:
            self._configs[endpoint] = config

    def state(self, endpoint: str) -> RateLimitState | None:
        return self._states.get(endpoint)

    def check_and_record(
        self, endpoint: str, config: RateLimitConfig | None = None
    ) -> RateLimitDecision:
        """Count a request against the endpoint if it is allowed.

        Args:
            endpoint: Rate limit group.
            config: Budget to apply; falls back to ``configure()``d one.

        Returns:
            Decision with an estimated wait when not allowed.
        """
        now = self._clock.now()
        config = config or self._configs.get(endpoint)
        state = self._states.get(endpoint)
        if state is None:
            state = RateLimitState(window_start=now)
            self._states[endpoint] = state

        if state.blocked_until is not None:
            if now < state.blocked_until:
                return RateLimitDecision(
                    allowed=False, retry_after_ms=state.blocked_until - now
                )
            state.blocked_until = None

        if config is None:
            return RateLimitDecision(allowed=True)

        window_ms = parse_duration(config.window)
        state.limit = config.limit
        state.window_ms = window_ms
        if now - state.window_start >= window_ms:
            state.window_start = now
            state.request_count = 0

        if state.request_count >= config.limit:
            return RateLimitDecision(
                allowed=False,
                retry_after_ms=state.window_start + window_ms - now,
            )

        state.request_count += 1
        return RateLimitDecision(allowed=True)

    def report_limit_response(
        self, endpoint: str, retry_after_ms: float | None = None
    ) -> float:
        """Block an endpoint after the remote side throttled a call.

        Uses the default backoff when no hint is given. An existing longer
        block is kept. Returns the time the endpoint is blocked until.
        """
        now = self._clock.now()
        wait = retry_after_ms if retry_after_ms is not None else self._default_backoff_ms
        state = self._states.get(endpoint)
        if state is None:
            state = RateLimitState(window_start=now)
            self._states[endpoint] = state
        until = now + max(wait, 0)
        if state.blocked_until is None or until > state.blocked_until:
            state.blocked_until = until
        logger.info(
            "Endpoint %s throttled, blocked for %.0fms", endpoint, state.blocked_until - now
        )
        return state.blocked_until

    def is_blocked(self, endpoint: str) -> bool:
        state = self._states.get(endpoint)
        return (
            state is not None
            and state.blocked_until is not None
            and self._clock.now() < state.blocked_until
        )

    def reset(self, endpoint: str | None = None) -> None:
        """Drop counters and blocks for one endpoint, or all of them."""
        if endpoint is None:
            self._states.clear()
        else:
            self._states.pop(endpoint, None)

    def dispose(self) -> None:
        self._states.clear()
        self._configs.clear()
