"""Tests for the rate limit tracker."""

import pytest

from fetchguard import RateLimitConfig, RateLimitTracker, VirtualClock


@pytest.fixture
def tracker(clock: VirtualClock) -> RateLimitTracker:
    return RateLimitTracker(clock=clock, default_backoff="1s")


class TestWindowCounting:
    """Tests for windowed request budgets."""

    @pytest.mark.asyncio
    async def test_unconfigured_endpoint_always_allowed(
        self, tracker: RateLimitTracker
    ) -> None:
        for _ in range(100):
            assert tracker.check_and_record("stations").allowed

    @pytest.mark.asyncio
    async def test_limit_reached_within_window(
        self, tracker: RateLimitTracker, clock: VirtualClock
    ) -> None:
        tracker.configure("stations", RateLimitConfig(limit=2, window="1s"))
        assert tracker.check_and_record("stations").allowed
        await clock.advance(300)
        assert tracker.check_and_record("stations").allowed

        decision = tracker.check_and_record("stations")
        assert decision.allowed is False
        assert decision.retry_after_ms == 700

    @pytest.mark.asyncio
    async def test_window_resets(
        self, tracker: RateLimitTracker, clock: VirtualClock
    ) -> None:
        config = RateLimitConfig(limit=1, window=1000)
        assert tracker.check_and_record("stations", config).allowed
        assert not tracker.check_and_record("stations", config).allowed

        await clock.advance(1000)
        assert tracker.check_and_record("stations", config).allowed
        state = tracker.state("stations")
        assert state.request_count == 1
        assert state.window_start == 1000

    @pytest.mark.asyncio
    async def test_denied_requests_are_not_counted(
        self, tracker: RateLimitTracker
    ) -> None:
        config = RateLimitConfig(limit=1, window="1m")
        tracker.check_and_record("stations", config)
        tracker.check_and_record("stations", config)
        assert tracker.state("stations").request_count == 1

    @pytest.mark.asyncio
    async def test_endpoints_are_independent(self, tracker: RateLimitTracker) -> None:
        config = RateLimitConfig(limit=1, window="1m")
        assert tracker.check_and_record("stations", config).allowed
        assert tracker.check_and_record("prices", config).allowed

    @pytest.mark.asyncio
    async def test_invalid_config(self) -> None:
        with pytest.raises(ValueError):
            RateLimitConfig(limit=0)


class TestLimitResponses:
    """Tests for blocks set after a throttled call."""

    @pytest.mark.asyncio
    async def test_block_with_hint(
        self, tracker: RateLimitTracker, clock: VirtualClock
    ) -> None:
        assert tracker.report_limit_response("stations", 2000) == 2000
        assert tracker.is_blocked("stations")

        await clock.advance(500)
        decision = tracker.check_and_record("stations")
        assert decision.allowed is False
        assert decision.retry_after_ms == 1500

        await clock.advance(1500)
        assert tracker.check_and_record("stations").allowed
        assert tracker.state("stations").blocked_until is None

    @pytest.mark.asyncio
    async def test_block_without_hint_uses_default(
        self, tracker: RateLimitTracker
    ) -> None:
        assert tracker.report_limit_response("stations") == 1000

    @pytest.mark.asyncio
    async def test_shorter_block_does_not_shorten(
        self, tracker: RateLimitTracker
    ) -> None:
        tracker.report_limit_response("stations", 5000)
        tracker.report_limit_response("stations", 100)
        assert tracker.state("stations").blocked_until == 5000

    @pytest.mark.asyncio
    async def test_reset(self, tracker: RateLimitTracker) -> None:
        tracker.report_limit_response("stations", 5000)
        tracker.report_limit_response("prices", 5000)
        tracker.reset("stations")
        assert not tracker.is_blocked("stations")
        assert tracker.is_blocked("prices")
        tracker.reset()
        assert not tracker.is_blocked("prices")
