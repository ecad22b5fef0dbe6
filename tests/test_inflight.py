"""Tests for the in-flight registry."""

import asyncio

import pytest

from fetchguard import FetchTimeoutError, InFlightRegistry, VirtualClock


@pytest.fixture
def registry(clock: VirtualClock) -> InFlightRegistry:
    return InFlightRegistry(clock=clock, stale_after="30s")


class TestGetOrCreate:
    """Tests for deduplication."""

    @pytest.mark.asyncio
    async def test_same_key_shares_one_fetch(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        calls = 0

        async def factory() -> dict:
            nonlocal calls
            calls += 1
            await clock.sleep(50)
            return {"count": 42}

        first = registry.get_or_create("stations", factory)
        second = registry.get_or_create("stations", factory)
        assert first is second
        assert "stations" in registry

        waiters = [asyncio.create_task(first.wait()) for _ in range(3)]
        await clock.advance(50)

        assert [w.result() for w in waiters] == [{"count": 42}] * 3
        assert calls == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_entry_removed(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        async def factory() -> dict:
            await clock.sleep(10)
            raise ConnectionError("boom")

        pending = registry.get_or_create("stations", factory)
        waiters = [asyncio.create_task(pending.wait()) for _ in range(2)]
        await clock.advance(10)

        for waiter in waiters:
            with pytest.raises(ConnectionError, match="boom"):
                waiter.result()
        assert registry.get("stations") is None

    @pytest.mark.asyncio
    async def test_different_keys_are_independent(
        self, registry: InFlightRegistry
    ) -> None:
        async def factory() -> int:
            return 1

        a = registry.get_or_create("a", factory)
        b = registry.get_or_create("b", factory)
        assert a is not b
        assert await a.wait() == 1
        assert await b.wait() == 1

    @pytest.mark.asyncio
    async def test_subscribe_sees_settled_future(
        self, registry: InFlightRegistry
    ) -> None:
        settled = []

        async def factory() -> str:
            return "done"

        pending = registry.get_or_create("a", factory)
        pending.subscribe(lambda f: settled.append(f.result()))
        await pending.wait()
        await asyncio.sleep(0)
        assert settled == ["done"]
        assert pending.settled

    @pytest.mark.asyncio
    async def test_owns_only_inside_registered_task(
        self, registry: InFlightRegistry
    ) -> None:
        seen = []

        async def factory() -> None:
            seen.append(registry.owns("a"))

        pending = registry.get_or_create("a", factory)
        assert registry.owns("a") is False
        await pending.wait()
        assert seen == [True]


class TestStalePending:
    """Tests for expiring hung requests."""

    @pytest.mark.asyncio
    async def test_timer_expires_hung_request(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        async def hang() -> None:
            await asyncio.Event().wait()

        pending = registry.get_or_create("stations", hang)
        waiter = asyncio.create_task(pending.wait())

        await clock.advance(29_999)
        assert not waiter.done()

        await clock.advance(1)
        with pytest.raises(FetchTimeoutError):
            waiter.result()
        assert "stations" not in registry
        pending.task.cancel()

    @pytest.mark.asyncio
    async def test_sweep_stale(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        async def hang() -> None:
            await asyncio.Event().wait()

        old = registry.get_or_create("old", hang)
        await clock.advance(5000)
        young = registry.get_or_create("young", hang)
        await clock.advance(10)

        assert registry.sweep_stale("5s") == 1
        assert "old" not in registry
        assert "young" in registry
        with pytest.raises(FetchTimeoutError):
            await old.wait()

        old.task.cancel()
        young.task.cancel()

    @pytest.mark.asyncio
    async def test_new_request_after_sweep(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        async def hang() -> None:
            await asyncio.Event().wait()

        async def quick() -> str:
            return "fresh"

        stale = registry.get_or_create("stations", hang)
        await clock.advance(100)
        registry.sweep_stale(50)

        fresh = registry.get_or_create("stations", quick)
        assert fresh is not stale
        assert await fresh.wait() == "fresh"
        stale.task.cancel()


class TestFailEndpoint:
    """Tests for failing requests grouped by endpoint."""

    @pytest.mark.asyncio
    async def test_fail_endpoint_excludes_key(
        self, registry: InFlightRegistry
    ) -> None:
        async def hang() -> None:
            await asyncio.Event().wait()

        a = registry.get_or_create("a", hang, endpoint="stations")
        b = registry.get_or_create("b", hang, endpoint="stations")
        c = registry.get_or_create("c", hang, endpoint="prices")

        assert registry.fail_endpoint("stations", RuntimeError("limited"), exclude="a") == 1
        with pytest.raises(RuntimeError, match="limited"):
            await b.wait()
        assert "a" in registry
        assert "c" in registry

        registry.dispose()
        with pytest.raises(FetchTimeoutError):
            await a.wait()
        for pending in (a, b, c):
            pending.task.cancel()

    @pytest.mark.asyncio
    async def test_fail_endpoint_settles_through_abort_resolver(
        self, registry: InFlightRegistry
    ) -> None:
        async def hang() -> str:
            await asyncio.Event().wait()
            return "never"

        def refuse(error: BaseException) -> str:
            raise LookupError(f"no fallback: {error}")

        served = registry.get_or_create(
            "a", hang, endpoint="stations", on_abort=lambda error: f"stale after {error}"
        )
        refused = registry.get_or_create("b", hang, endpoint="stations", on_abort=refuse)

        assert registry.fail_endpoint("stations", RuntimeError("limited")) == 2
        assert await served.wait() == "stale after limited"
        with pytest.raises(LookupError, match="no fallback: limited"):
            await refused.wait()
        for pending in (served, refused):
            pending.task.cancel()


class TestDispose:
    """Tests for tearing the registry down."""

    @pytest.mark.asyncio
    async def test_dispose_cancels_running_tasks(
        self, registry: InFlightRegistry, clock: VirtualClock
    ) -> None:
        async def hang() -> None:
            await asyncio.Event().wait()

        pending = registry.get_or_create("a", hang)
        await clock.settle()

        registry.dispose()
        with pytest.raises(FetchTimeoutError):
            await pending.wait()
        await clock.settle()

        assert pending.task.cancelled()
        assert len(registry) == 0
        assert clock.pending_timers == 0
