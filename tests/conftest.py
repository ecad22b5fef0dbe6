"""Shared pytest fixtures."""

import pytest

from fetchguard import CacheStore, Orchestrator, VirtualClock, create_orchestrator


@pytest.fixture
def clock() -> VirtualClock:
    """Create a fresh VirtualClock starting at t=0."""
    return VirtualClock()


@pytest.fixture
def store(clock: VirtualClock) -> CacheStore:
    """Create a small CacheStore on the virtual clock."""
    return CacheStore(max_entries=3, clock=clock)


@pytest.fixture
def orchestrator(clock: VirtualClock) -> Orchestrator:
    """Create an orchestrator with deterministic (jitter-free) backoff."""
    return create_orchestrator(
        clock=clock,
        backoff_base="100ms",
        backoff_max="1s",
        backoff_jitter=0,
    )
