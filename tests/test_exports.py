"""Tests for package exports."""


def test_component_exports_available() -> None:
    """Test that every component can be imported from the package root."""
    from fetchguard import (
        CacheStore,
        DebounceScheduler,
        InFlightRegistry,
        Orchestrator,
        RateLimitTracker,
        create_orchestrator,
    )

    # Just verify they're importable
    assert CacheStore is not None
    assert DebounceScheduler is not None
    assert InFlightRegistry is not None
    assert Orchestrator is not None
    assert RateLimitTracker is not None
    assert create_orchestrator is not None


def test_error_kinds() -> None:
    """Test that the error taxonomy maps to its kinds."""
    from fetchguard import (
        ErrorKind,
        ExhaustedError,
        FetchError,
        FetchTimeoutError,
        NetworkFailureError,
        RateLimitedError,
    )

    assert RateLimitedError.kind is ErrorKind.RATE_LIMITED
    assert NetworkFailureError.kind is ErrorKind.NETWORK_FAILURE
    assert FetchTimeoutError.kind is ErrorKind.TIMEOUT
    assert ExhaustedError.kind is ErrorKind.EXHAUSTED
    for cls in (RateLimitedError, NetworkFailureError, FetchTimeoutError, ExhaustedError):
        assert issubclass(cls, FetchError)

    error = RateLimitedError("limited", key="k", endpoint="e", retry_after_ms=10)
    assert (error.key, error.endpoint, error.retry_after_ms) == ("k", "e", 10)
