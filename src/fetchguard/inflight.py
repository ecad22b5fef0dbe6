"""In-flight request registry (stampede protection)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from fetchguard.clock import Clock, SystemClock, TimerHandle
from fetchguard.duration import parse_duration
from fetchguard.errors import FetchTimeoutError
from fetchguard.types import Duration

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _consume(future: asyncio.Future[Any]) -> None:
    # Mark the exception retrieved; waiters re-raise it themselves
    if not future.cancelled():
        future.exception()


class PendingRequest(Generic[T]):
    """A running fetch shared by every caller for the same key."""

    __slots__ = (
        "_future",
        "_on_abort",
        "_timer",
        "endpoint",
        "key",
        "started_at",
        "task",
    )

    def __init__(
        self,
        key: str,
        endpoint: str,
        started_at: float,
        future: asyncio.Future[T],
        on_abort: Callable[[BaseException], T] | None = None,
    ) -> None:
        self.key = key
        self.endpoint = endpoint
        self.started_at = started_at
        self.task: asyncio.Task[T] | None = None
        self._future = future
        self._timer: TimerHandle | None = None
        self._on_abort = on_abort
        future.add_done_callback(_consume)

    @property
    def settled(self) -> bool:
        return self._future.done()

    async def wait(self) -> T:
        """Wait for the shared result. Cancelling a waiter does not cancel the fetch."""
        return await asyncio.shield(self._future)

    def subscribe(self, on_settle: Callable[[asyncio.Future[T]], object]) -> None:
        """Call ``on_settle(future)`` once the request settles."""
        self._future.add_done_callback(on_settle)

    def _settle_from(self, task: asyncio.Task[T]) -> None:
        if task.cancelled():
            if not self._future.done():
                self._future.cancel()
            return
        error = task.exception()
        if self._future.done():
            return
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(task.result())

    def _fail(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    def _abort(self, error: BaseException) -> bool:
        """Settle through ``on_abort`` if given, else fail with ``error``."""
        if self._future.done():
            return False
        if self._on_abort is None:
            self._future.set_exception(error)
            return True
        try:
            self._future.set_result(self._on_abort(error))
        except Exception as e:
            self._future.set_exception(e)
        return True


class InFlightRegistry:
    """Maps a key to its single running fetch.

    Registration is synchronous, so concurrent callers in the same loop
    iteration can never start two fetches for one key. Each entry arms a
    stale-pending timer; when it fires, waiters get ``FetchTimeoutError``
    and the entry is dropped.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        stale_after: Duration = "30s",
    ) -> None:
        self._clock = clock or SystemClock()
        self._stale_after_ms = parse_duration(stale_after)
        self._pending: dict[str, PendingRequest[Any]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def get(self, key: str) -> PendingRequest[Any] | None:
        return self._pending.get(key)

    def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        *,
        endpoint: str = "",
        on_abort: Callable[[BaseException], T] | None = None,
    ) -> PendingRequest[T]:
        """Return the pending request for ``key``, starting ``factory()`` if none.

        ``on_abort(error)`` decides what waiters get when ``fail_endpoint``
        drops the request: its return value, or the exception it raises.
        """
        existing = self._pending.get(key)
        if existing is not None:
            logger.debug("Joining in-flight request for %s", key)
            return existing

        loop = asyncio.get_running_loop()
        pending: PendingRequest[T] = PendingRequest(
            key, endpoint, self._clock.now(), loop.create_future(), on_abort
        )
        self._pending[key] = pending

        async def run() -> T:
            return await factory()

        task = loop.create_task(run())
        pending.task = task
        task.add_done_callback(lambda t: self._on_done(pending, t))
        if self._stale_after_ms > 0:
            pending._timer = self._clock.call_later(
                self._stale_after_ms, self._expire, pending
            )
        return pending

    def owns(self, key: str) -> bool:
        """Whether the current task is the registered fetch for ``key``."""
        pending = self._pending.get(key)
        if pending is None or pending.task is None:
            return False
        return pending.task is asyncio.current_task()

    def sweep_stale(self, max_age: Duration | None = None) -> int:
        """Fail and drop entries started more than ``max_age`` ago. Returns count."""
        max_age_ms = (
            parse_duration(max_age) if max_age is not None else self._stale_after_ms
        )
        cutoff = self._clock.now() - max_age_ms
        stale = [p for p in self._pending.values() if p.started_at < cutoff]
        for pending in stale:
            self._expire(pending)
        return len(stale)

    def fail_endpoint(
        self, endpoint: str, error: BaseException, *, exclude: str | None = None
    ) -> int:
        """Drop every pending request for ``endpoint`` except ``exclude``.

        Each dropped request is settled through its ``on_abort`` resolver,
        or failed with ``error`` when it has none. Its task keeps running
        but no longer owns the key.
        """
        targets = [
            p
            for p in self._pending.values()
            if p.endpoint == endpoint and p.key != exclude
        ]
        for pending in targets:
            self._remove(pending)
            pending._abort(error)
        return len(targets)

    def dispose(self) -> None:
        """Drop all entries and cancel their tasks.

        Waiters receive FetchTimeoutError.
        """
        for pending in list(self._pending.values()):
            self._remove(pending)
            pending._fail(
                FetchTimeoutError(
                    "registry disposed", key=pending.key, endpoint=pending.endpoint
                )
            )
            if pending.task is not None and pending.task is not asyncio.current_task():
                pending.task.cancel()

    def _expire(self, pending: PendingRequest[Any]) -> None:
        if self._pending.get(pending.key) is not pending:
            return
        age = self._clock.now() - pending.started_at
        logger.warning("Pending request for %s expired after %.0fms", pending.key, age)
        self._remove(pending)
        pending._fail(
            FetchTimeoutError(
                f"request for {pending.key!r} did not settle within {age:.0f}ms",
                key=pending.key,
                endpoint=pending.endpoint,
            )
        )

    def _remove(self, pending: PendingRequest[Any]) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        if pending._timer is not None:
            pending._timer.cancel()
            pending._timer = None

    def _on_done(self, pending: PendingRequest[Any], task: asyncio.Task[Any]) -> None:
        self._remove(pending)
        pending._settle_from(task)
