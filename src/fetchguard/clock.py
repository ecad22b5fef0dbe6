"""Time sources for timers, backoff sleeps and timestamps.

All times are in milliseconds. ``SystemClock`` is backed by the running
event loop; ``VirtualClock`` only moves when ``advance()`` is awaited,
which makes debounce and backoff timing deterministic in tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled before it fires."""

    def cancel(self) -> None:
        """Cancel the callback. No-op if it already ran."""
        ...


@runtime_checkable
class Clock(Protocol):
    """Clock interface used by every component."""

    def now(self) -> float:
        """Current time in milliseconds."""
        ...

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle:
        """Run ``callback(*args)`` after ``delay_ms``."""
        ...

    async def sleep(self, delay_ms: float) -> None:
        """Suspend the current task for ``delay_ms``."""
        ...


class SystemClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time() * 1000

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay_ms, 0) / 1000, callback, *args)

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(delay_ms, 0) / 1000)


class VirtualTimer:
    """Timer scheduled on a VirtualClock."""

    __slots__ = ("args", "callback", "cancelled", "when")

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Manually advanced clock for tests.

    Usage:
        clock = VirtualClock()
        task = asyncio.create_task(orchestrator.fetch(...))
        await clock.advance(300)
    """

    def __init__(self, start: float = 0.0, *, settle_rounds: int = 50) -> None:
        self._now = start
        self._timers: list[tuple[float, int, VirtualTimer]] = []
        self._seq = itertools.count()
        self._settle_rounds = settle_rounds

    def now(self) -> float:
        return self._now

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any
    ) -> VirtualTimer:
        timer = VirtualTimer(self._now + max(delay_ms, 0), callback, args)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    async def sleep(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(delay_ms, wake)
        try:
            await future
        finally:
            timer.cancel()

    @property
    def pending_timers(self) -> int:
        """Number of armed, uncancelled timers."""
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)

    async def settle(self) -> None:
        """Let ready tasks run until the loop goes quiet."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, delay_ms: float) -> None:
        """Move time forward, firing due timers in order."""
        target = self._now + delay_ms
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            timer.callback(*timer.args)
            await self.settle()
        self._now = target
        await self.settle()

    async def advance_to(self, when: float) -> None:
        """Advance to an absolute time."""
        await self.advance(max(when - self._now, 0))


__all__ = ["Clock", "SystemClock", "TimerHandle", "VirtualClock", "VirtualTimer"]
