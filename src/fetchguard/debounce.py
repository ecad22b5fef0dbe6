"""Trailing-edge debounce timers keyed by logical query."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fetchguard.clock import Clock, SystemClock
from fetchguard.types import DebounceTimer

logger = logging.getLogger(__name__)


class DebounceScheduler:
    """Runs an action once a key has been quiet for its delay.

    Scheduling again for the same key replaces the action and restarts the
    delay, so only the last call's action runs.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._timers: dict[str, DebounceTimer] = {}

    def __len__(self) -> int:
        return len(self._timers)

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    def schedule(self, key: str, delay_ms: float, action: Callable[[], object]) -> None:
        """Arm (or re-arm) the timer for ``key``.

        A zero delay cancels any armed timer and runs ``action`` right away
        without allocating a timer.
        """
        self.cancel(key)
        if delay_ms <= 0:
            action()
            return

        timer = DebounceTimer(key=key, handle=None, delay_ms=delay_ms, action=action)
        timer.handle = self._clock.call_later(delay_ms, self._fire, timer)
        self._timers[key] = timer

    def cancel(self, key: str) -> bool:
        """Cancel the armed timer for ``key``. Returns whether one existed."""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.handle.cancel()
        return True

    def flush(self, key: str) -> bool:
        """Run the armed action for ``key`` now. Returns whether one existed."""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.handle.cancel()
        logger.debug("Flushing debounce timer for %s", key)
        timer.action()
        return True

    def dispose(self) -> None:
        for timer in self._timers.values():
            timer.handle.cancel()
        self._timers.clear()

    def _fire(self, timer: DebounceTimer) -> None:
        if self._timers.get(timer.key) is not timer:
            return  # superseded
        del self._timers[timer.key]
        timer.action()
