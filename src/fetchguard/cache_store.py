"""In-memory TTL cache store with LRU eviction."""

from __future__ import annotations

import logging
from collections import Counter, OrderedDict
from typing import Any

from fetchguard.clock import Clock, SystemClock
from fetchguard.duration import parse_duration
from fetchguard.types import CacheEntry, CacheLookup, CacheStats, Duration

logger = logging.getLogger(__name__)


class CacheStore:
    """Key/value store with per-entry TTL and bounded size.

    Stale entries stay readable so they can back a fallback; they are only
    removed by eviction, invalidation or an overwrite. Keys pinned with
    ``pin()`` are skipped by eviction.
    """

    def __init__(self, max_entries: int = 500, *, clock: Clock | None = None) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._pins: Counter[str] = Counter()
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def get(self, key: str, *, track: bool = True) -> CacheLookup[Any] | None:
        """Get an entry, fresh or stale. ``track=False`` skips hit/miss counters."""
        entry = self._entries.get(key)
        if entry is None:
            if track:
                self._misses += 1
            return None

        now = self._clock.now()
        entry.last_accessed_at = now
        self._entries.move_to_end(key)  # LRU touch
        fresh = entry.is_fresh(now)
        if track:
            if fresh:
                self._hits += 1
            else:
                self._misses += 1
        return CacheLookup(entry=entry, fresh=fresh)

    def set(self, key: str, value: Any, ttl: Duration) -> CacheEntry[Any]:
        """Insert or replace an entry, then evict down to ``max_entries``."""
        now = self._clock.now()
        entry: CacheEntry[Any] = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            expires_at=now + parse_duration(ttl),
            last_accessed_at=now,
        )
        self._entries[key] = entry
        self._entries.move_to_end(key)
        self._evict(protect=key)
        return entry

    def pin(self, key: str) -> None:
        """Protect ``key`` from eviction until a matching ``unpin()``."""
        self._pins[key] += 1

    def unpin(self, key: str) -> None:
        if self._pins[key] <= 1:
            del self._pins[key]
        else:
            self._pins[key] -= 1

    def is_pinned(self, key: str) -> bool:
        return self._pins[key] > 0

    def invalidate(self, key: str) -> bool:
        """Remove a single entry. Returns whether it existed."""
        return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Remove all entries whose key starts with ``prefix``. Returns count removed."""
        to_remove = [k for k in self._entries if k.startswith(prefix)]
        for k in to_remove:
            del self._entries[k]
        return len(to_remove)

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        """Keys from least to most recently accessed."""
        return list(self._entries)

    def clear(self) -> None:
        """Remove every entry. Pins and counters are kept."""
        self._entries.clear()

    def stats(self) -> CacheStats:
        now = self._clock.now()
        fresh = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return CacheStats(
            size=len(self._entries),
            max_entries=self._max_entries,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            fresh_entries=fresh,
            stale_entries=len(self._entries) - fresh,
        )

    def dispose(self) -> None:
        self._entries.clear()
        self._pins.clear()

    def _evict(self, protect: str) -> None:
        if len(self._entries) <= self._max_entries:
            return
        # Oldest first; pinned keys and the entry just written are skipped
        for key in list(self._entries):
            if len(self._entries) <= self._max_entries:
                return
            if key == protect or self._pins[key] > 0:
                continue
            del self._entries[key]
            self._evictions += 1
            logger.debug("Evicted cache entry %s", key)
        if len(self._entries) > self._max_entries:
            logger.warning(
                "Cache over capacity (%d/%d): remaining entries are pinned",
                len(self._entries),
                self._max_entries,
            )
