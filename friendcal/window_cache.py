"""In-memory cache of friend events keyed by owner and query window.

Entries expire after a fixed TTL. Purging an owner removes every window for
that owner in one step, so a revoked owner's data cannot be served from any
window key.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from .models import CacheEntry, FriendCalendarEvent
from .timezone_utils import ensure_utc, now_utc, truncate_to_minute

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=15)


def make_window_key(window_start: datetime, window_end: datetime) -> str:
    """Build the cache key for a query window.

    Bounds are normalized to UTC and truncated to the minute, so requests
    that differ only by seconds share an entry.

    Example:
        >>> make_window_key(datetime(2025, 1, 1, 10, 0, 30, tzinfo=UTC), ...)
        '2025-01-01T10:00Z|2025-01-15T10:00Z'
    """
    start = truncate_to_minute(window_start).strftime("%Y-%m-%dT%H:%MZ")
    end = truncate_to_minute(window_end).strftime("%Y-%m-%dT%H:%MZ")
    return f"{start}|{end}"


class WindowedCache:
    """TTL cache of event lists per (owner, window).

    Example:
        cache = WindowedCache(ttl=timedelta(minutes=15))
        key = make_window_key(start, end)

        entry = cache.get("friend-1", key)
        if entry is None:
            events = fetch_events()
            cache.put("friend-1", key, events)

        # On permission revocation
        cache.purge("friend-1")
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = now_utc,
    ):
        """Initialize windowed cache.

        Args:
            ttl: Age at which an entry stops being fresh
            clock: Time source, injectable for tests
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, dict[str, CacheEntry]] = {}
        self._lock = threading.Lock()
        self.stats = {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "purges": 0,
        }

    def get(self, owner_id: str, window_key: str) -> Optional[CacheEntry]:
        """Return the entry if it exists and is still fresh.

        Expired entries are dropped on access and reported as a miss.
        """
        with self._lock:
            entry = self._entries.get(owner_id, {}).get(window_key)
            if entry is None:
                self.stats["misses"] += 1
                logger.debug("Cache miss for %s [%s]", owner_id, window_key)
                return None

            if not entry.is_fresh(self._clock(), self.ttl):
                self._drop(owner_id, window_key)
                self.stats["expired"] += 1
                self.stats["misses"] += 1
                logger.debug("Cache entry expired for %s [%s]", owner_id, window_key)
                return None

            self.stats["hits"] += 1
            logger.debug("Cache hit for %s [%s]", owner_id, window_key)
            return entry

    def peek(self, owner_id: str, window_key: str) -> Optional[CacheEntry]:
        """Return the entry regardless of age, without touching stats."""
        with self._lock:
            return self._entries.get(owner_id, {}).get(window_key)

    def put(
        self,
        owner_id: str,
        window_key: str,
        events: list[FriendCalendarEvent],
        written_at: Optional[datetime] = None,
    ) -> CacheEntry:
        """Store an event list, replacing any entry for the same key."""
        entry = CacheEntry(
            owner_id=owner_id,
            window_key=window_key,
            events=list(events),
            written_at=ensure_utc(written_at) if written_at else self._clock(),
        )
        with self._lock:
            self._entries.setdefault(owner_id, {})[window_key] = entry
        logger.debug("Cached %d events for %s [%s]", len(entry.events), owner_id, window_key)
        return entry

    def store(self, entry: CacheEntry) -> None:
        """Insert an existing entry, keeping its original write time."""
        with self._lock:
            self._entries.setdefault(entry.owner_id, {})[entry.window_key] = entry

    def is_fresh(self, owner_id: str, window_key: str) -> bool:
        with self._lock:
            entry = self._entries.get(owner_id, {}).get(window_key)
            return entry is not None and entry.is_fresh(self._clock(), self.ttl)

    def purge(self, owner_id: str) -> int:
        """Remove every window cached for the owner.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = len(self._entries.pop(owner_id, {}))
            self.stats["purges"] += 1
        logger.debug("Purged %d cached windows for %s", removed, owner_id)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def owners(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def window_keys(self, owner_id: str) -> list[str]:
        with self._lock:
            return list(self._entries.get(owner_id, {}))

    def _drop(self, owner_id: str, window_key: str) -> None:
        windows = self._entries.get(owner_id)
        if not windows:
            return
        windows.pop(window_key, None)
        if not windows:
            del self._entries[owner_id]

    def get_stats(self) -> dict[str, int]:
        """Get cache statistics.

        Returns:
            Dict with hits, misses, expired, purges, size and hit_rate (percent)
        """
        with self._lock:
            size = sum(len(windows) for windows in self._entries.values())
            total = self.stats["hits"] + self.stats["misses"]
            return {
                **self.stats,
                "size": size,
                "owners": len(self._entries),
                "hit_rate": round(self.stats["hits"] / total * 100) if total else 0,
            }
