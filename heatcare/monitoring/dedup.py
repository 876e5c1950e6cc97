"""
Alert Dedup Cache — remembers which alerts were already sent.

Bounded in both time and size: entries expire after ``ttl_seconds`` and
the oldest entries are evicted once ``max_entries`` is reached, so a
long-running sweep never grows the table without limit.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertDedupCache:
    """
    Usage:
        cache = AlertDedupCache(ttl_seconds=86400)
        if cache.claim("PT-1:high:2026-07-04"):
            ...  # first time today, send the alert
    """

    def __init__(
        self,
        ttl_seconds: int = 24 * 3600,
        max_entries: int = 10_000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max(1, max_entries)
        self._clock = clock or _utcnow
        # key → expiry, oldest first
        self._entries: OrderedDict[str, datetime] = OrderedDict()

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.seen(key)

    def seen(self, key: str) -> bool:
        expiry = self._entries.get(key)
        if expiry is None:
            return False
        if expiry <= self._clock():
            del self._entries[key]
            return False
        return True

    def mark(self, key: str) -> None:
        self._entries.pop(key, None)
        self._entries[key] = self._clock() + self._ttl
        self._evict_expired()
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def claim(self, key: str) -> bool:
        """Mark key and return True, unless it was already seen."""
        if self.seen(key):
            return False
        self.mark(key)
        return True

    def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict_expired(self) -> None:
        now = self._clock()
        # Insertion order equals expiry order (fixed TTL)
        while self._entries:
            key, expiry = next(iter(self._entries.items()))
            if expiry > now:
                break
            del self._entries[key]
