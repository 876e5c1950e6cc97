"""
Per-Identity Locks — serialises mutations for each (patient, track).

One asyncio.Lock per identity key.  Operations on the same identity run
one at a time, in arrival order; different identities run in parallel.

Locks are created on first use and dropped as soon as nobody holds or
waits on them, so the table only ever contains identities with work in
progress.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class IdentityLocks:
    """
    Usage:
        locks = IdentityLocks()
        async with locks.hold("recurring-monitor-PT-1-symptom"):
            ...  # cancel + enqueue
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock.locked() if lock else False

    @property
    def active_keys(self) -> list[str]:
        """Identity keys currently held or waited on."""
        return list(self._locks.keys())

    @property
    def active_count(self) -> int:
        return len(self._locks)
