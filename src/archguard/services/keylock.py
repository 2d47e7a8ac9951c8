"""Per-key locks that serialize check run transitions within a process."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

__all__ = ["KeyedLocks"]


class KeyedLocks:
    """A registry of `asyncio.Lock` objects, one per key in use.

    Transitions for the same key wait for each other while transitions for
    different keys run in parallel. Locks are dropped from the registry once
    nothing holds or waits for them, so the registry only grows with the
    number of keys that are active at the same time.

    This only orders work inside one process. Ordering across processes
    comes from the tracker's compare-and-set.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @property
    def active_keys(self) -> int:
        """Number of keys whose lock is held or awaited."""
        return len(self._locks)

    def locked(self, key: Hashable) -> bool:
        """Whether the lock for ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self, key: Hashable, *, timeout: float | None = None
    ) -> AsyncIterator[None]:
        """Hold the lock for ``key``.

        Parameters
        ----------
        key
            The key to lock.
        timeout
            Maximum time to wait for the lock, in seconds.

        Raises
        ------
        TimeoutError
            Raised if the lock is not acquired within ``timeout``.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
