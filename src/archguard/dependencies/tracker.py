"""Run tracker store dependency."""

from __future__ import annotations

from redis.asyncio import BlockingConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from ..config import TrackerBackend, config
from ..storage.runtracker import (
    MemoryRunTrackerStore,
    RedisRunTrackerStore,
    RunTrackerStore,
)

__all__ = ["RunTrackerDependency", "tracker_dependency"]


class RunTrackerDependency:
    """Provides the configured `RunTrackerStore` as a dependency.

    With the Redis backend, the store wraps a connection pool that is shared
    by every request (or every job of a worker). With the memory backend,
    one store is shared for the lifetime of the process.

    Notes
    -----
    This dependency must be initialized in a start-up hook (`initialize`) and
    closed in a shut down hook (`close`).
    """

    def __init__(self) -> None:
        self.redis: Redis | None = None
        self._memory_store: MemoryRunTrackerStore | None = None

    async def initialize(
        self,
        backend: TrackerBackend,
        redis_url: str,
        password: str | None = None,
    ) -> None:
        """Set up the store for ``backend``.

        Creating the Redis pool does not connect, so a Redis backend that is
        unreachable is only reported by the first tracker call.
        """
        if backend == TrackerBackend.memory:
            if self._memory_store is None:
                self._memory_store = MemoryRunTrackerStore()
            return
        redis_pool = BlockingConnectionPool.from_url(
            redis_url,
            password=password,
            max_connections=25,
            retry=Retry(ExponentialBackoff(base=0.2, cap=1.0), 10),
            retry_on_timeout=True,
            socket_keepalive=True,
            socket_timeout=config.tracker_timeout,
            timeout=30,
        )
        self.redis = Redis.from_pool(redis_pool)

    async def __call__(self) -> RunTrackerStore:
        """Return the run tracker store."""
        if self._memory_store is not None:
            return self._memory_store
        if self.redis is None:
            raise RuntimeError("RunTrackerDependency is not initialized")
        return RedisRunTrackerStore(
            self.redis, lifetime=config.tracker_retention_seconds
        )

    async def close(self) -> None:
        """Close the Redis pool, completing any pending writes.

        Tracked runs of the memory backend are kept, so that they survive an
        application restart within the same process (as in tests).
        """
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    def reset(self) -> None:
        """Forget the tracked runs of the memory backend."""
        if self._memory_store is not None:
            self._memory_store = MemoryRunTrackerStore()


tracker_dependency = RunTrackerDependency()
"""The dependency that returns the run tracker store."""
