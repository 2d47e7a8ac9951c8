"""Storage of tracked check runs.

The orchestrator only relies on two operations: reading the current record
for a key and replacing it with compare-and-set semantics. Every mutation
goes through `RunTrackerStore.compare_and_set`; there are no blind writes.
"""

from __future__ import annotations

import asyncio
from abc import ABCMeta, abstractmethod

from redis.asyncio import Redis
from redis.exceptions import WatchError

from ..domain.checkrun import OrchestrationKey, TrackedRun

__all__ = ["MemoryRunTrackerStore", "RedisRunTrackerStore", "RunTrackerStore"]


class RunTrackerStore(metaclass=ABCMeta):
    """Interface of a durable mapping from orchestration keys to tracked
    runs.
    """

    @abstractmethod
    async def get(self, key: OrchestrationKey) -> TrackedRun | None:
        """Get the tracked run for a key.

        Returns
        -------
        TrackedRun or None
            The record, or `None` if the key has never been tracked (which
            the orchestrator treats as version 0).
        """
        raise NotImplementedError

    @abstractmethod
    async def compare_and_set(
        self,
        key: OrchestrationKey,
        expected_version: int,
        new_value: TrackedRun,
    ) -> bool:
        """Replace the record for a key if its version is unchanged.

        Parameters
        ----------
        key
            The orchestration key.
        expected_version
            The version the caller read. Use 0 to require that no record
            exists yet.
        new_value
            The replacement record. Its ``version`` should be greater than
            ``expected_version``.

        Returns
        -------
        bool
            `True` if the record was written, `False` if another writer
            changed it first.
        """
        raise NotImplementedError


class RedisRunTrackerStore(RunTrackerStore):
    """Tracked runs persisted in Redis as JSON documents.

    Compare-and-set uses an optimistic ``WATCH``/``MULTI`` transaction, so
    the guarantee holds across any number of worker processes.

    Parameters
    ----------
    redis
        The Redis client.
    key_prefix
        Prefix for all tracker keys.
    lifetime
        Lifetime of a record, in seconds, counted from its last update.
        `None` keeps records forever.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = "archguard:run:",
        lifetime: int | None = None,
    ) -> None:
        self._redis = redis
        self._key_prefix = key_prefix
        self._lifetime = lifetime

    def _prefix_key(self, key: OrchestrationKey) -> str:
        return f"{self._key_prefix}{key.tracker_key}"

    async def get(self, key: OrchestrationKey) -> TrackedRun | None:
        data = await self._redis.get(self._prefix_key(key))
        if data is None:
            return None
        return TrackedRun.model_validate_json(data)

    async def compare_and_set(
        self,
        key: OrchestrationKey,
        expected_version: int,
        new_value: TrackedRun,
    ) -> bool:
        redis_key = self._prefix_key(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(redis_key)
                data = await pipe.get(redis_key)
                current_version = (
                    TrackedRun.model_validate_json(data).version
                    if data is not None
                    else 0
                )
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(
                    redis_key, new_value.model_dump_json(), ex=self._lifetime
                )
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def scan(self, pattern: str = "*") -> list[TrackedRun]:
        """List the tracked runs whose tracker key matches ``pattern``."""
        runs: list[TrackedRun] = []
        async for redis_key in self._redis.scan_iter(
            f"{self._key_prefix}{pattern}"
        ):
            data = await self._redis.get(redis_key)
            if data is not None:
                runs.append(TrackedRun.model_validate_json(data))
        return runs


class MemoryRunTrackerStore(RunTrackerStore):
    """Tracked runs held in process memory.

    Suitable for a single worker process in development, and for tests.
    Records are stored as JSON so that callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: OrchestrationKey) -> TrackedRun | None:
        data = self._records.get(key.tracker_key)
        if data is None:
            return None
        return TrackedRun.model_validate_json(data)

    async def compare_and_set(
        self,
        key: OrchestrationKey,
        expected_version: int,
        new_value: TrackedRun,
    ) -> bool:
        async with self._lock:
            data = self._records.get(key.tracker_key)
            current_version = (
                TrackedRun.model_validate_json(data).version
                if data is not None
                else 0
            )
            if current_version != expected_version:
                return False
            self._records[key.tracker_key] = new_value.model_dump_json()
            return True

    async def scan(self, pattern: str = "*") -> list[TrackedRun]:
        """List tracked runs; only a trailing ``*`` wildcard is supported."""
        prefix = pattern.rstrip("*")
        return [
            TrackedRun.model_validate_json(data)
            for tracker_key, data in sorted(self._records.items())
            if tracker_key.startswith(prefix)
        ]
