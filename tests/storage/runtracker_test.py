"""Tests for the memory-backed run tracker store."""

from __future__ import annotations

import asyncio

import pytest

from archguard.domain.checkrun import OrchestrationKey, RunState, TrackedRun
from archguard.storage.runtracker import MemoryRunTrackerStore


def make_key(
    sha: str = "a" * 40, repo: str = "Hello-World"
) -> OrchestrationKey:
    return OrchestrationKey(
        owner="octocat", repo=repo, head_sha=sha, check_name="ArchGuard"
    )


@pytest.mark.asyncio
async def test_compare_and_set() -> None:
    store = MemoryRunTrackerStore()
    key = make_key()
    assert await store.get(key) is None

    first = TrackedRun(key=key, installation_id=1, version=1)
    assert await store.compare_and_set(key, 0, first)
    # A second writer that also saw "no record" loses.
    assert not await store.compare_and_set(key, 0, first)

    stored = await store.get(key)
    assert stored == first

    second = first.model_copy(
        update={"version": 2, "state": RunState.in_progress}
    )
    assert not await store.compare_and_set(key, 2, second)
    assert await store.compare_and_set(key, 1, second)
    stored = await store.get(key)
    assert stored is not None
    assert stored.state is RunState.in_progress


@pytest.mark.asyncio
async def test_concurrent_writers() -> None:
    store = MemoryRunTrackerStore()
    key = make_key()
    run = TrackedRun(key=key, installation_id=1, version=1)

    results = await asyncio.gather(
        *(store.compare_and_set(key, 0, run) for _ in range(10))
    )
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_records_are_copies() -> None:
    store = MemoryRunTrackerStore()
    key = make_key()
    await store.compare_and_set(
        key, 0, TrackedRun(key=key, installation_id=1, version=1)
    )
    first = await store.get(key)
    second = await store.get(key)
    assert first == second
    assert first is not second


@pytest.mark.asyncio
async def test_scan() -> None:
    store = MemoryRunTrackerStore()
    for key in (
        make_key("a" * 40),
        make_key("b" * 40),
        make_key("c" * 40, repo="Other"),
    ):
        await store.compare_and_set(
            key, 0, TrackedRun(key=key, installation_id=1, version=1)
        )

    runs = await store.scan("octocat/Hello-World/*")
    assert [r.key.head_sha[0] for r in runs] == ["a", "b"]
    assert len(await store.scan("octocat/*")) == 3
    assert len(await store.scan()) == 3
