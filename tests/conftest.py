"""Test fixtures for ArchGuard tests."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import pytest_asyncio
import structlog
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from safir.arq import MockArqQueue
from structlog.stdlib import BoundLogger

from tests.support.github import SAMPLE_PRIVATE_KEY

# The configuration is read when archguard is first imported.
os.environ.setdefault("AG_ARQ_MODE", "test")
os.environ.setdefault("AG_TRACKER_BACKEND", "memory")
os.environ.setdefault("AG_GITHUB_APP_ID", "1234")
os.environ.setdefault("AG_GITHUB_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("AG_GITHUB_APP_PRIVATE_KEY", SAMPLE_PRIVATE_KEY)

from archguard import main  # noqa: E402
from archguard.config import config  # noqa: E402
from archguard.dependencies.tracker import tracker_dependency  # noqa: E402
from archguard.services.keylock import KeyedLocks  # noqa: E402
from archguard.storage.runtracker import MemoryRunTrackerStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_tracker() -> Iterator[None]:
    """Give every test an empty memory tracker."""
    tracker_dependency.reset()
    yield
    tracker_dependency.reset()


@pytest.fixture
def logger() -> BoundLogger:
    return structlog.get_logger(config.logger_name)


@pytest_asyncio.fixture
async def app() -> AsyncIterator[FastAPI]:
    """Return a configured test application.

    Wraps the application in a lifespan manager so that startup and shutdown
    events are sent during test execution.
    """
    async with LifespanManager(main.app):
        yield main.app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Return an ``httpx.AsyncClient`` configured to talk to the test app."""
    base = "https://example.com/"
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=base) as client:
        yield client


@pytest_asyncio.fixture
async def http_client() -> AsyncIterator[AsyncClient]:
    """Return an ``httpx.AsyncClient``."""
    async with AsyncClient() as client:
        yield client


@pytest_asyncio.fixture
async def worker_context(
    http_client: AsyncClient, logger: BoundLogger
) -> dict[Any, Any]:
    """Return an arq worker context like the one set up by the worker's
    startup function.
    """
    return {
        "logger": logger,
        "http_client": http_client,
        "tracker": MemoryRunTrackerStore(),
        "locks": KeyedLocks(),
        "analyzer_queue": MockArqQueue(
            default_queue_name=config.analyzer_queue_name
        ),
        "job_try": 1,
    }
