"""Tests for the GitHub Checks API gateway."""

from __future__ import annotations

from datetime import timedelta
from http import HTTPStatus

import gidgethub
import httpx
import pytest
from httpx import AsyncClient
from pytest_mock import MockerFixture
from safir.github import GitHubAppClientFactory
from safir.github.models import GitHubCheckRunConclusion, GitHubCheckRunStatus
from structlog.stdlib import BoundLogger

from archguard.domain.checkrun import CheckExecutionArgs
from archguard.exceptions import PermanentApiError, RetryableApiError
from archguard.services.checksgateway import (
    GitHubChecksGateway,
    classify_github_error,
)
from tests.support.github import SAMPLE_PRIVATE_KEY, MockChecksAPI

SHA = "ec26c3e57ca3a959ca5aad62de7213c562f8c821"


@pytest.fixture
def github_api() -> MockChecksAPI:
    return MockChecksAPI()


@pytest.fixture
def client_factory(
    mocker: MockerFixture,
    http_client: AsyncClient,
    github_api: MockChecksAPI,
) -> GitHubAppClientFactory:
    client_factory = GitHubAppClientFactory(
        id=1234,
        key=SAMPLE_PRIVATE_KEY,
        name="archguard",
        http_client=http_client,
    )
    mocker.patch.object(
        client_factory, "create_installation_client"
    ).return_value = github_api
    return client_factory


@pytest.fixture
def gateway(
    client_factory: GitHubAppClientFactory, logger: BoundLogger
) -> GitHubChecksGateway:
    return GitHubChecksGateway(
        client_factory=client_factory,
        logger=logger,
        max_attempts=3,
        backoff_base=0.001,
        backoff_cap=0.002,
    )


def make_args(**changes: object) -> CheckExecutionArgs:
    args = CheckExecutionArgs(
        repo_owner="Codertocat",
        repo_name="Hello-World",
        commit_sha=SHA,
        check_name="ArchGuard",
        installation_id=2311213,
        initial_title="Architecture check queued",
        initial_summary="The analysis will begin shortly.",
    )
    return args.model_copy(update=changes)


@pytest.mark.asyncio
async def test_create_check_run(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    check_run_id = await gateway.create_check_run(make_args())

    assert check_run_id == 42
    assert len(github_api.requests) == 1
    request = github_api.requests[0]
    assert request.method == "POST"
    assert request.url.endswith("/repos/Codertocat/Hello-World/check-runs")
    assert request.data == {
        "name": "ArchGuard",
        "head_sha": SHA,
        "status": "queued",
        "output": {
            "title": "Architecture check queued",
            "summary": "The analysis will begin shortly.",
        },
    }


@pytest.mark.asyncio
async def test_update_check_run(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    await gateway.update_check_run(
        make_args(
            existing_check_run_id=42,
            status=GitHubCheckRunStatus.completed,
            conclusion=GitHubCheckRunConclusion.failure,
            initial_title="2 layering violations",
            initial_summary="Found 2 violations.",
            text="* api -> storage",
            details_url="https://archguard.example.com/runs/42",
        )
    )

    request = github_api.requests[0]
    assert request.method == "PATCH"
    assert request.url.endswith(
        "/repos/Codertocat/Hello-World/check-runs/42"
    )
    assert request.data is not None
    assert request.data["status"] == "completed"
    assert request.data["conclusion"] == "failure"
    assert "completed_at" in request.data
    assert "head_sha" not in request.data
    assert request.data["output"]["text"] == "* api -> storage"
    assert request.data["details_url"] == (
        "https://archguard.example.com/runs/42"
    )


@pytest.mark.asyncio
async def test_update_to_in_progress(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    await gateway.update_check_run(
        make_args(
            existing_check_run_id=42, status=GitHubCheckRunStatus.in_progress
        )
    )
    request = github_api.requests[0]
    assert request.data is not None
    assert request.data["status"] == "in_progress"
    assert "started_at" in request.data
    assert "conclusion" not in request.data


@pytest.mark.asyncio
async def test_update_requires_check_run_id(
    gateway: GitHubChecksGateway,
) -> None:
    with pytest.raises(ValueError, match="existing_check_run_id"):
        await gateway.update_check_run(make_args())


@pytest.mark.asyncio
async def test_retryable_errors_are_retried(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    github_api.fail_next(502, "Bad Gateway")
    github_api.fail_next(503, "Service Unavailable")

    check_run_id = await gateway.create_check_run(make_args())

    assert check_run_id == 42
    assert len(github_api.requests) == 3


@pytest.mark.asyncio
async def test_retry_budget_is_bounded(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    for _ in range(3):
        github_api.fail_next(500, "Server Error")

    with pytest.raises(RetryableApiError) as exc_info:
        await gateway.create_check_run(make_args())

    assert exc_info.value.status_code == 500
    assert exc_info.value.operation == "create"
    assert len(github_api.requests) == 3


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    github_api.fail_next(404, "Not Found")

    with pytest.raises(PermanentApiError) as exc_info:
        await gateway.update_check_run(make_args(existing_check_run_id=7))

    assert exc_info.value.status_code == 404
    assert len(github_api.requests) == 1


@pytest.mark.asyncio
async def test_secondary_rate_limit_is_retryable(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    github_api.fail_next(
        403, "You have exceeded a secondary rate limit. Please wait."
    )
    assert await gateway.create_check_run(make_args()) == 42
    assert len(github_api.requests) == 2


def test_classify_github_error() -> None:
    assert classify_github_error(TimeoutError()).retryable
    assert classify_github_error(
        httpx.ConnectError("connection refused")
    ).retryable
    broken = gidgethub.GitHubBroken(HTTPStatus.BAD_GATEWAY)
    assert classify_github_error(broken).retryable
    too_many = gidgethub.HTTPException(HTTPStatus.TOO_MANY_REQUESTS)
    assert classify_github_error(too_many).retryable
    assert not classify_github_error(
        gidgethub.BadRequest(HTTPStatus.UNPROCESSABLE_ENTITY, "Invalid")
    ).retryable
    assert not classify_github_error(RuntimeError("boom")).retryable

    already = RetryableApiError("already classified")
    assert classify_github_error(already) is already


@pytest.mark.asyncio
async def test_find_check_run(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    assert await gateway.find_check_run(make_args()) is None
    await gateway.create_check_run(make_args(check_name="Lint"))
    assert await gateway.find_check_run(make_args()) is None

    check_run_id = await gateway.create_check_run(make_args())
    assert await gateway.find_check_run(make_args()) == check_run_id

    request = github_api.requests[-1]
    assert request.method == "GET"
    assert (
        f"/repos/Codertocat/Hello-World/commits/{SHA}/check-runs?"
        in request.url
    )
    assert "check_name=ArchGuard" in request.url
    assert "app_id=1234" in request.url


@pytest.mark.asyncio
async def test_find_check_run_retries(
    gateway: GitHubChecksGateway, github_api: MockChecksAPI
) -> None:
    github_api.fail_next(502, "Bad Gateway")
    assert await gateway.find_check_run(make_args()) is None
    assert len(github_api.requests) == 2


@pytest.mark.asyncio
async def test_bound_gateways_share_clients(
    gateway: GitHubChecksGateway,
    client_factory: GitHubAppClientFactory,
    logger: BoundLogger,
) -> None:
    await gateway.bind(logger.bind(task="a")).create_check_run(make_args())
    await gateway.bind(logger.bind(task="b")).create_check_run(make_args())

    create_client = client_factory.create_installation_client
    assert create_client.call_count == 1  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_expired_clients_are_replaced(
    client_factory: GitHubAppClientFactory, logger: BoundLogger
) -> None:
    gateway = GitHubChecksGateway(
        client_factory=client_factory,
        logger=logger,
        client_lifetime=timedelta(0),
    )
    await gateway.create_check_run(make_args())
    await gateway.create_check_run(make_args())

    create_client = client_factory.create_installation_client
    assert create_client.call_count == 2  # type: ignore[attr-defined]
