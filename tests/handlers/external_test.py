"""Tests for the archguard.handlers.external module and routes."""

from __future__ import annotations

import json

import pytest
from httpx import AsyncClient
from pytest_mock import MockerFixture
from safir.arq import MockArqQueue
from safir.dependencies.arq import arq_dependency

from archguard.config import config
from tests.support.webhooks import load_webhook_payload, webhook_headers

SECRET = "test-webhook-secret"


def webhook_url() -> str:
    return f"{config.path_prefix}/github/webhook"


async def post_webhook(
    client: AsyncClient,
    event: str,
    payload: dict | bytes,
    *,
    secret: str = SECRET,
) -> tuple[int, dict]:
    body = payload if isinstance(payload, bytes) else json.dumps(payload)
    if isinstance(body, str):
        body = body.encode()
    response = await client.post(
        webhook_url(),
        content=body,
        headers=webhook_headers(event, body, secret),
    )
    try:
        data = response.json()
    except ValueError:
        data = {}
    return response.status_code, data


async def get_arq_queue() -> MockArqQueue:
    queue = await arq_dependency()
    assert isinstance(queue, MockArqQueue)
    return queue


@pytest.mark.asyncio
async def test_get_index(client: AsyncClient) -> None:
    """Test ``GET /`` for the external API."""
    response = await client.get(f"{config.path_prefix}/")
    assert response.status_code == 200
    data = response.json()
    metadata = data["metadata"]
    assert metadata["name"] == config.name
    assert isinstance(metadata["version"], str)
    assert data["v1_api_base"].endswith(f"{config.path_prefix}/v1")

    docs_url = data["api_docs"]
    docs_response = await client.get(docs_url)
    assert docs_response.status_code == 200


@pytest.mark.asyncio
async def test_push_is_queued(client: AsyncClient) -> None:
    status_code, data = await post_webhook(
        client, "push", load_webhook_payload("push_event")
    )

    assert status_code == 202
    assert data["accepted"] is True
    assert data["event"] == "push"
    assert data["delivery_id"] == "72d3162e-cc78-11e3-81ab-4c9367dc0958"

    queue = await get_arq_queue()
    job = await queue.get_job_metadata(data["job_id"])
    assert job.name == "process_trigger"
    trigger = job.kwargs["trigger"]
    assert trigger["kind"] == "push"
    assert trigger["owner"] == "octocat"
    assert trigger["head_sha"] == "0d1a26e67d8f5eaf1f6ba5c57fc3c7d91ac0fd1c"
    assert trigger["installation_id"] == 2311213
    assert trigger["delivery_id"] == "72d3162e-cc78-11e3-81ab-4c9367dc0958"


@pytest.mark.asyncio
async def test_check_run_rerequest_is_queued(client: AsyncClient) -> None:
    status_code, data = await post_webhook(
        client,
        "check_run",
        load_webhook_payload("check_run_rerequested_event"),
    )

    assert status_code == 202
    queue = await get_arq_queue()
    job = await queue.get_job_metadata(data["job_id"])
    assert job.kwargs["trigger"]["kind"] == "check_rerequested"
    assert job.kwargs["trigger"]["check_name"] == "ArchGuard"


@pytest.mark.asyncio
async def test_invalid_signature(client: AsyncClient) -> None:
    status_code, _ = await post_webhook(
        client,
        "push",
        load_webhook_payload("push_event"),
        secret="not-the-secret",
    )
    assert status_code == 401


@pytest.mark.asyncio
async def test_missing_signature(client: AsyncClient) -> None:
    response = await client.post(
        webhook_url(),
        content=b"{}",
        headers={"x-github-event": "push", "x-github-delivery": "1"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_malformed_payload_is_acknowledged(
    client: AsyncClient,
) -> None:
    payload = load_webhook_payload("push_event")
    del payload["installation"]

    status_code, data = await post_webhook(client, "push", payload)

    assert status_code == 200
    assert data["accepted"] is False
    assert "installation" in data["detail"]


@pytest.mark.asyncio
async def test_invalid_json_is_acknowledged(client: AsyncClient) -> None:
    status_code, data = await post_webhook(client, "push", b"{not json")
    assert status_code == 200
    assert data["accepted"] is False


@pytest.mark.asyncio
async def test_unsupported_event_is_acknowledged(
    client: AsyncClient,
) -> None:
    status_code, data = await post_webhook(
        client, "issues", {"action": "opened"}
    )
    assert status_code == 200
    assert data["accepted"] is False
    assert "issues" in data["detail"]


@pytest.mark.asyncio
async def test_ping(client: AsyncClient) -> None:
    status_code, data = await post_webhook(
        client, "ping", {"zen": "Keep it logically awesome."}
    )
    assert status_code == 200
    assert data["detail"] == "pong"


@pytest.mark.asyncio
async def test_branch_deletion_is_ignored(client: AsyncClient) -> None:
    status_code, data = await post_webhook(
        client, "push", load_webhook_payload("push_deleted_event")
    )
    assert status_code == 200
    assert data["accepted"] is False


@pytest.mark.asyncio
async def test_unaccepted_owner_is_ignored(
    client: AsyncClient, mocker: MockerFixture
) -> None:
    mocker.patch.object(config, "github_orgs", "lsst-sqre,example-org")

    status_code, data = await post_webhook(
        client, "push", load_webhook_payload("push_event")
    )

    assert status_code == 200
    assert data["accepted"] is False
    assert "octocat" in data["detail"]


@pytest.mark.asyncio
async def test_github_app_disabled(
    client: AsyncClient, mocker: MockerFixture
) -> None:
    mocker.patch.object(config, "enable_github_app", False)

    status_code, _ = await post_webhook(
        client, "push", load_webhook_payload("push_event")
    )
    assert status_code == 501
