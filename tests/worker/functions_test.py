"""Tests for the arq worker functions."""

from __future__ import annotations

from typing import Any

import pytest
from arq.worker import Retry
from pytest_mock import MockerFixture
from safir.arq import MockArqQueue
from safir.slack.blockkit import SlackMessage

from archguard.config import config
from archguard.domain.checkrun import OrchestrationKey, RunState
from archguard.domain.trigger import NormalizedTrigger, TriggerKind
from archguard.exceptions import PermanentApiError, RetryableApiError
from archguard.worker.functions import (
    ping,
    process_trigger,
    report_check_result,
    start_check_run,
)
from tests.support.checks import FakeChecksGateway

SHA = "ec26c3e57ca3a959ca5aad62de7213c562f8c821"


@pytest.fixture
def gateway(mocker: MockerFixture) -> FakeChecksGateway:
    gateway = FakeChecksGateway()
    mocker.patch(
        "archguard.worker.servicefactory.create_checks_gateway",
        return_value=gateway,
    )
    return gateway


def trigger_payload(kind: TriggerKind = TriggerKind.push) -> dict[str, Any]:
    trigger = NormalizedTrigger(
        owner="Codertocat",
        repo="Hello-World",
        head_sha=SHA,
        ref="refs/heads/changes",
        installation_id=2311213,
        kind=kind,
        delivery_id="72d3162e",
    )
    return trigger.model_dump(mode="json")


def key_payload() -> dict[str, Any]:
    key = OrchestrationKey(
        owner="Codertocat",
        repo="Hello-World",
        head_sha=SHA,
        check_name=config.check_name,
    )
    return key.model_dump(mode="json")


@pytest.mark.asyncio
async def test_ping(worker_context: dict[Any, Any]) -> None:
    assert await ping(worker_context) == "pong"


@pytest.mark.asyncio
async def test_process_trigger_queues_analysis(
    worker_context: dict[Any, Any],
    gateway: FakeChecksGateway,
    mocker: MockerFixture,
) -> None:
    queue: MockArqQueue = worker_context["analyzer_queue"]
    enqueue = mocker.spy(queue, "enqueue")

    result = await process_trigger(worker_context, trigger=trigger_payload())

    assert result == "create"
    assert len(gateway.created) == 1
    assert gateway.created[0].check_name == config.check_name
    assert gateway.created[0].initial_title == config.initial_title

    assert enqueue.call_count == 1
    assert enqueue.call_args.args == (config.analyzer_task_name,)
    request = enqueue.call_args.kwargs["request"]
    assert request["check_run_id"] == 42
    assert request["key"]["head_sha"] == SHA
    assert request["cycle"] == 1

    # A duplicate delivery neither creates nor queues anything.
    result = await process_trigger(
        worker_context, trigger=trigger_payload(TriggerKind.pr_opened)
    )
    assert result == "noop"
    assert enqueue.call_count == 1


@pytest.mark.asyncio
async def test_analyzer_signals(
    worker_context: dict[Any, Any], gateway: FakeChecksGateway
) -> None:
    await process_trigger(worker_context, trigger=trigger_payload())

    assert await start_check_run(worker_context, key=key_payload()) == (
        "start"
    )
    result = await report_check_result(
        worker_context,
        key=key_payload(),
        conclusion="action_required",
        title="Layering violations",
        summary="Review required.",
    )
    assert result == "complete"

    run = await worker_context["tracker"].get(
        OrchestrationKey.model_validate(key_payload())
    )
    assert run.state is RunState.completed
    assert run.conclusion.value == "action_required"


@pytest.mark.asyncio
async def test_retryable_failure_is_retried(
    worker_context: dict[Any, Any], gateway: FakeChecksGateway
) -> None:
    gateway.failures.append(RetryableApiError("GitHub is down"))

    with pytest.raises(Retry) as exc_info:
        await process_trigger(worker_context, trigger=trigger_payload())

    expected = int(config.task_retry_delay * 1000)
    assert exc_info.value.defer_score == expected


@pytest.mark.asyncio
async def test_exhausted_retries_are_reported(
    worker_context: dict[Any, Any],
    gateway: FakeChecksGateway,
    mocker: MockerFixture,
) -> None:
    slack = mocker.AsyncMock()
    worker_context["slack"] = slack
    worker_context["job_try"] = config.task_max_tries
    gateway.failures.append(RetryableApiError("GitHub is down"))

    with pytest.raises(RetryableApiError):
        await process_trigger(worker_context, trigger=trigger_payload())

    slack.post.assert_awaited_once()
    message = slack.post.await_args.args[0]
    assert isinstance(message, SlackMessage)
    assert any(f.text == "process_trigger" for f in message.fields)


@pytest.mark.asyncio
async def test_permanent_failure_is_reported(
    worker_context: dict[Any, Any],
    gateway: FakeChecksGateway,
    mocker: MockerFixture,
) -> None:
    slack = mocker.AsyncMock()
    worker_context["slack"] = slack
    await process_trigger(worker_context, trigger=trigger_payload())
    gateway.failures.append(
        PermanentApiError("Check run not found", status_code=404)
    )

    with pytest.raises(PermanentApiError):
        await start_check_run(worker_context, key=key_payload())

    slack.post.assert_awaited_once()
    message = slack.post.await_args.args[0]
    headings = {f.heading: f.text for f in message.fields}
    assert headings["Task"] == "start_check_run"
    assert headings["Commit"] == SHA


@pytest.mark.asyncio
async def test_tasks_share_checks_gateway(
    worker_context: dict[Any, Any], mocker: MockerFixture
) -> None:
    gateway = FakeChecksGateway()
    factory = mocker.patch(
        "archguard.worker.servicefactory.create_checks_gateway",
        return_value=gateway,
    )

    await process_trigger(worker_context, trigger=trigger_payload())
    await start_check_run(worker_context, key=key_payload())

    factory.assert_called_once()
    assert worker_context["checks_gateway"] is gateway
    assert len(gateway.calls) == 2
