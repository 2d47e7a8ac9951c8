"""Failure handling shared by the check run worker tasks."""

from __future__ import annotations

from typing import Any, NoReturn

from arq.worker import Retry
from safir.slack.blockkit import (
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextField,
)
from structlog.stdlib import BoundLogger

from ..config import config
from ..domain.checkrun import OrchestrationKey
from ..exceptions import (
    ChecksApiError,
    TransitionConflictError,
    TransitionTimeoutError,
)

__all__ = ["handle_task_error", "is_retryable"]


def is_retryable(error: Exception) -> bool:
    """Whether running the task again can get past ``error``."""
    if isinstance(error, ChecksApiError):
        return error.retryable
    return isinstance(error, TransitionConflictError | TransitionTimeoutError)


async def handle_task_error(
    ctx: dict[Any, Any],
    error: Exception,
    *,
    task: str,
    key: OrchestrationKey | None,
    logger: BoundLogger,
) -> NoReturn:
    """Retry a failed task, or report the failure to Slack.

    Retryable failures are deferred with `arq.worker.Retry`, with a delay
    that grows with the try number, until the task has run
    ``task_max_tries`` times. Exhausted and permanent failures are posted to
    Slack (when configured) and re-raised.

    Raises
    ------
    arq.worker.Retry
        Raised to schedule another try of the task.
    Exception
        The original error, once it will not be retried.
    """
    job_try = ctx.get("job_try", 1)
    if is_retryable(error) and job_try < config.task_max_tries:
        defer = config.task_retry_delay * job_try
        logger.warning(
            "Retrying check run task",
            job_try=job_try,
            defer=defer,
            error=str(error),
        )
        raise Retry(defer=defer) from error

    logger.error(
        "Check run task failed",
        job_try=job_try,
        retryable=is_retryable(error),
        error=str(error),
    )
    if "slack" in ctx:
        await ctx["slack"].post(
            _build_slack_message(error, task=task, key=key, job_try=job_try)
        )
    raise error


def _build_slack_message(
    error: Exception,
    *,
    task: str,
    key: OrchestrationKey | None,
    job_try: int,
) -> SlackMessage:
    if isinstance(error, SlackException):
        message = error.to_slack()
    else:
        message = SlackMessage(
            message="ArchGuard worker exception.",
            blocks=[
                SlackCodeBlock(
                    heading="Exception",
                    code=f"{type(error).__name__}: {error}",
                )
            ],
        )
        if key is not None:
            message.fields.append(
                SlackTextField(
                    heading="Repository",
                    text=f"https://github.com/{key.owner}/{key.repo}",
                )
            )
            message.fields.append(
                SlackTextField(heading="Commit", text=key.head_sha)
            )
    message.fields.append(SlackTextField(heading="Task", text=task))
    message.fields.append(SlackTextField(heading="Try", text=str(job_try)))
    return message
