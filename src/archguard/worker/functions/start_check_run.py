"""Worker function for the analyzer's start signal."""

from __future__ import annotations

from typing import Any

from ...domain.checkrun import OrchestrationKey
from ..servicefactory import create_orchestrator
from ..taskerrors import handle_task_error


async def start_check_run(
    ctx: dict[Any, Any], *, key: dict[str, Any]
) -> str:
    """Move a queued check run to in progress, triggered by the analyzer
    when it begins work on a commit.
    """
    orchestration_key = OrchestrationKey.model_validate(key)
    logger = ctx["logger"].bind(
        task="start_check_run",
        github_owner=orchestration_key.owner,
        github_repo=orchestration_key.repo,
        head_sha=orchestration_key.head_sha,
    )
    logger.info("Running start_check_run")

    orchestrator = create_orchestrator(ctx, logger=logger)
    try:
        outcome = await orchestrator.start_run(orchestration_key)
    except Exception as e:
        await handle_task_error(
            ctx,
            e,
            task="start_check_run",
            key=orchestration_key,
            logger=logger,
        )
    return outcome.transition.action.value
