"""Worker function for the analyzer's completion signal."""

from __future__ import annotations

from typing import Any

from safir.github.models import GitHubCheckRunConclusion

from ...domain.checkrun import OrchestrationKey
from ..servicefactory import create_orchestrator
from ..taskerrors import handle_task_error


async def report_check_result(
    ctx: dict[Any, Any],
    *,
    key: dict[str, Any],
    conclusion: str,
    title: str,
    summary: str,
    text: str | None = None,
) -> str:
    """Complete a check run with the analyzer's verdict.

    Results for check runs that are unknown or already completed (for
    example, because the pull request was closed) are ignored.
    """
    orchestration_key = OrchestrationKey.model_validate(key)
    logger = ctx["logger"].bind(
        task="report_check_result",
        github_owner=orchestration_key.owner,
        github_repo=orchestration_key.repo,
        head_sha=orchestration_key.head_sha,
    )
    logger.info("Running report_check_result", conclusion=conclusion)

    orchestrator = create_orchestrator(ctx, logger=logger)
    try:
        outcome = await orchestrator.report_result(
            orchestration_key,
            GitHubCheckRunConclusion(conclusion),
            title,
            summary,
            text,
        )
    except Exception as e:
        await handle_task_error(
            ctx,
            e,
            task="report_check_result",
            key=orchestration_key,
            logger=logger,
        )
    return outcome.transition.action.value
