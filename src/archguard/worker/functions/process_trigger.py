"""Worker function that applies a webhook trigger to its check run."""

from __future__ import annotations

from typing import Any

from ...config import config
from ...domain.trigger import NormalizedTrigger
from ..servicefactory import create_orchestrator
from ..taskerrors import handle_task_error


async def process_trigger(
    ctx: dict[Any, Any], *, trigger: dict[str, Any]
) -> str:
    """Process process_trigger queue tasks, queued by the GitHub webhook
    endpoint for every accepted delivery.

    When the trigger queues a new run cycle (a first trigger for a commit,
    or a rerequest of a completed run), the external analyzer's task is
    enqueued with the check run's `~archguard.domain.checkrun.AnalysisRequest`.

    Returns
    -------
    str
        The transition action that was applied.
    """
    normalized = NormalizedTrigger.model_validate(trigger)
    logger = ctx["logger"].bind(
        task="process_trigger",
        github_owner=normalized.owner,
        github_repo=normalized.repo,
        head_sha=normalized.head_sha,
        delivery_id=normalized.delivery_id,
    )
    logger.info("Running process_trigger", trigger=normalized.kind.value)

    orchestrator = create_orchestrator(ctx, logger=logger)
    try:
        outcome = await orchestrator.handle_trigger(normalized)
    except Exception as e:
        await handle_task_error(
            ctx, e, task="process_trigger", key=None, logger=logger
        )

    analysis_request = outcome.analysis_request()
    if analysis_request is not None:
        job = await ctx["analyzer_queue"].enqueue(
            config.analyzer_task_name,
            request=analysis_request.model_dump(mode="json"),
        )
        logger.info(
            "Queued architecture analysis",
            check_run_id=analysis_request.check_run_id,
            cycle=analysis_request.cycle,
            job_id=job.id,
        )
    return outcome.transition.action.value
