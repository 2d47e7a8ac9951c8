"""Worker function for checking that the worker is processing jobs."""

from __future__ import annotations

from typing import Any


async def ping(ctx: dict[Any, Any]) -> str:
    """Process ping queue tasks, reporting the number of orchestration keys
    with a transition in progress.
    """
    logger = ctx["logger"].bind(task="ping")
    logger.info("Running ping", active_keys=ctx["locks"].active_keys)
    return "pong"
