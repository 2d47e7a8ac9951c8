"""Factories for services in the worker context."""

from __future__ import annotations

from typing import Any

import httpx
from safir.arq import ArqMode, ArqQueue, MockArqQueue, RedisArqQueue
from safir.github import GitHubAppClientFactory
from safir.slack.blockkit import SlackException
from structlog.stdlib import BoundLogger

from ..config import config
from ..services.checksgateway import GitHubChecksGateway
from ..services.keyresolver import CheckRunKeyResolver
from ..services.orchestrator import CheckRunOrchestrator, RunMessages

__all__ = [
    "create_analyzer_queue",
    "create_checks_gateway",
    "create_github_client_factory",
    "create_orchestrator",
    "get_checks_gateway",
]


def create_github_client_factory(
    http_client: httpx.AsyncClient,
) -> GitHubAppClientFactory:
    """Create a factory for GitHub App installation clients."""
    if not config.github_app_id or not config.github_app_private_key:
        raise SlackException(
            "github_app_id and github_app_private_key must be set to "
            "create check runs."
        )
    return GitHubAppClientFactory(
        http_client=http_client,
        id=config.github_app_id,
        key=config.github_app_private_key.get_secret_value(),
        name="archguard",
    )


def create_checks_gateway(
    *, http_client: httpx.AsyncClient, logger: BoundLogger
) -> GitHubChecksGateway:
    """Create the GitHub Checks API gateway for arq tasks."""
    return GitHubChecksGateway(
        client_factory=create_github_client_factory(http_client),
        logger=logger,
        max_attempts=config.api_max_attempts,
        backoff_base=config.api_backoff_base,
        backoff_cap=config.api_backoff_cap,
    )


def get_checks_gateway(
    ctx: dict[Any, Any], *, logger: BoundLogger
) -> GitHubChecksGateway:
    """Return the worker's Checks API gateway, bound to ``logger``.

    The gateway is created by the first task that needs it and kept in the
    worker context, so installation clients are reused across tasks.
    """
    if "checks_gateway" not in ctx:
        ctx["checks_gateway"] = create_checks_gateway(
            http_client=ctx["http_client"], logger=ctx["logger"]
        )
    return ctx["checks_gateway"].bind(logger)


def create_orchestrator(
    ctx: dict[Any, Any], *, logger: BoundLogger
) -> CheckRunOrchestrator:
    """Create a CheckRunOrchestrator for an arq task.

    Everything stateful comes from the worker context, so every task in
    the worker process shares it.
    """
    store = ctx["tracker"]
    return CheckRunOrchestrator(
        resolver=CheckRunKeyResolver(
            check_name=config.check_name, store=store, logger=logger
        ),
        store=store,
        gateway=get_checks_gateway(ctx, logger=logger),
        locks=ctx["locks"],
        logger=logger,
        messages=RunMessages(
            queued_title=config.initial_title,
            queued_summary=config.initial_summary,
            details_url=(
                str(config.check_details_url)
                if config.check_details_url
                else None
            ),
        ),
        lock_timeout=config.lock_timeout,
        tracker_timeout=config.tracker_timeout,
        api_timeout=config.api_timeout,
        max_retries=config.transition_max_retries,
    )


async def create_analyzer_queue() -> ArqQueue:
    """Create an ArqQueue that enqueues jobs for the external analyzer."""
    mode = config.arq_mode
    if mode == ArqMode.production:
        if not config.arq_redis_settings:
            raise RuntimeError(
                "The redis_settings argument must be set for arq in "
                "production."
            )
        return await RedisArqQueue.initialize(
            config.arq_redis_settings,
            default_queue_name=config.analyzer_queue_name,
        )
    else:
        return MockArqQueue(default_queue_name=config.analyzer_queue_name)
