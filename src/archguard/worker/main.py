"""Arq-based queue worker lifecycle configuration."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any, ClassVar

import httpx
import structlog
from safir.logging import configure_logging
from safir.slack.blockkit import SlackMessage, SlackTextField
from safir.slack.webhook import SlackWebhookClient

from .. import __version__
from ..config import config
from ..dependencies.tracker import tracker_dependency
from ..services.keylock import KeyedLocks
from .functions import (
    ping,
    process_trigger,
    report_check_result,
    start_check_run,
)
from .servicefactory import create_analyzer_queue


async def startup(ctx: dict[Any, Any]) -> None:
    """Set up the worker context."""
    configure_logging(
        profile=config.profile,
        log_level=config.log_level,
        name=config.logger_name,
    )
    logger = structlog.get_logger(config.logger_name)
    # The instance key uniquely identifies this worker in logs
    instance_key = uuid.uuid4().hex
    logger = logger.bind(worker_instance=instance_key)

    logger.info("Starting up worker")

    http_client = httpx.AsyncClient()
    ctx["http_client"] = http_client

    if config.slack_webhook_url:
        slack_client = SlackWebhookClient(
            str(config.slack_webhook_url),
            "ArchGuard worker",
            logger=logger,
        )
        ctx["slack"] = slack_client

    ctx["logger"] = logger

    # Set up FastAPI dependencies; we can use them "manually" with
    # arq to provide resources similarly to FastAPI endpoints
    await tracker_dependency.initialize(
        config.tracker_backend,
        str(config.redis_url),
        password=(
            config.redis_password.get_secret_value()
            if config.redis_password
            else None
        ),
    )
    ctx["tracker"] = await tracker_dependency()

    # Shared by every job in this process so that transitions of the same
    # orchestration key are serialized.
    ctx["locks"] = KeyedLocks()

    ctx["analyzer_queue"] = await create_analyzer_queue()

    logger.info("Start up complete", tracker=config.tracker_backend.value)

    if "slack" in ctx:
        await ctx["slack"].post(
            SlackMessage(
                message="ArchGuard worker started up.",
                fields=[
                    SlackTextField(
                        heading="Version",
                        text=__version__,
                    ),
                ],
            )
        )


async def shutdown(ctx: dict[Any, Any]) -> None:
    """Shut-down resources."""
    if "logger" in ctx:
        logger = ctx["logger"]
    else:
        logger = structlog.get_logger(config.logger_name)
    logger.info("Running worker shutdown.")

    await tracker_dependency.close()

    try:
        await ctx["http_client"].aclose()
    except Exception as e:
        logger.warning("Issue closing the http_client: %s", str(e))

    logger.info("Worker shutdown complete.")

    if "slack" in ctx:
        await ctx["slack"].post(
            SlackMessage(
                message="ArchGuard worker shut down.",
                fields=[
                    SlackTextField(
                        heading="Version",
                        text=__version__,
                    ),
                ],
            )
        )


class WorkerSettings:
    """Configuration for an ArchGuard arq worker.

    See `arq.worker.Worker` for details on these attributes.
    """

    functions: ClassVar[list[Callable]] = [
        ping,
        process_trigger,
        start_check_run,
        report_check_result,
    ]

    redis_settings = config.arq_redis_settings

    queue_name = config.queue_name

    max_tries = config.task_max_tries

    on_startup = startup

    on_shutdown = shutdown
