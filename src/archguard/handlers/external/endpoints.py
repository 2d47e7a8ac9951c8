"""Handlers for the app's external root, ``/archguard/``."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from gidgethub import ValidationFailure
from gidgethub.sansio import validate_event
from pydantic import AnyHttpUrl
from safir.dependencies.logger import logger_dependency
from safir.metadata import get_metadata
from structlog.stdlib import BoundLogger

from ...config import config
from ...dependencies.requestcontext import RequestContext, context_dependency
from ...domain.githubwebhook import decode_webhook_event
from ...domain.trigger import normalize_event
from ...exceptions import DecodeError
from .models import Index, WebhookReceipt

__all__ = ["external_router", "get_index", "post_github_webhook"]

external_router = APIRouter()
"""FastAPI router for all external handlers."""


@external_router.get(
    "/",
    response_model=Index,
    response_model_exclude_none=True,
    summary="Application metadata",
)
async def get_index(
    request: Request,
    logger: Annotated[BoundLogger, Depends(logger_dependency)],
) -> Index:
    """GET metadata about the application."""
    logger.info("Request for application metadata")

    metadata = get_metadata(
        package_name="archguard",
        application_name=config.name,
    )
    # Construct these URLs; this doesn't use request.url_for because the
    # endpoints are in other FastAPI "apps".
    v1_api_url = f"{request.url}v1"
    doc_url = request.url.replace(path=f"{config.path_prefix}/redoc")
    return Index(
        metadata=metadata,
        v1_api_base=AnyHttpUrl(v1_api_url),
        api_docs=AnyHttpUrl(str(doc_url)),
    )


@external_router.post(
    "/github/webhook",
    summary="GitHub App webhook",
    description=(
        "This endpoint receives webhook events from GitHub. Accepted "
        "deliveries are queued for the check run orchestrator."
    ),
    response_model=WebhookReceipt,
    status_code=status.HTTP_200_OK,
    responses={
        202: {"description": "Delivery queued", "model": WebhookReceipt},
        401: {"description": "Invalid webhook signature"},
        501: {"description": "GitHub App integration is not configured"},
    },
)
async def post_github_webhook(
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> WebhookReceipt | Response:
    """Process GitHub webhook events."""
    if not config.enable_github_app:
        return Response(
            "GitHub App is not enabled",
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
        )

    body = await context.request.body()

    if config.github_webhook_secret is None:
        return Response(
            "The webhook secret is not configured",
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
        )

    headers = context.request.headers
    event_type = headers.get("x-github-event", "")
    delivery_id = headers.get("x-github-delivery")

    # Bind the X-GitHub-Delivery header to the logger context; this identifies
    # the webhook request in GitHub's API and UI for diagnostics
    context.rebind_logger(
        github_delivery_id=delivery_id, github_event=event_type
    )
    logger = context.logger

    signature = headers.get("x-hub-signature-256") or headers.get(
        "x-hub-signature"
    )
    if signature is None:
        logger.warning("GitHub webhook is missing its signature")
        return Response(
            "Missing webhook signature",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    try:
        validate_event(
            body,
            signature=signature,
            secret=config.github_webhook_secret.get_secret_value(),
        )
    except ValidationFailure as e:
        logger.warning("GitHub webhook signature is invalid", error=str(e))
        return Response(
            "Invalid webhook signature",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    if event_type == "ping":
        logger.info("Received GitHub ping")
        return _receipt(delivery_id, event_type, "pong")

    try:
        event = decode_webhook_event(event_type, body)
    except DecodeError as e:
        logger.info("Ignoring undecodable GitHub webhook", error=str(e))
        return _receipt(delivery_id, event_type, str(e))

    trigger = normalize_event(event, delivery_id=delivery_id)
    if trigger is None:
        logger.debug("Ignoring GitHub webhook that cannot drive a check run")
        return _receipt(delivery_id, event_type, "Event ignored")

    context.rebind_logger(
        github_owner=trigger.owner,
        github_repo=trigger.repo,
        head_sha=trigger.head_sha,
    )
    logger = context.logger
    if not config.is_accepted_owner(trigger.owner):
        logger.debug("Ignoring GitHub webhook for unaccepted owner")
        return _receipt(
            delivery_id,
            event_type,
            f"Repositories of {trigger.owner} are not checked",
        )

    job = await context.arq_queue.enqueue(
        "process_trigger", trigger=trigger.model_dump(mode="json")
    )
    logger.info(
        "Queued check run trigger",
        trigger=trigger.kind.value,
        job_id=job.id,
    )
    context.response.status_code = status.HTTP_202_ACCEPTED
    return WebhookReceipt(
        delivery_id=delivery_id,
        event=event_type,
        accepted=True,
        detail=f"Queued {trigger.kind.value} trigger",
        job_id=job.id,
    )


def _receipt(
    delivery_id: str | None, event_type: str, detail: str
) -> WebhookReceipt:
    return WebhookReceipt(
        delivery_id=delivery_id,
        event=event_type,
        accepted=False,
        detail=detail,
    )
