"""Domain models related to payloads from GitHub webhook events, and the
decoder that turns a raw delivery into one of them.

The event models extend the ones in `safir.github.webhooks` with the few
fields ArchGuard needs that Safir does not model: the delivery's sender,
branch deletion on pushes, the head of a pull request, and the head branch
of a check run's suite. Fields that are not modelled are ignored, so that
GitHub can grow its schemas without breaking the decoder.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import safir.github.models
import safir.github.webhooks
from pydantic import BaseModel, Field, ValidationError
from safir.github.models import GitHubCheckRunPrInfoModel  # noqa: F401

from ..exceptions import MalformedPayloadError, UnsupportedEventError

__all__ = [
    "GitHubCheckRunEventModel",
    "GitHubCheckRunModel",
    "GitHubCheckRunSuiteModel",
    "GitHubCheckSuiteEventModel",
    "GitHubCheckSuiteModel",
    "GitHubPullRequestEventModel",
    "GitHubPullRequestHeadModel",
    "GitHubPullRequestModel",
    "GitHubPushEventModel",
    "SUPPORTED_EVENTS",
    "WebhookEvent",
    "decode_webhook_event",
]


class GitHubPushEventModel(safir.github.webhooks.GitHubPushEventModel):
    """Adding ``sender`` and ``deleted`` to the push event model."""

    sender: safir.github.models.GitHubRepoOwnerModel | None = Field(
        None, description="The account that triggered the delivery."
    )

    deleted: bool = Field(False, description="Whether the push deleted ref.")


class GitHubPullRequestHeadModel(BaseModel):
    """A Pydantic model for the ``head`` of a pull request."""

    ref: str = Field(description="Branch name")

    sha: str = Field(description="Commit SHA of the branch tip")


class GitHubPullRequestModel(safir.github.models.GitHubPullRequestModel):
    """Adding ``head`` to the pull request model."""

    head: GitHubPullRequestHeadModel = Field(description="Head branch")


class GitHubPullRequestEventModel(
    safir.github.webhooks.GitHubPullRequestEventModel
):
    """Overriding ``pull_request`` to add the head branch, and adding
    ``sender``.
    """

    pull_request: GitHubPullRequestModel = Field(
        description="Information about the pull request."
    )

    sender: safir.github.models.GitHubRepoOwnerModel | None = Field(
        None, description="The account that triggered the delivery."
    )


class GitHubCheckRunSuiteModel(safir.github.models.GitHubCheckSuiteId):
    """Adding ``head_branch`` to the check suite summary of a check run."""

    head_branch: str | None = Field(
        None, description="Name of the branch the changes are on."
    )


class GitHubCheckRunModel(safir.github.models.GitHubCheckRunModel):
    """Overriding ``check_suite`` to keep its head branch."""

    check_suite: GitHubCheckRunSuiteModel = Field(
        description="Brief information about the check suite."
    )


class GitHubCheckRunEventModel(safir.github.webhooks.GitHubCheckRunEventModel):
    """Overriding ``check_run`` and adding ``sender``."""

    check_run: GitHubCheckRunModel = Field(
        description="Information about the check run."
    )

    sender: safir.github.models.GitHubRepoOwnerModel | None = Field(
        None, description="The account that triggered the delivery."
    )


class GitHubCheckSuiteModel(safir.github.models.GitHubCheckSuiteModel):
    """Allowing a check suite without a head branch (such as for a tag)."""

    head_branch: str | None = Field(  # type: ignore[assignment]
        None, description="Name of the branch the changes are on."
    )


class GitHubCheckSuiteEventModel(
    safir.github.webhooks.GitHubCheckSuiteEventModel
):
    """Overriding ``check_suite`` and adding ``sender``."""

    check_suite: GitHubCheckSuiteModel = Field(
        description="Information about the check suite."
    )

    sender: safir.github.models.GitHubRepoOwnerModel | None = Field(
        None, description="The account that triggered the delivery."
    )

WebhookEvent = (
    GitHubPushEventModel
    | GitHubPullRequestEventModel
    | GitHubCheckRunEventModel
    | GitHubCheckSuiteEventModel
)
"""A decoded webhook delivery."""

SUPPORTED_EVENTS: Mapping[str, type[BaseModel]] = {
    "push": GitHubPushEventModel,
    "pull_request": GitHubPullRequestEventModel,
    "check_run": GitHubCheckRunEventModel,
    "check_suite": GitHubCheckSuiteEventModel,
}
"""Payload models, keyed by the ``X-GitHub-Event`` header value."""


def decode_webhook_event(
    event_type: str, body: bytes | str | Mapping[str, Any]
) -> WebhookEvent:
    """Decode a webhook delivery into a typed event.

    Parameters
    ----------
    event_type
        Value of the ``X-GitHub-Event`` header.
    body
        The raw request body, or an already-parsed JSON object.

    Returns
    -------
    WebhookEvent
        The event model matching ``event_type``.

    Raises
    ------
    UnsupportedEventError
        Raised if ``event_type`` is not a supported GitHub event.
    MalformedPayloadError
        Raised if the body is not a JSON object or does not validate
        against the event model (for example, a missing repository,
        installation, commit SHA or action, or an unknown action).
    """
    try:
        model = SUPPORTED_EVENTS[event_type]
    except KeyError:
        raise UnsupportedEventError.for_event(event_type) from None

    if isinstance(body, bytes | str):
        try:
            data = json.loads(body)
        except ValueError as e:
            raise MalformedPayloadError.for_event(
                event_type, f"body is not valid JSON ({e})"
            ) from e
    else:
        data = body
    if not isinstance(data, Mapping):
        raise MalformedPayloadError.for_event(
            event_type, "body is not a JSON object"
        )

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        missing = ", ".join(
            ".".join(str(part) for part in error["loc"])
            for error in e.errors()
        )
        raise MalformedPayloadError.for_event(
            event_type, f"invalid or missing fields: {missing}"
        ) from e
