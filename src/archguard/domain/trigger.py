"""Normalization of decoded webhook events into check run triggers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .githubwebhook import (
    GitHubCheckRunEventModel,
    GitHubCheckSuiteEventModel,
    GitHubPullRequestEventModel,
    GitHubPushEventModel,
    WebhookEvent,
)

__all__ = ["NormalizedTrigger", "TriggerKind", "normalize_event"]


class TriggerKind(str, Enum):
    """The kind of webhook activity that triggered a check run transition."""

    push = "push"
    pr_opened = "pr_opened"
    pr_synchronize = "pr_synchronize"
    pr_closed = "pr_closed"
    check_rerequested = "check_rerequested"
    other = "other"

    @property
    def starts_run(self) -> bool:
        """Whether this kind of trigger requests a check run for its
        commit.
        """
        return self in (
            TriggerKind.push,
            TriggerKind.pr_opened,
            TriggerKind.pr_synchronize,
        )


_PULL_REQUEST_KINDS = {
    "opened": TriggerKind.pr_opened,
    "synchronize": TriggerKind.pr_synchronize,
    "reopened": TriggerKind.pr_synchronize,
    "closed": TriggerKind.pr_closed,
}


class NormalizedTrigger(BaseModel):
    """The canonical form of an accepted webhook delivery.

    One trigger is produced per delivery and is never modified afterwards.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(title="Repository owner login")

    repo: str = Field(title="Repository name")

    head_sha: str = Field(title="Commit SHA the trigger applies to")

    ref: str = Field(
        "",
        title="Git ref",
        description="Full ref of the branch, when GitHub reports one.",
    )

    installation_id: int = Field(title="GitHub App installation ID")

    kind: TriggerKind = Field(title="Trigger kind")

    actor: str | None = Field(None, title="Login of the delivery's sender")

    action: str | None = Field(None, title="Webhook action, if any")

    check_name: str | None = Field(
        None,
        title="Check run name",
        description=(
            "Name of the rerequested check run, for ``check_run`` "
            "deliveries. Other deliveries apply to the configured check."
        ),
    )

    pull_request_number: int | None = Field(None, title="Pull request number")

    delivery_id: str | None = Field(
        None, title="The X-GitHub-Delivery header of the delivery"
    )


def normalize_event(
    event: WebhookEvent, *, delivery_id: str | None = None
) -> NormalizedTrigger | None:
    """Reduce a decoded webhook event to a trigger.

    Parameters
    ----------
    event
        The decoded webhook event.
    delivery_id
        The delivery's ``X-GitHub-Delivery`` header, kept for diagnostics.

    Returns
    -------
    NormalizedTrigger or None
        The trigger, or `None` for the two deliveries that never drive a
        check run: branch deletions, and check suite events other than
        ``rerequested``.
    """
    common = {
        "owner": event.repository.owner.login,
        "repo": event.repository.name,
        "installation_id": event.installation.id,
        "actor": event.sender.login if event.sender else None,
        "delivery_id": delivery_id,
    }

    if isinstance(event, GitHubPushEventModel):
        if event.deleted:
            return None
        return NormalizedTrigger(
            head_sha=event.after,
            ref=event.ref,
            kind=TriggerKind.push,
            **common,
        )

    if isinstance(event, GitHubPullRequestEventModel):
        head = event.pull_request.head
        return NormalizedTrigger(
            head_sha=head.sha,
            ref=f"refs/heads/{head.ref}",
            kind=_PULL_REQUEST_KINDS.get(event.action, TriggerKind.other),
            action=event.action.value,
            pull_request_number=event.number,
            **common,
        )

    if isinstance(event, GitHubCheckRunEventModel):
        check_run = event.check_run
        if event.action == "rerequested":
            kind = TriggerKind.check_rerequested
        else:
            kind = TriggerKind.other
        head_branch = check_run.check_suite.head_branch
        return NormalizedTrigger(
            head_sha=check_run.head_sha,
            ref=f"refs/heads/{head_branch}" if head_branch else "",
            kind=kind,
            action=event.action.value,
            check_name=check_run.name,
            **common,
        )

    if isinstance(event, GitHubCheckSuiteEventModel):
        if event.action != "rerequested":
            return None
        suite = event.check_suite
        return NormalizedTrigger(
            head_sha=suite.head_sha,
            ref=f"refs/heads/{suite.head_branch}" if suite.head_branch else "",
            kind=TriggerKind.check_rerequested,
            action=event.action.value,
            **common,
        )

    raise TypeError(f"Unsupported webhook event model: {type(event)!r}")
