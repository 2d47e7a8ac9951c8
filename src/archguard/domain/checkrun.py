"""Domain models for the lifecycle of a tracked GitHub check run, and the
transition rules that drive it.

The decision functions in this module are pure: they look at the tracked
record (if any) and the incoming signal and say what should happen. Applying
the decision (tracker writes and GitHub API calls) is the job of
`archguard.services.orchestrator.CheckRunOrchestrator`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator
from safir.github.models import (
    GitHubCheckRunConclusion,
    GitHubCheckRunStatus,
)

from .trigger import NormalizedTrigger, TriggerKind

__all__ = [
    "AnalysisRequest",
    "CheckExecutionArgs",
    "OrchestrationKey",
    "RunState",
    "TrackedRun",
    "Transition",
    "TransitionAction",
    "decide_result_transition",
    "decide_start_transition",
    "decide_trigger_transition",
]


class RunState(str, Enum):
    """Lifecycle state of a tracked check run."""

    queued = "queued"
    in_progress = "in_progress"
    completed = "completed"

    @property
    def github_status(self) -> GitHubCheckRunStatus:
        """The equivalent GitHub check run status."""
        return GitHubCheckRunStatus(self.value)


class OrchestrationKey(BaseModel):
    """Identifies one logical check run lifecycle: a check name on a commit
    of a repository.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(title="Repository owner login")

    repo: str = Field(title="Repository name")

    head_sha: str = Field(title="Commit SHA (lower case)")

    check_name: str = Field(title="Check run name")

    @field_validator("head_sha")
    @classmethod
    def normalize_sha(cls, v: str) -> str:
        # SHAs are hex; GitHub treats them case-insensitively.
        return v.strip().lower()

    @property
    def tracker_key(self) -> str:
        """The key of this run in the tracker store."""
        return f"{self.owner}/{self.repo}/{self.head_sha}/{self.check_name}"

    @property
    def short_sha(self) -> str:
        return self.head_sha[:7]


class TransitionAction(str, Enum):
    """What the state machine decided to do."""

    noop = "noop"
    """Nothing to do; the signal is a duplicate or does not apply."""

    defer = "defer"
    """Another orchestrator has a call in flight; try again later."""

    create = "create"
    """Create a new check run in the queued state."""

    reset = "reset"
    """Reset a completed check run to queued (rerequest), reusing its ID."""

    start = "start"
    """Move a queued check run to in progress."""

    cancel = "cancel"
    """Complete an open check run as cancelled."""

    complete = "complete"
    """Complete an open check run with the analyzer's conclusion."""


class TrackedRun(BaseModel):
    """The tracker's record of a check run lifecycle.

    Records are created on the first trigger for a key and updated on every
    accepted transition. They are never deleted by the orchestrator.
    """

    key: OrchestrationKey = Field(title="Orchestration key")

    installation_id: int = Field(title="GitHub App installation ID")

    ref: str = Field("", title="Git ref of the triggering delivery")

    check_run_id: int | None = Field(
        None,
        title="GitHub check run ID",
        description="`None` until GitHub confirms creation of the check run.",
    )

    state: RunState = Field(RunState.queued, title="Lifecycle state")

    conclusion: GitHubCheckRunConclusion | None = Field(
        None, title="Conclusion, once completed"
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=UTC),
        title="Time of the last accepted transition",
    )

    version: int = Field(
        0,
        title="Record version",
        description=(
            "Compare-and-set token, incremented on every write. Version 0 "
            "means the record does not exist yet."
        ),
    )

    cycle: int = Field(
        1,
        title="Run cycle",
        description="Incremented whenever a rerequest restarts the run.",
    )

    pending_retry: bool = Field(
        False,
        title="Pending retry",
        description=(
            "The last GitHub API call for this record failed with a "
            "retryable error and was rolled back."
        ),
    )

    lease_expires_at: datetime | None = Field(
        None,
        title="In-flight lease expiry",
        description=(
            "Set while a GitHub API call for this record is in flight. "
            "Other deciders leave the key alone until the lease expires. An "
            "expired lease is a call that was never committed; the record "
            "still describes the run as it was before that call."
        ),
    )

    failed: bool = Field(
        False,
        title="Failed",
        description=(
            "A GitHub API call for this record failed permanently. Distinct "
            "from the completed state."
        ),
    )

    failure_message: str | None = Field(None, title="Last permanent failure")

    @classmethod
    def for_trigger(
        cls, key: OrchestrationKey, trigger: NormalizedTrigger
    ) -> Self:
        """Create the initial, not yet stored, record for a key."""
        return cls(
            key=key,
            installation_id=trigger.installation_id,
            ref=trigger.ref,
        )

    @property
    def has_check_run(self) -> bool:
        """Whether GitHub has confirmed a check run for this record."""
        return self.check_run_id is not None

    def is_in_flight(self, now: datetime) -> bool:
        """Whether another orchestrator holds a live lease on the record."""
        return (
            self.lease_expires_at is not None
            and now < self.lease_expires_at
        )

    def next_version(self, now: datetime, **changes: object) -> Self:
        """Copy the record with ``changes`` applied and the version bumped."""
        changes.setdefault("updated_at", now)
        return self.model_copy(update={"version": self.version + 1, **changes})

    def claim(self, *, now: datetime, lease: timedelta) -> Self:
        """Create the record written before the API call of a transition.

        Only the lease is taken. The lifecycle fields keep their values
        until the call is committed, so a claim that is never committed
        (a crashed or cancelled call) leaves the run in its prior state once
        the lease expires.
        """
        return self.next_version(now, lease_expires_at=now + lease)

    def apply(self, transition: Transition) -> Self:
        """Copy the record with the lifecycle changes of ``transition``.

        The copy keeps the version; it describes the run GitHub is asked to
        show, not a tracker write.
        """
        changes: dict[str, object] = {"conclusion": transition.conclusion}
        if transition.state is not None:
            changes["state"] = transition.state
        if transition.action is TransitionAction.reset:
            changes["cycle"] = self.cycle + 1
        return self.model_copy(update=changes)

    def commit(
        self,
        transition: Transition,
        *,
        now: datetime,
        check_run_id: int | None,
    ) -> Self:
        """Create the record that confirms ``transition``."""
        return self.apply(transition).next_version(
            now,
            check_run_id=check_run_id,
            lease_expires_at=None,
            pending_retry=False,
            failed=False,
            failure_message=None,
        )

    def release(self, *, now: datetime, failure: str | None = None) -> Self:
        """Create the record that gives up a claim whose call failed.

        Parameters
        ----------
        now
            The current time.
        failure
            The error of a permanent failure. `None` flags the record for
            retry instead.
        """
        if failure is None:
            return self.next_version(
                now, lease_expires_at=None, pending_retry=True
            )
        return self.next_version(
            now,
            lease_expires_at=None,
            pending_retry=False,
            failed=True,
            failure_message=failure,
        )


class CheckExecutionArgs(BaseModel):
    """A request to create or update the GitHub check run of a key.

    The lifecycle state machine builds these; the Checks API gateway consumes
    each one exactly once. A set ``existing_check_run_id`` means "update",
    otherwise the gateway creates a new check run.
    """

    repo_owner: str

    repo_name: str

    commit_sha: str

    check_name: str

    installation_id: int

    existing_check_run_id: int | None = None

    initial_title: str

    initial_summary: str

    status: GitHubCheckRunStatus = GitHubCheckRunStatus.queued

    conclusion: GitHubCheckRunConclusion | None = None

    text: str | None = None

    details_url: str | None = None

    @property
    def is_update(self) -> bool:
        return self.existing_check_run_id is not None

    @classmethod
    def for_run(
        cls,
        run: TrackedRun,
        *,
        title: str,
        summary: str,
        text: str | None = None,
        details_url: str | None = None,
        reuse_check_run: bool = True,
    ) -> Self:
        """Build the API request that brings GitHub in line with ``run``."""
        return cls(
            repo_owner=run.key.owner,
            repo_name=run.key.repo,
            commit_sha=run.key.head_sha,
            check_name=run.key.check_name,
            installation_id=run.installation_id,
            existing_check_run_id=(
                run.check_run_id if reuse_check_run else None
            ),
            initial_title=title,
            initial_summary=summary,
            status=run.state.github_status,
            conclusion=(
                run.conclusion if run.state is RunState.completed else None
            ),
            text=text,
            details_url=details_url,
        )


class AnalysisRequest(BaseModel):
    """The message handed to the external analyzer when a check run is
    queued.
    """

    key: OrchestrationKey

    installation_id: int

    check_run_id: int

    ref: str

    cycle: int


@dataclass(frozen=True, kw_only=True)
class Transition:
    """A state machine decision."""

    action: TransitionAction

    reason: str

    state: RunState | None = None
    """The state the run moves to, if any."""

    conclusion: GitHubCheckRunConclusion | None = None

    @property
    def changes_state(self) -> bool:
        return self.action not in (
            TransitionAction.noop,
            TransitionAction.defer,
        )

    @property
    def queues_run(self) -> bool:
        """Whether applying the transition starts a new run cycle."""
        return self.action in (TransitionAction.create, TransitionAction.reset)

    @classmethod
    def noop(cls, reason: str) -> Self:
        return cls(action=TransitionAction.noop, reason=reason)

    @classmethod
    def defer(cls, reason: str) -> Self:
        return cls(action=TransitionAction.defer, reason=reason)


def decide_trigger_transition(
    current: TrackedRun | None,
    kind: TriggerKind,
    *,
    now: datetime,
) -> Transition:
    """Decide the transition for a webhook trigger.

    Parameters
    ----------
    current
        The tracked run of the trigger's key, or `None` if the key is new.
    kind
        The trigger kind.
    now
        The current time, used to evaluate in-flight leases.
    """
    requests_run = kind.starts_run or kind is TriggerKind.check_rerequested

    if current is None:
        if requests_run:
            return Transition(
                action=TransitionAction.create,
                reason="first trigger for key",
                state=RunState.queued,
            )
        return Transition.noop("no tracked run for key")

    if current.is_in_flight(now):
        if kind is TriggerKind.pr_closed:
            # The cancellation applies on top of the call in flight.
            return Transition.defer("check run call already in flight")
        # Coalesce with the call another delivery is making right now.
        return Transition.noop("check run call already in flight")

    if not current.has_check_run:
        if kind is TriggerKind.pr_closed:
            if current.state is RunState.completed:
                return Transition.noop("run already cancelled")
            # Recorded in the tracker only, so that retries of the creation
            # stop here.
            return Transition(
                action=TransitionAction.cancel,
                reason="pull request closed before check run was created",
                state=RunState.completed,
                conclusion=GitHubCheckRunConclusion.cancelled,
            )
        if (
            current.state is RunState.completed
            and kind is not TriggerKind.check_rerequested
        ):
            return Transition.noop(
                "run cancelled before check run was created; rerequest to "
                "rerun"
            )
        if current.failed and kind is not TriggerKind.check_rerequested:
            return Transition.noop(
                "check run creation failed permanently; awaiting rerequest"
            )
        if requests_run:
            return Transition(
                action=TransitionAction.create,
                reason="retrying unconfirmed check run creation",
                state=RunState.queued,
            )
        return Transition.noop("no check run exists for key")

    if kind is TriggerKind.pr_closed:
        if current.state is RunState.completed:
            return Transition.noop("check run already completed")
        return Transition(
            action=TransitionAction.cancel,
            reason="pull request closed",
            state=RunState.completed,
            conclusion=GitHubCheckRunConclusion.cancelled,
        )

    if kind is TriggerKind.check_rerequested:
        if current.state is RunState.completed:
            return Transition(
                action=TransitionAction.reset,
                reason="check rerequested",
                state=RunState.queued,
            )
        return Transition.noop("rerequested check run is still open")

    if kind.starts_run:
        if current.state is RunState.completed:
            return Transition.noop(
                "check run already completed for commit; rerequest to rerun"
            )
        return Transition.noop("check run already open for commit")

    return Transition.noop(f"{kind.value} triggers do not change check runs")


def decide_start_transition(
    current: TrackedRun | None, *, now: datetime
) -> Transition:
    """Decide the transition for the analyzer's start signal."""
    if current is None:
        return Transition.noop("no tracked run for key")
    if current.is_in_flight(now):
        return Transition.defer("check run call already in flight")
    if not current.has_check_run:
        return Transition.noop("no check run exists for key")
    if current.state is not RunState.queued:
        return Transition.noop(f"check run is {current.state.value}")
    return Transition(
        action=TransitionAction.start,
        reason="analysis started",
        state=RunState.in_progress,
    )


def decide_result_transition(
    current: TrackedRun | None,
    conclusion: GitHubCheckRunConclusion,
    *,
    now: datetime,
) -> Transition:
    """Decide the transition for the analyzer's completion signal.

    Late results, including those for runs cancelled by a closed pull
    request, are no-ops.
    """
    if current is None:
        return Transition.noop("no tracked run for key")
    if current.is_in_flight(now):
        return Transition.defer("check run call already in flight")
    if not current.has_check_run:
        return Transition.noop("no check run exists for key")
    if current.state is RunState.completed:
        return Transition.noop("check run already completed")
    return Transition(
        action=TransitionAction.complete,
        reason="analysis finished",
        state=RunState.completed,
        conclusion=conclusion,
    )
