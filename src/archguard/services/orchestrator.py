"""The check run lifecycle orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol, TypeVar

from safir.github.models import GitHubCheckRunConclusion
from structlog.stdlib import BoundLogger

from ..domain.checkrun import (
    AnalysisRequest,
    CheckExecutionArgs,
    OrchestrationKey,
    TrackedRun,
    Transition,
    TransitionAction,
    decide_result_transition,
    decide_start_transition,
    decide_trigger_transition,
)
from ..domain.trigger import NormalizedTrigger
from ..exceptions import (
    ChecksApiError,
    PermanentApiError,
    RetryableApiError,
    TransitionConflictError,
    TransitionTimeoutError,
)
from ..storage.runtracker import RunTrackerStore
from .keylock import KeyedLocks
from .keyresolver import CheckRunKeyResolver

__all__ = [
    "CheckRunOrchestrator",
    "ChecksGateway",
    "RunMessages",
    "TransitionOutcome",
]

T = TypeVar("T")


class ChecksGateway(Protocol):
    """The Checks API capability the orchestrator needs."""

    async def create_check_run(self, args: CheckExecutionArgs) -> int: ...

    async def update_check_run(self, args: CheckExecutionArgs) -> None: ...

    async def find_check_run(
        self, args: CheckExecutionArgs
    ) -> int | None: ...


@dataclass(kw_only=True)
class RunMessages:
    """Check run output text used by orchestrator-driven transitions."""

    queued_title: str = "Architecture check queued"

    queued_summary: str = "The architecture analysis will begin shortly."

    in_progress_title: str = "Architecture check running"

    in_progress_summary: str = "The architecture analysis is running."

    cancelled_title: str = "Architecture check cancelled"

    cancelled_summary: str = (
        "The pull request was closed before the analysis completed."
    )

    details_url: str | None = None


@dataclass(frozen=True, kw_only=True)
class TransitionOutcome:
    """The result of handling one trigger or analyzer signal."""

    key: OrchestrationKey | None
    """The orchestration key, or `None` if the trigger was ignored."""

    transition: Transition
    """The transition that was decided (and applied, unless a no-op)."""

    run: TrackedRun | None
    """The tracked run after the transition."""

    @property
    def applied(self) -> bool:
        return self.transition.changes_state

    def analysis_request(self) -> AnalysisRequest | None:
        """The request for the analyzer, if this outcome queued a run."""
        if (
            not self.transition.queues_run
            or self.run is None
            or self.run.check_run_id is None
        ):
            return None
        return AnalysisRequest(
            key=self.run.key,
            installation_id=self.run.installation_id,
            check_run_id=self.run.check_run_id,
            ref=self.run.ref,
            cycle=self.run.cycle,
        )


class CheckRunOrchestrator:
    """Drives the check run of each orchestration key through its lifecycle.

    Every transition for a key runs under that key's lock, and every tracker
    write is a compare-and-set. A transition is first claimed in the tracker
    (with an in-flight lease), then applied with one Checks API call, then
    committed. Retryable API failures roll the claim back so a later
    delivery can try again; permanent failures annotate the record as
    failed.

    Parameters
    ----------
    resolver
        Maps triggers to orchestration keys.
    store
        The run tracker store.
    gateway
        The Checks API gateway.
    locks
        Per-key locks, shared by every orchestrator in the process.
    logger
        Logger bound to the current task.
    messages
        Check run output text.
    lock_timeout
        Maximum wait for a key's lock, in seconds.
    tracker_timeout
        Maximum duration of a tracker call, in seconds.
    api_timeout
        Maximum duration of a gateway call, in seconds.
    max_retries
        Attempts at a transition when compare-and-set races are lost.
    clock
        Returns the current time (for tests).
    """

    def __init__(
        self,
        *,
        resolver: CheckRunKeyResolver,
        store: RunTrackerStore,
        gateway: ChecksGateway,
        locks: KeyedLocks,
        logger: BoundLogger,
        messages: RunMessages | None = None,
        lock_timeout: float = 60.0,
        tracker_timeout: float = 5.0,
        api_timeout: float = 30.0,
        max_retries: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._gateway = gateway
        self._locks = locks
        self._logger = logger
        self._messages = messages or RunMessages()
        self._lock_timeout = lock_timeout
        self._tracker_timeout = tracker_timeout
        self._api_timeout = api_timeout
        self._max_retries = max_retries
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        # A claim outlives the API call it covers, so a crashed
        # orchestrator's claim eventually expires.
        self._lease = timedelta(seconds=api_timeout * 2)

    async def handle_trigger(
        self, trigger: NormalizedTrigger
    ) -> TransitionOutcome:
        """Apply the transition a webhook trigger calls for.

        Raises
        ------
        RetryableApiError
            Raised if GitHub failed transiently. The claim was rolled back.
        PermanentApiError
            Raised if GitHub rejected the call. The run is marked failed.
        TransitionConflictError
            Raised if the transition kept losing compare-and-set races.
        TransitionTimeoutError
            Raised if the key's lock or the tracker timed out.
        """
        key = self._resolver.resolve_key(trigger)
        if key is None:
            return TransitionOutcome(
                key=None,
                transition=Transition.noop("trigger is for another check"),
                run=None,
            )
        logger = self._bind_key(key).bind(
            trigger=trigger.kind.value,
            github_delivery_id=trigger.delivery_id,
        )

        def decide(current: TrackedRun | None) -> Transition:
            return decide_trigger_transition(
                current, trigger.kind, now=self._clock()
            )

        return await self._run_transition(
            key,
            decide,
            lambda: TrackedRun.for_trigger(key, trigger),
            logger=logger,
        )

    async def start_run(self, key: OrchestrationKey) -> TransitionOutcome:
        """Move a queued check run to in progress (analyzer start signal).

        Raises the same exceptions as `handle_trigger`.
        """
        logger = self._bind_key(key).bind(signal="start")

        def decide(current: TrackedRun | None) -> Transition:
            return decide_start_transition(current, now=self._clock())

        return await self._run_transition(key, decide, None, logger=logger)

    async def report_result(
        self,
        key: OrchestrationKey,
        conclusion: GitHubCheckRunConclusion,
        title: str,
        summary: str,
        text: str | None = None,
    ) -> TransitionOutcome:
        """Complete an open check run with the analyzer's verdict.

        Safe to call at any time: results for unknown or already completed
        runs (for example, runs cancelled by a closed pull request) are
        no-ops.

        Raises the same exceptions as `handle_trigger`.
        """
        logger = self._bind_key(key).bind(
            signal="result", conclusion=conclusion.value
        )

        def decide(current: TrackedRun | None) -> Transition:
            return decide_result_transition(
                current, conclusion, now=self._clock()
            )

        return await self._run_transition(
            key,
            decide,
            None,
            logger=logger,
            output=(title, summary, text),
        )

    def _bind_key(self, key: OrchestrationKey) -> BoundLogger:
        return self._logger.bind(
            github_owner=key.owner,
            github_repo=key.repo,
            head_sha=key.head_sha,
            check_name=key.check_name,
        )

    async def _run_transition(
        self,
        key: OrchestrationKey,
        decide: Callable[[TrackedRun | None], Transition],
        initial: Callable[[], TrackedRun] | None,
        *,
        logger: BoundLogger,
        output: tuple[str, str, str | None] | None = None,
    ) -> TransitionOutcome:
        """Decide and apply a transition under the key's lock, recomputing
        the decision whenever a compare-and-set race is lost.
        """
        try:
            async with self._locks.hold(key, timeout=self._lock_timeout):
                for attempt in range(1, self._max_retries + 1):
                    current = await self._tracker(self._store.get(key), key)
                    transition = decide(current)
                    if transition.action is TransitionAction.defer:
                        raise TransitionConflictError(
                            f"Check run for {key.tracker_key} is busy: "
                            f"{transition.reason}",
                            key,
                        )
                    if not transition.changes_state:
                        logger.info(
                            "Ignoring check run signal",
                            transition=transition.action.value,
                            reason=transition.reason,
                        )
                        return TransitionOutcome(
                            key=key, transition=transition, run=current
                        )
                    if current is None:
                        if initial is None:
                            raise RuntimeError(
                                f"{transition.action.value} needs a record"
                            )
                        current = initial()
                    try:
                        run = await self._apply(
                            current, transition, logger=logger, output=output
                        )
                    except TransitionConflictError:
                        logger.info(
                            "Lost check run transition race; retrying",
                            transition=transition.action.value,
                            attempt=attempt,
                        )
                        continue
                    return TransitionOutcome(
                        key=key, transition=transition, run=run
                    )
        except TimeoutError as e:
            raise TransitionTimeoutError(
                f"Timed out waiting for the lock of {key.tracker_key}", key
            ) from e
        raise TransitionConflictError(
            f"Gave up on {key.tracker_key} after {self._max_retries} "
            "compare-and-set conflicts",
            key,
        )

    async def _apply(
        self,
        current: TrackedRun,
        transition: Transition,
        *,
        logger: BoundLogger,
        output: tuple[str, str, str | None] | None,
    ) -> TrackedRun:
        """Claim, execute and commit a transition."""
        key = current.key
        if (
            current.check_run_id is None
            and transition.action is TransitionAction.cancel
        ):
            return await self._commit_tracker_only(
                current, transition, logger=logger
            )
        claimed = current.claim(now=self._clock(), lease=self._lease)
        if not await self._compare_and_set(current.version, claimed):
            raise TransitionConflictError(
                f"Tracker record for {key.tracker_key} changed", key
            )
        logger.debug(
            "Claimed check run transition",
            transition=transition.action.value,
            version=claimed.version,
        )

        args = self._build_args(current.apply(transition), transition, output)
        # A record that already exists without a check run has seen an
        # earlier creation attempt, which GitHub may have carried out.
        adopt = (
            transition.action is TransitionAction.create
            and current.version > 0
        )
        try:
            check_run_id = await self._call_gateway(
                args, adopt=adopt, logger=logger
            )
        except ChecksApiError as e:
            e.key = key
            await self._release_failed_claim(claimed, e, logger)
            raise
        except Exception as e:
            error = PermanentApiError(
                f"Unexpected error applying check run transition: {e!r}",
                key=key,
            )
            await self._release_failed_claim(claimed, error, logger)
            raise error from e
        except BaseException:
            # Cancelled mid-call. Whether GitHub applied the call is unknown,
            # so the record is flagged for retry.
            await asyncio.shield(
                self._release_failed_claim(claimed, None, logger)
            )
            raise

        committed = await self._commit(
            claimed, transition, check_run_id, logger=logger
        )
        logger.info(
            "Applied check run transition",
            transition=transition.action.value,
            reason=transition.reason,
            state=committed.state.value,
            check_run_id=check_run_id,
        )
        return committed

    async def _commit_tracker_only(
        self,
        current: TrackedRun,
        transition: Transition,
        *,
        logger: BoundLogger,
    ) -> TrackedRun:
        """Apply a transition that has no check run to update on GitHub."""
        committed = current.commit(
            transition, now=self._clock(), check_run_id=None
        )
        if not await self._compare_and_set(current.version, committed):
            raise TransitionConflictError(
                f"Tracker record for {current.key.tracker_key} changed",
                current.key,
            )
        logger.info(
            "Applied check run transition without a check run",
            transition=transition.action.value,
            reason=transition.reason,
            state=committed.state.value,
        )
        return committed

    async def _commit(
        self,
        claimed: TrackedRun,
        transition: Transition,
        check_run_id: int | None,
        *,
        logger: BoundLogger,
    ) -> TrackedRun:
        """Commit a transition whose API call succeeded.

        A commit that times out is checked against the stored record and
        retried while the claim is still in place, so that the ID of a newly
        created check run is never lost.

        Raises
        ------
        TransitionConflictError
            Raised if another orchestrator took the key over after the
            claim's lease expired. The stored record is left alone.
        TransitionTimeoutError
            Raised if the tracker kept timing out. The claim expires and a
            later creation adopts the check run from GitHub.
        """
        key = claimed.key
        committed = claimed.commit(
            transition, now=self._clock(), check_run_id=check_run_id
        )
        for attempt in range(1, self._max_retries + 1):
            try:
                if await self._compare_and_set(claimed.version, committed):
                    return committed
            except TransitionTimeoutError:
                if attempt == self._max_retries:
                    raise
                logger.warning(
                    "Timed out committing check run transition; retrying",
                    transition=transition.action.value,
                    check_run_id=check_run_id,
                    attempt=attempt,
                )
            stored = await self._tracker(self._store.get(key), key)
            if stored is not None and stored.version == committed.version:
                if stored.lease_expires_at is None and (
                    stored.check_run_id == check_run_id
                ):
                    # The timed out write went through.
                    return stored
            elif stored is not None and stored.version == claimed.version:
                continue
            logger.warning(
                "Check run record changed while a call was in flight",
                transition=transition.action.value,
                check_run_id=check_run_id,
            )
            raise TransitionConflictError(
                f"Tracker record for {key.tracker_key} was taken over", key
            )
        raise TransitionTimeoutError(
            f"Could not commit the transition of {key.tracker_key}", key
        )

    def _build_args(
        self,
        claimed: TrackedRun,
        transition: Transition,
        output: tuple[str, str, str | None] | None,
    ) -> CheckExecutionArgs:
        messages = self._messages
        if output is not None:
            title, summary, text = output
        elif transition.action is TransitionAction.start:
            title, summary, text = (
                messages.in_progress_title,
                messages.in_progress_summary,
                None,
            )
        elif transition.action is TransitionAction.cancel:
            title, summary, text = (
                messages.cancelled_title,
                messages.cancelled_summary,
                None,
            )
        else:
            title, summary, text = (
                messages.queued_title,
                messages.queued_summary,
                None,
            )
        return CheckExecutionArgs.for_run(
            claimed,
            title=title,
            summary=summary,
            text=text,
            details_url=messages.details_url,
            reuse_check_run=transition.action is not TransitionAction.create,
        )

    async def _call_gateway(
        self,
        args: CheckExecutionArgs,
        *,
        adopt: bool,
        logger: BoundLogger,
    ) -> int:
        """Run the gateway call for ``args`` and return the check run ID.

        With ``adopt``, a creation first looks for a check run that an
        earlier attempt created, and updates that one instead.
        """
        check_run_id = args.existing_check_run_id
        try:
            if check_run_id is None and adopt:
                check_run_id = await asyncio.wait_for(
                    self._gateway.find_check_run(args), self._api_timeout
                )
                if check_run_id is not None:
                    logger.info(
                        "Adopting check run of an earlier creation attempt",
                        check_run_id=check_run_id,
                    )
                    args = args.model_copy(
                        update={"existing_check_run_id": check_run_id}
                    )
            if check_run_id is None:
                return await asyncio.wait_for(
                    self._gateway.create_check_run(args), self._api_timeout
                )
            await asyncio.wait_for(
                self._gateway.update_check_run(args), self._api_timeout
            )
        except TimeoutError as e:
            raise RetryableApiError(
                f"Checks API call timed out after {self._api_timeout}s",
                operation="update" if args.is_update else "create",
            ) from e
        return check_run_id

    async def _release_failed_claim(
        self,
        claimed: TrackedRun,
        error: ChecksApiError | None,
        logger: BoundLogger,
    ) -> None:
        """Give up a claim whose API call failed or was cancelled.

        The lifecycle fields were never changed by the claim, so the record
        keeps the run's prior state. After a retryable failure (or with no
        ``error``, a cancelled call) it is flagged for retry; after a
        permanent failure it is annotated as failed.
        """
        retryable = error is None or error.retryable
        released = claimed.release(
            now=self._clock(), failure=None if retryable else str(error)
        )
        try:
            written = await self._compare_and_set(claimed.version, released)
        except Exception:
            # The claim's lease expires on its own.
            logger.exception("Could not release check run claim")
            return
        if error is None:
            logger.warning(
                "Check run API call was cancelled", released=written
            )
            return
        log = logger.warning if error.retryable else logger.error
        log(
            "Check run API call failed",
            retryable=error.retryable,
            status_code=error.status_code,
            error=str(error),
            released=written,
        )

    async def _compare_and_set(
        self, expected_version: int, new_value: TrackedRun
    ) -> bool:
        return await self._tracker(
            self._store.compare_and_set(
                new_value.key, expected_version, new_value
            ),
            new_value.key,
        )

    async def _tracker(
        self, call: Awaitable[T], key: OrchestrationKey
    ) -> T:
        try:
            return await asyncio.wait_for(call, self._tracker_timeout)
        except TimeoutError as e:
            raise TransitionTimeoutError(
                f"Run tracker timed out for {key.tracker_key}", key
            ) from e
