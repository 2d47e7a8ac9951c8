"""Resolution of triggers to orchestration keys."""

from __future__ import annotations

from structlog.stdlib import BoundLogger

from ..domain.checkrun import OrchestrationKey, TrackedRun
from ..domain.trigger import NormalizedTrigger
from ..storage.runtracker import RunTrackerStore

__all__ = ["CheckRunKeyResolver"]


class CheckRunKeyResolver:
    """Maps triggers to the orchestration key of the configured check, and
    looks up the tracked run for a key.

    Parameters
    ----------
    check_name
        The check run name this deployment registers.
    store
        The run tracker store.
    logger
        Logger bound to the current request or task.
    """

    def __init__(
        self, *, check_name: str, store: RunTrackerStore, logger: BoundLogger
    ) -> None:
        self._check_name = check_name
        self._store = store
        self._logger = logger

    @property
    def check_name(self) -> str:
        return self._check_name

    def key_for(
        self, owner: str, repo: str, head_sha: str
    ) -> OrchestrationKey:
        """Create the key of the configured check for a commit."""
        return OrchestrationKey(
            owner=owner,
            repo=repo,
            head_sha=head_sha,
            check_name=self._check_name,
        )

    def resolve_key(
        self, trigger: NormalizedTrigger
    ) -> OrchestrationKey | None:
        """Resolve the orchestration key of a trigger.

        Returns
        -------
        OrchestrationKey or None
            The key, or `None` if the trigger names a different check run
            (such as a rerequest of another app's or another rule's check).
        """
        if (
            trigger.check_name is not None
            and trigger.check_name != self._check_name
        ):
            self._logger.info(
                "Ignoring trigger for another check run",
                check_name=trigger.check_name,
                configured_check_name=self._check_name,
            )
            return None
        return self.key_for(trigger.owner, trigger.repo, trigger.head_sha)

    async def lookup(self, key: OrchestrationKey) -> TrackedRun | None:
        """Get the tracked run of a key, if there is one."""
        return await self._store.get(key)
