"""Gateway to the GitHub Checks API."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import gidgethub
import httpx
from gidgethub.abc import GitHubAPI
from safir.github import GitHubAppClientFactory
from safir.github.models import GitHubCheckRunStatus
from structlog.stdlib import BoundLogger

from ..domain.checkrun import CheckExecutionArgs
from ..exceptions import ChecksApiError, PermanentApiError, RetryableApiError

__all__ = ["GitHubChecksGateway", "classify_github_error"]


def classify_github_error(
    error: Exception, *, operation: str | None = None
) -> ChecksApiError:
    """Classify an exception raised by a GitHub API call.

    Server errors, timeouts, transport failures and rate limiting are
    retryable. Other client errors (such as a 404 for a missing
    installation or a 422 for an invalid payload) are permanent.
    """
    if isinstance(error, ChecksApiError):
        return error
    if isinstance(error, gidgethub.RateLimitExceeded):
        return RetryableApiError(
            f"GitHub rate limit exceeded: {error}",
            status_code=error.status_code,
            operation=operation,
        )
    if isinstance(error, gidgethub.GitHubBroken):
        return RetryableApiError(
            f"GitHub server error: {error}",
            status_code=error.status_code,
            operation=operation,
        )
    if isinstance(error, gidgethub.HTTPException):
        status_code = int(error.status_code)
        message = str(error) or error.status_code.phrase
        # 429 and "secondary" rate limits are reported as plain 403s.
        if status_code == 429 or (
            status_code == 403 and "rate limit" in message.lower()
        ):
            return RetryableApiError(
                f"GitHub rate limit exceeded: {message}",
                status_code=status_code,
                operation=operation,
            )
        return PermanentApiError(
            f"GitHub rejected the request ({status_code}): {message}",
            status_code=status_code,
            operation=operation,
        )
    if isinstance(error, TimeoutError | httpx.TransportError):
        return RetryableApiError(
            f"GitHub request failed: {error!r}", operation=operation
        )
    return PermanentApiError(
        f"Unexpected error calling GitHub: {error!r}", operation=operation
    )


class GitHubChecksGateway:
    """Creates and updates GitHub check runs as a GitHub App installation.

    The gateway performs exactly the call it is given. Deciding whether a
    call is needed, and avoiding duplicates, is the orchestrator's job.
    Retryable failures are retried with bounded exponential backoff before
    being raised as `~archguard.exceptions.RetryableApiError`.

    Installation clients are cached for ``client_lifetime``, which must stay
    below the one hour lifetime of an installation token. Use `bind` to
    share the cache between tasks that log to different loggers.

    Parameters
    ----------
    client_factory
        Factory for installation-authenticated GitHub clients.
    logger
        Logger bound to the current task.
    max_attempts
        Attempts per call, including the first.
    backoff_base
        Delay before the first retry, in seconds. Doubles on every retry.
    backoff_cap
        Maximum delay between attempts, in seconds.
    client_lifetime
        How long an installation client is reused.
    """

    def __init__(
        self,
        *,
        client_factory: GitHubAppClientFactory,
        logger: BoundLogger,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
        client_lifetime: timedelta = timedelta(minutes=50),
    ) -> None:
        self._client_factory = client_factory
        self._logger = logger
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._client_lifetime = client_lifetime
        self._clients: dict[int, tuple[GitHubAPI, datetime]] = {}

    def bind(self, logger: BoundLogger) -> GitHubChecksGateway:
        """Return a gateway that logs to ``logger`` and shares this
        gateway's installation clients.
        """
        gateway = copy.copy(self)
        gateway._logger = logger
        return gateway

    async def create_check_run(self, args: CheckExecutionArgs) -> int:
        """Create a check run.

        Returns
        -------
        int
            The ID of the new check run.
        """
        data = self._build_payload(args)
        data["head_sha"] = args.commit_sha

        async def call(client: GitHubAPI) -> Any:
            return await client.post(
                "repos/{owner}/{repo}/check-runs",
                url_vars={"owner": args.repo_owner, "repo": args.repo_name},
                data=data,
            )

        response = await self._call("create", args, call)
        check_run_id = int(response["id"])
        self._logger.info(
            "Created check run",
            check_name=args.check_name,
            check_run_id=check_run_id,
            head_sha=args.commit_sha,
        )
        return check_run_id

    async def update_check_run(self, args: CheckExecutionArgs) -> None:
        """Update an existing check run (``args.existing_check_run_id``)."""
        if args.existing_check_run_id is None:
            raise ValueError("update_check_run requires existing_check_run_id")
        check_run_id = args.existing_check_run_id
        data = self._build_payload(args)

        async def call(client: GitHubAPI) -> Any:
            return await client.patch(
                "repos/{owner}/{repo}/check-runs/{check_run_id}",
                url_vars={
                    "owner": args.repo_owner,
                    "repo": args.repo_name,
                    "check_run_id": str(check_run_id),
                },
                data=data,
            )

        await self._call("update", args, call)
        self._logger.info(
            "Updated check run",
            check_name=args.check_name,
            check_run_id=check_run_id,
            head_sha=args.commit_sha,
            status=args.status.value,
            conclusion=args.conclusion.value if args.conclusion else None,
        )

    async def find_check_run(self, args: CheckExecutionArgs) -> int | None:
        """Find a check run this app already created for the commit and
        check name of ``args``.

        Returns
        -------
        int or None
            The ID of the most recent matching check run, or `None`.
        """

        async def call(client: GitHubAPI) -> Any:
            return await client.getitem(
                "repos/{owner}/{repo}/commits/{ref}/check-runs"
                "{?check_name,app_id}",
                url_vars={
                    "owner": args.repo_owner,
                    "repo": args.repo_name,
                    "ref": args.commit_sha,
                    "check_name": args.check_name,
                    "app_id": str(self._client_factory.app_id),
                },
            )

        response = await self._call("find", args, call)
        check_runs = response.get("check_runs", [])
        if not check_runs:
            return None
        check_run_id = int(check_runs[0]["id"])
        self._logger.info(
            "Found existing check run",
            check_name=args.check_name,
            check_run_id=check_run_id,
            head_sha=args.commit_sha,
        )
        return check_run_id

    def _build_payload(self, args: CheckExecutionArgs) -> dict[str, Any]:
        """Build the JSON body shared by the create and update calls."""
        now = datetime.now(tz=UTC).isoformat(timespec="seconds")
        output: dict[str, Any] = {
            "title": args.initial_title,
            "summary": args.initial_summary,
        }
        if args.text:
            output["text"] = args.text
        data: dict[str, Any] = {
            "name": args.check_name,
            "status": args.status.value,
            "output": output,
        }
        if args.status == GitHubCheckRunStatus.completed:
            if args.conclusion is None:
                raise ValueError("A completed check run needs a conclusion")
            data["conclusion"] = args.conclusion.value
            data["completed_at"] = now
        elif args.status == GitHubCheckRunStatus.in_progress:
            data["started_at"] = now
        if args.details_url:
            data["details_url"] = args.details_url
        return data

    async def _get_client(self, installation_id: int) -> GitHubAPI:
        now = datetime.now(tz=UTC)
        cached = self._clients.get(installation_id)
        if cached and now - cached[1] < self._client_lifetime:
            return cached[0]
        client = await self._client_factory.create_installation_client(
            installation_id
        )
        self._clients[installation_id] = (client, now)
        return client

    async def _call(
        self,
        operation: str,
        args: CheckExecutionArgs,
        call: Callable[[GitHubAPI], Awaitable[Any]],
    ) -> Any:
        """Run an API call, retrying retryable failures with backoff."""
        attempt = 1
        while True:
            try:
                client = await self._get_client(args.installation_id)
                return await call(client)
            except Exception as e:
                error = classify_github_error(e, operation=operation)
                if not error.retryable or attempt >= self._max_attempts:
                    self._logger.warning(
                        "Check run API call failed",
                        operation=operation,
                        attempt=attempt,
                        retryable=error.retryable,
                        status_code=error.status_code,
                        error=str(error),
                    )
                    raise error from e
                delay = min(
                    self._backoff_base * 2 ** (attempt - 1), self._backoff_cap
                )
                self._logger.info(
                    "Retrying check run API call",
                    operation=operation,
                    attempt=attempt,
                    delay=delay,
                    error=str(error),
                )
                await asyncio.sleep(delay)
                attempt += 1
