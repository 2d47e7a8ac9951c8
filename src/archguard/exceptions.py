"""Exception classes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

from fastapi import status
from safir.fastapi import ClientRequestError
from safir.models import ErrorLocation
from safir.slack.blockkit import (
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextField,
)

if TYPE_CHECKING:
    from .domain.checkrun import OrchestrationKey

__all__ = [
    "ArchGuardError",
    "ChecksApiError",
    "DecodeError",
    "MalformedPayloadError",
    "PermanentApiError",
    "RetryableApiError",
    "RunNotFoundError",
    "TransitionConflictError",
    "TransitionTimeoutError",
    "UnsupportedEventError",
]


class ArchGuardError(Exception):
    """Base class for errors raised by the check run orchestrator."""


class DecodeError(ArchGuardError):
    """A webhook delivery could not be decoded into a supported event.

    Decode errors are never fatal. The webhook endpoint logs them and
    acknowledges the delivery so that GitHub does not redeliver it.
    """

    error = "decode_error"


class UnsupportedEventError(DecodeError):
    """The ``X-GitHub-Event`` header names an event this app does not
    process.
    """

    error = "unsupported_event"

    @classmethod
    def for_event(cls, event_type: str) -> Self:
        """Create an exception naming the unsupported event type."""
        return cls(f"GitHub event {event_type!r} is not supported.")


class MalformedPayloadError(DecodeError):
    """The webhook body is not JSON or lacks a required field."""

    error = "malformed_payload"

    @classmethod
    def for_event(cls, event_type: str, detail: str) -> Self:
        """Create an exception for a payload of the given event type."""
        return cls(f"Malformed {event_type} payload: {detail}")


class TransitionConflictError(ArchGuardError):
    """A check run transition lost a compare-and-set race, or another
    orchestrator instance has an API call in flight for the same key.

    The transition is recomputed from the fresh tracker value; the error is
    only surfaced when the retry budget is exhausted.
    """

    def __init__(self, message: str, key: OrchestrationKey) -> None:
        super().__init__(message)
        self.key = key


class TransitionTimeoutError(ArchGuardError):
    """The per-key lock or a tracker call did not complete in time.

    These errors are retryable: a later delivery or task retry makes
    progress once the key is free.
    """

    def __init__(self, message: str, key: OrchestrationKey) -> None:
        super().__init__(message)
        self.key = key


class ChecksApiError(SlackException):
    """A GitHub Checks API call failed.

    Parameters
    ----------
    message
        Description of the failure.
    status_code
        The HTTP status code returned by GitHub, if a response was received.
    key
        The orchestration key whose check run was being created or updated.
    operation
        The gateway operation, ``create`` or ``update``.
    """

    retryable: bool = False
    """Whether the call can be retried."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        key: OrchestrationKey | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.key = key
        self.operation = operation

    def to_slack(self) -> SlackMessage:
        """Format the error as a Slack message for the failure channel."""
        message = super().to_slack()
        if self.key is not None:
            message.fields.append(
                SlackTextField(
                    heading="Repository",
                    text=(
                        f"https://github.com/{self.key.owner}/{self.key.repo}"
                    ),
                )
            )
            message.fields.append(
                SlackTextField(heading="Commit", text=self.key.head_sha)
            )
        if self.operation:
            message.fields.append(
                SlackTextField(heading="Operation", text=self.operation)
            )
        if self.status_code is not None:
            message.blocks.append(
                SlackCodeBlock(
                    heading="GitHub status", code=str(self.status_code)
                )
            )
        return message


class RetryableApiError(ChecksApiError):
    """A transient Checks API failure (5xx, timeout, or rate limit)."""

    retryable = True


class PermanentApiError(ChecksApiError):
    """A Checks API failure that retrying cannot fix (4xx other than rate
    limiting, such as a missing installation).
    """

    retryable = False


class RunNotFoundError(ClientRequestError):
    """No check run is tracked for the requested commit."""

    error = "run_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    @classmethod
    def for_key(
        cls,
        key: OrchestrationKey,
        location: ErrorLocation | None = ErrorLocation.path,
        field_path: list[str] | None = None,
    ) -> Self:
        """Create an exception naming the orchestration key."""
        message = (
            f"No {key.check_name} check run is tracked for "
            f"{key.owner}/{key.repo}@{key.short_sha}."
        )
        return cls(
            message, location=location, field_path=field_path or ["sha"]
        )
