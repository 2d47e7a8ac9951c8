"""Request and response models for the v1 API."""

from __future__ import annotations

from datetime import datetime
from typing import Self

from fastapi import Request
from pydantic import AnyHttpUrl, BaseModel, Field
from safir.github.models import GitHubCheckRunConclusion
from safir.metadata import Metadata as SafirMetadata

from ...domain.checkrun import RunState, TrackedRun

__all__ = ["Index", "TrackedRunResponse"]


class Index(BaseModel):
    """Metadata returned by the root of the v1 API."""

    metadata: SafirMetadata = Field(..., title="Package metadata")

    api_docs: AnyHttpUrl = Field(..., title="Browsable API documentation")


class TrackedRunResponse(BaseModel):
    """The tracked check run of a commit."""

    owner: str = Field(..., examples=["example-org"], title="Repository owner")

    repo: str = Field(..., examples=["example-service"], title="Repository")

    head_sha: str = Field(..., title="Commit SHA")

    check_name: str = Field(..., examples=["ArchGuard"], title="Check name")

    check_run_id: int | None = Field(
        None,
        title="GitHub check run ID",
        description="Absent until GitHub has confirmed the check run.",
    )

    state: RunState = Field(..., title="Lifecycle state")

    conclusion: GitHubCheckRunConclusion | None = Field(
        None, title="Conclusion, once completed"
    )

    cycle: int = Field(..., title="Run cycle (incremented by rerequests)")

    updated_at: datetime = Field(..., title="Time of the last transition")

    pending_retry: bool = Field(
        ..., title="Whether the last Checks API call is awaiting a retry"
    )

    failed: bool = Field(
        ..., title="Whether the last Checks API call failed permanently"
    )

    failure_message: str | None = Field(None, title="Permanent failure")

    html_url: AnyHttpUrl | None = Field(
        None, title="URL of the check run on GitHub"
    )

    self_url: AnyHttpUrl = Field(..., title="URL of this resource")

    @classmethod
    def from_domain(cls, *, run: TrackedRun, request: Request) -> Self:
        key = run.key
        html_url = (
            AnyHttpUrl(
                f"https://github.com/{key.owner}/{key.repo}/runs/"
                f"{run.check_run_id}"
            )
            if run.check_run_id is not None
            else None
        )
        return cls(
            owner=key.owner,
            repo=key.repo,
            head_sha=key.head_sha,
            check_name=key.check_name,
            check_run_id=run.check_run_id,
            state=run.state,
            conclusion=run.conclusion,
            cycle=run.cycle,
            updated_at=run.updated_at,
            pending_retry=run.pending_retry,
            failed=run.failed,
            failure_message=run.failure_message,
            html_url=html_url,
            self_url=AnyHttpUrl(
                str(
                    request.url_for(
                        "get_tracked_run",
                        owner=key.owner,
                        repo=key.repo,
                        sha=key.head_sha,
                    )
                )
            ),
        )
