"""Handlers for the /v1/ API."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Request
from pydantic import AnyHttpUrl
from safir.metadata import get_metadata
from safir.models import ErrorModel
from safir.slack.webhook import SlackRouteErrorHandler

from ...config import config
from ...dependencies.requestcontext import RequestContext, context_dependency
from ...exceptions import RunNotFoundError
from .models import Index, TrackedRunResponse

__all__ = ["get_index", "get_tracked_run", "v1_router"]

v1_router = APIRouter(route_class=SlackRouteErrorHandler)
"""FastAPI router for all v1 handlers."""

github_owner_parameter = Path(
    title="GitHub owner (organization or username)", examples=["example-org"]
)

github_repo_parameter = Path(
    title="GitHub repository", examples=["example-service"]
)

commit_sha_parameter = Path(
    title="Git commit SHA",
    pattern=r"^[0-9a-fA-F]{7,64}$",
    examples=["1c3d5f7a9b2d4f6a8c0e1c3d5f7a9b2d4f6a8c0e"],
)


@v1_router.get(
    "/",
    summary="v1 API metadata",
    response_model=Index,
)
async def get_index(request: Request) -> Index:
    """Get metadata about the v1 REST API."""
    metadata = get_metadata(
        package_name="archguard",
        application_name=config.name,
    )
    doc_url = request.url.replace(path=f"{config.path_prefix}/redoc")
    return Index(metadata=metadata, api_docs=AnyHttpUrl(str(doc_url)))


@v1_router.get(
    "/runs/{owner}/{repo}/{sha}",
    summary="Tracked check run of a commit",
    name="get_tracked_run",
    response_model=TrackedRunResponse,
    responses={
        404: {"description": "No tracked check run", "model": ErrorModel},
    },
)
async def get_tracked_run(
    owner: Annotated[str, github_owner_parameter],
    repo: Annotated[str, github_repo_parameter],
    sha: Annotated[str, commit_sha_parameter],
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> TrackedRunResponse:
    """Get the tracker's record of the configured check run for a commit.

    The record shows the run's lifecycle state, the GitHub check run it
    drives, and whether the last Checks API call is pending a retry or
    failed permanently.
    """
    resolver = context.key_resolver
    key = resolver.key_for(owner, repo, sha)
    run = await resolver.lookup(key)
    if run is None:
        raise RunNotFoundError.for_key(key)
    return TrackedRunResponse.from_domain(run=run, request=context.request)
