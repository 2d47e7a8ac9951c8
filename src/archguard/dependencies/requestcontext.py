"""A FastAPI dependency that wraps multiple common dependencies."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request, Response
from safir.arq import ArqQueue
from safir.dependencies.arq import arq_dependency
from safir.dependencies.logger import logger_dependency
from structlog.stdlib import BoundLogger

from ..config import Config, config
from ..services.keyresolver import CheckRunKeyResolver
from ..storage.runtracker import RunTrackerStore
from .tracker import tracker_dependency

__all__ = ["RequestContext", "context_dependency"]


@dataclass
class RequestContext:
    """Holds the incoming request and its surrounding context.

    The primary reason for the existence of this class is to allow the
    functions involved in request processing to repeatedly rebind the request
    logger to include more information, without having to pass both the
    request and the logger separately to every function.
    """

    request: Request
    """The incoming request."""

    response: Response
    """The response (useful for setting response headers)."""

    config: Config
    """ArchGuard's configuration."""

    logger: BoundLogger
    """The request logger, rebound with discovered context."""

    tracker: RunTrackerStore
    """The run tracker store."""

    arq_queue: ArqQueue
    """The queue for worker tasks."""

    @property
    def key_resolver(self) -> CheckRunKeyResolver:
        """A key resolver for the configured check name."""
        return CheckRunKeyResolver(
            check_name=self.config.check_name,
            store=self.tracker,
            logger=self.logger,
        )

    def rebind_logger(self, **values: str | None) -> None:
        """Add the given values to the logging context.

        Parameters
        ----------
        **values : `str` or `None`
            Additional values that should be added to the logging context.
        """
        self.logger = self.logger.bind(**values)


async def context_dependency(
    request: Request,
    response: Response,
    logger: Annotated[BoundLogger, Depends(logger_dependency)],
    tracker: Annotated[RunTrackerStore, Depends(tracker_dependency)],
    arq_queue: Annotated[ArqQueue, Depends(arq_dependency)],
) -> RequestContext:
    """Provide a RequestContext as a dependency."""
    return RequestContext(
        request=request,
        response=response,
        config=config,
        logger=logger,
        tracker=tracker,
        arq_queue=arq_queue,
    )
