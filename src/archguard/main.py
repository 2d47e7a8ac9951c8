"""The main application factory for the ArchGuard service.

Notes
-----
Be aware that, following the normal pattern for FastAPI services, the app is
constructed when this module is loaded and is not deferred until a function is
called.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from safir.dependencies.arq import arq_dependency
from safir.fastapi import ClientRequestError, client_request_error_handler
from safir.logging import configure_logging, configure_uvicorn_logging
from safir.middleware.x_forwarded import XForwardedMiddleware
from safir.slack.webhook import SlackRouteErrorHandler
from structlog import get_logger

from . import __version__
from .config import config
from .dependencies.tracker import tracker_dependency
from .handlers.external import external_router
from .handlers.internal import internal_router
from .handlers.v1 import v1_router

__all__ = ["app", "config"]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator:
    """Context manager for the application lifespan."""
    logger = get_logger(__name__)
    logger.debug("ArchGuard is starting up.")

    await tracker_dependency.initialize(
        config.tracker_backend,
        str(config.redis_url),
        password=(
            config.redis_password.get_secret_value()
            if config.redis_password
            else None
        ),
    )
    await arq_dependency.initialize(
        mode=config.arq_mode, redis_settings=config.arq_redis_settings
    )

    logger.info("ArchGuard started up.")

    yield

    # Shutdown phase:

    logger.debug("ArchGuard is shutting down.")

    await tracker_dependency.close()

    logger.info("ArchGuard shut down complete.")


configure_logging(
    profile=config.profile,
    log_level=config.log_level,
    name=config.logger_name,
)
configure_uvicorn_logging(config.log_level)

logger = get_logger(__name__)

app = FastAPI(
    title="ArchGuard",
    description=Path(__file__).parent.joinpath("description.md").read_text(),
    version=__version__,
    openapi_url=f"{config.path_prefix}/openapi.json",
    docs_url=f"{config.path_prefix}/docs",
    redoc_url=f"{config.path_prefix}/redoc",
    openapi_tags=[{"name": "v1", "description": "ArchGuard v1 REST API"}],
    lifespan=lifespan,
)
"""The FastAPI application for ArchGuard."""

# Add middleware
app.add_middleware(XForwardedMiddleware)

if config.slack_webhook_url:
    SlackRouteErrorHandler.initialize(
        str(config.slack_webhook_url), "ArchGuard", logger
    )

# Add routers
app.include_router(internal_router)
app.include_router(external_router, prefix=f"{config.path_prefix}")
app.include_router(v1_router, prefix=f"{config.path_prefix}/v1", tags=["v1"])

app.exception_handler(ClientRequestError)(client_request_error_handler)


def create_openapi() -> str:
    """Create the OpenAPI spec for static documentation."""
    spec = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    return json.dumps(spec)
