"""Configuration definition."""

from __future__ import annotations

from enum import Enum
from typing import Annotated
from urllib.parse import urlparse

from arq.connections import RedisSettings
from pydantic import Field, HttpUrl, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings
from safir.arq import ArqMode
from safir.logging import LogLevel, Profile
from safir.pydantic import EnvRedisDsn

__all__ = ["Config", "LogLevel", "Profile", "TrackerBackend", "config"]


class TrackerBackend(str, Enum):
    """Storage backends for the run tracker."""

    redis = "redis"
    """Tracked runs are persisted in Redis (production)."""

    memory = "memory"
    """Tracked runs live in the worker process (development and tests)."""


class Config(BaseSettings):
    """Configuration for ArchGuard."""

    name: Annotated[
        str,
        Field(
            alias="SAFIR_NAME",
            description="The name of the application.",
        ),
    ] = "archguard"

    profile: Annotated[
        Profile,
        Field(
            alias="SAFIR_PROFILE",
            description=(
                "The application's runtime profile to configure logging."
            ),
        ),
    ] = Profile.production

    log_level: LogLevel = Field(
        LogLevel.INFO,
        alias="SAFIR_LOG_LEVEL",
        description="The application's logging level.",
    )

    logger_name: Annotated[
        str,
        Field(
            description=(
                "The name of the logger, which is also the root Python "
                "namespace of the application."
            )
        ),
    ] = "archguard"

    path_prefix: Annotated[
        str,
        Field(
            alias="AG_PATH_PREFIX",
            description=(
                "The URL prefix where the application's externally-accessible "
                "endpoints are hosted."
            ),
        ),
    ] = "/archguard"

    github_app_id: Annotated[
        int | None,
        Field(
            alias="AG_GITHUB_APP_ID",
            description=(
                "The GitHub App ID, as determined by GitHub when setting up a "
                "GitHub App."
            ),
        ),
    ] = None

    github_webhook_secret: Annotated[
        SecretStr | None,
        Field(
            alias="AG_GITHUB_WEBHOOK_SECRET",
            description=(
                "The GitHub app's webhook secret, as set when the App was "
                "created. See "
                "https://docs.github.com/en/developers/webhooks-and-events/"
                "webhooks/securing-your-webhooks"
            ),
        ),
    ] = None

    github_app_private_key: Annotated[
        SecretStr | None,
        Field(
            alias="AG_GITHUB_APP_PRIVATE_KEY",
            description=(
                "The GitHub app private key. See https://docs.github.com/en/"
                "developers/apps/building-github-apps/authenticating-with-"
                "github-apps#generating-a-private-key"
            ),
        ),
    ] = None

    enable_github_app: Annotated[
        bool,
        Field(
            alias="AG_ENABLE_GITHUB_APP",
            validate_default=True,
            description=(
                "Toggle to enable GitHub App functionality."
                "\n\n"
                "If configurations required to function as a GitHub App are "
                "not set, this configuration is automatically toggled to "
                "False. It can also also be manually toggled to False if "
                "necessary."
            ),
        ),
    ] = True

    github_orgs: Annotated[
        str,
        Field(
            alias="AG_GITHUB_ORGS",
            description=(
                "A comma-separated list of GitHub owners (organizations or "
                "users) whose repositories are checked. Empty to accept "
                "every installation."
            ),
        ),
    ] = ""

    check_name: Annotated[
        str,
        Field(
            alias="AG_CHECK_NAME",
            description=(
                "The check run name this integration registers on commits. "
                "It is part of the orchestration key, so it must be constant "
                "for a deployment."
            ),
        ),
    ] = "ArchGuard"

    check_details_url: Annotated[
        HttpUrl | None,
        Field(
            alias="AG_CHECK_DETAILS_URL",
            description="Details URL attached to every check run.",
        ),
    ] = None

    initial_title: Annotated[
        str,
        Field(
            alias="AG_INITIAL_TITLE",
            description="Output title of a newly queued check run.",
        ),
    ] = "Architecture check queued"

    initial_summary: Annotated[
        str,
        Field(
            alias="AG_INITIAL_SUMMARY",
            description="Output summary of a newly queued check run.",
        ),
    ] = "The architecture analysis will begin shortly."

    tracker_backend: Annotated[
        TrackerBackend,
        Field(
            alias="AG_TRACKER_BACKEND",
            description="Where tracked check runs are stored.",
        ),
    ] = TrackerBackend.redis

    redis_url: EnvRedisDsn = Field(
        "redis://localhost:6379/0",
        alias="AG_REDIS_URL",
        description="URL for the redis instance that stores tracked runs.",
    )

    redis_password: Annotated[
        SecretStr | None,
        Field(
            alias="AG_REDIS_PASSWORD",
            description="Password for the tracker's redis instance.",
        ),
    ] = None

    tracker_retention_days: Annotated[
        int | None,
        Field(
            gt=0,
            alias="AG_TRACKER_RETENTION_DAYS",
            description=(
                "Days a tracked run is retained after its last update. "
                "`None` keeps records forever."
            ),
        ),
    ] = 90

    tracker_timeout: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_TRACKER_TIMEOUT",
            description="Timeout, in seconds, for a single tracker call.",
        ),
    ] = 5.0

    lock_timeout: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_LOCK_TIMEOUT",
            description=(
                "Maximum time, in seconds, to wait for the per-key lock of "
                "an orchestration key."
            ),
        ),
    ] = 60.0

    api_timeout: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_API_TIMEOUT",
            description=(
                "Maximum time, in seconds, for one Checks API operation, "
                "including the gateway's own retries."
            ),
        ),
    ] = 30.0

    api_max_attempts: Annotated[
        int,
        Field(
            ge=1,
            alias="AG_API_MAX_ATTEMPTS",
            description="Attempts per Checks API call for retryable errors.",
        ),
    ] = 3

    api_backoff_base: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_API_BACKOFF_BASE",
            description="Base delay, in seconds, of the exponential backoff.",
        ),
    ] = 0.5

    api_backoff_cap: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_API_BACKOFF_CAP",
            description="Maximum delay, in seconds, between API attempts.",
        ),
    ] = 8.0

    transition_max_retries: Annotated[
        int,
        Field(
            ge=1,
            alias="AG_TRANSITION_MAX_RETRIES",
            description=(
                "Times a transition is recomputed after losing a "
                "compare-and-set race before giving up."
            ),
        ),
    ] = 5

    redis_queue_url: EnvRedisDsn = Field(
        "redis://localhost:6379/1",
        alias="AG_REDIS_QUEUE_URL",
        description="URL for the redis instance, used by the worker queue.",
    )

    queue_name: Annotated[
        str,
        Field(
            alias="AG_REDIS_QUEUE_NAME",
            description=(
                "Name of the arq queue that the worker processes from."
            ),
        ),
    ] = "arq:queue"

    arq_mode: Annotated[
        ArqMode,
        Field(
            alias="AG_ARQ_MODE",
            description=(
                "The Arq mode to use for the worker (production or testing)."
            ),
        ),
    ] = ArqMode.production

    task_max_tries: Annotated[
        int,
        Field(
            ge=1,
            alias="AG_TASK_MAX_TRIES",
            description=(
                "Maximum number of times a worker task is run when it fails "
                "with a retryable error."
            ),
        ),
    ] = 5

    task_retry_delay: Annotated[
        float,
        Field(
            gt=0,
            alias="AG_TASK_RETRY_DELAY",
            description=(
                "Delay, in seconds, before a retryable task runs again. The "
                "delay is multiplied by the try number."
            ),
        ),
    ] = 10.0

    analyzer_task_name: Annotated[
        str,
        Field(
            alias="AG_ANALYZER_TASK_NAME",
            description=(
                "Name of the analyzer's arq task that is enqueued when a "
                "check run is queued."
            ),
        ),
    ] = "run_architecture_analysis"

    analyzer_queue_name: Annotated[
        str,
        Field(
            alias="AG_ANALYZER_QUEUE_NAME",
            description="Name of the arq queue the analyzer consumes.",
        ),
    ] = "arq:analyzer"

    slack_webhook_url: Annotated[
        HttpUrl | None,
        Field(
            alias="AG_SLACK_WEBHOOK_URL",
            description=(
                "Webhook URL for sending error messages to a Slack channel."
            ),
        ),
    ] = None

    @field_validator("path_prefix")
    @classmethod
    def validate_path_prefix(cls, v: str) -> str:
        # Handle empty path prefix (i.e. app is hosted on its own domain)
        if v == "":
            raise ValueError(
                "ArchGuard does not yet support being hosted from "
                "the root path. Set a value for $AG_PATH_PREFIX."
            )

        # Remove any trailing / since individual paths operations add those.
        v = v.rstrip("/")

        # Add a / prefix if not present
        if not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator(
        "github_webhook_secret",
        "github_app_private_key",
        mode="before",
    )
    @classmethod
    def validate_none_secret(cls, v: str | None) -> str | None:
        """Validate a SecretStr setting which may be "None" that is intended
        to be `None`.

        This is useful for secrets generated from 1Password or environment
        variables where the value cannot be null.
        """
        if v is None:
            return v
        elif isinstance(v, str):
            if v.strip().lower() in ("none", ""):
                return None
            else:
                return v
        else:
            raise ValueError(f"Value must be None or a string: {v!r}")

    @field_validator("enable_github_app")
    @classmethod
    def validate_github_app(cls, v: bool, info: ValidationInfo) -> bool:
        """Validate ``enable_github_app`` by ensuring that other GitHub
        configurations are also set.
        """
        if v is False:
            # Allow the GitHub app to be disabled regardless of other
            # configurations.
            return False

        return not (
            info.data.get("github_app_private_key") is None
            or info.data.get("github_webhook_secret") is None
            or info.data.get("github_app_id") is None
        )

    @property
    def arq_redis_settings(self) -> RedisSettings:
        """Create a Redis settings instance for arq."""
        url_parts = urlparse(str(self.redis_queue_url))
        return RedisSettings(
            host=url_parts.hostname or "localhost",
            port=url_parts.port or 6379,
            database=int(url_parts.path.lstrip("/")) if url_parts.path else 0,
        )

    @property
    def accepted_github_orgs(self) -> list[str]:
        """Get the list of allowed GitHub owners.

        This is based on the `github_orgs` configuration, which is a
        comma-separated list of GitHub organizations. An empty list means
        that every owner is accepted.
        """
        return [v.strip() for v in self.github_orgs.split(",") if v.strip()]

    @property
    def tracker_retention_seconds(self) -> int | None:
        """Lifetime of a tracker record in Redis, in seconds."""
        if self.tracker_retention_days is None:
            return None
        return self.tracker_retention_days * 24 * 3600

    def is_accepted_owner(self, owner: str) -> bool:
        """Whether webhooks for repositories of ``owner`` are processed."""
        accepted = self.accepted_github_orgs
        return not accepted or owner in accepted


config = Config()
"""Configuration for ArchGuard."""
