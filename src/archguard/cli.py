"""Administrative command-line interface."""

from __future__ import annotations

import click
import uvicorn
from redis.asyncio import Redis
from safir.asyncio import run_with_asyncio

from .config import config
from .domain.checkrun import OrchestrationKey
from .storage.runtracker import RedisRunTrackerStore


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(message="%(version)s")
def main() -> None:
    """archguard.

    Administrative command-line interface for ArchGuard.
    """


@main.command()
@click.argument("topic", default=None, required=False, nargs=1)
@click.pass_context
def help(ctx: click.Context, topic: str | None) -> None:
    """Show help for any command."""
    # The help command implementation is taken from
    # https://www.burgundywall.com/post/having-click-help-subcommand
    if topic:
        if topic in main.commands:
            click.echo(main.commands[topic].get_help(ctx))
        else:
            raise click.UsageError(f"Unknown help topic {topic}", ctx)
    else:
        if not ctx.parent:
            raise RuntimeError("help called without topic or parent")
        click.echo(ctx.parent.get_help())


@main.command()
@click.option(
    "--port", default=8080, type=int, help="Port to run the application on."
)
def develop(port: int) -> None:
    """Run the application with live reloading (for development only)."""
    uvicorn.run(
        "archguard.main:app", port=port, reload=True, reload_dirs=["src"]
    )


@main.group()
def run() -> None:
    """Inspect tracked check runs in the Redis run tracker."""


def _create_redis() -> Redis:
    return Redis.from_url(
        str(config.redis_url),
        password=(
            config.redis_password.get_secret_value()
            if config.redis_password
            else None
        ),
    )


@run.command("show")
@click.argument("owner")
@click.argument("repo")
@click.argument("sha")
@click.option(
    "--check-name",
    default=None,
    help="Check run name (defaults to the configured check name).",
)
@run_with_asyncio
async def show_run(
    owner: str, repo: str, sha: str, check_name: str | None
) -> None:
    """Show the tracked check run of a commit."""
    key = OrchestrationKey(
        owner=owner,
        repo=repo,
        head_sha=sha,
        check_name=check_name or config.check_name,
    )
    redis = _create_redis()
    try:
        store = RedisRunTrackerStore(redis)
        tracked_run = await store.get(key)
    finally:
        await redis.aclose()
    if tracked_run is None:
        raise click.ClickException(f"No tracked run for {key.tracker_key}")
    click.echo(tracked_run.model_dump_json(indent=2))


@run.command("list")
@click.argument("owner")
@click.argument("repo", required=False)
@run_with_asyncio
async def list_runs(owner: str, repo: str | None) -> None:
    """List the tracked check runs of an owner, or of one repository."""
    pattern = f"{owner}/{repo}/*" if repo else f"{owner}/*"
    redis = _create_redis()
    try:
        store = RedisRunTrackerStore(redis)
        tracked_runs = await store.scan(pattern)
    finally:
        await redis.aclose()
    for tracked_run in tracked_runs:
        key = tracked_run.key
        conclusion = (
            tracked_run.conclusion.value if tracked_run.conclusion else "-"
        )
        click.echo(
            f"{key.repo}\t{key.short_sha}\t{key.check_name}\t"
            f"{tracked_run.state.value}\t{conclusion}\t"
            f"{tracked_run.check_run_id or '-'}"
        )
