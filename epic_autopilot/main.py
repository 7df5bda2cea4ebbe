"""CLI entry point for epic-autopilot."""

import asyncio
import os
import sys

import click
import structlog

from epic_autopilot.config.settings import DEFAULT_CONFIG_PATH, AutopilotSettings
from epic_autopilot.engine.catalog import compile_patterns, split_patterns
from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.orchestrator import Orchestrator
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.exceptions import AutopilotError, ConfigurationError, DirtyPreconditionError
from epic_autopilot.providers.catalog import MarkdownEpicCatalog
from epic_autopilot.providers.claude_agent import ClaudeCliAgent
from epic_autopilot.providers.git_cli import (
    GitCliProvider,
    detect_base_branch,
    detect_remote_repository,
    exclude_locally,
)
from epic_autopilot.providers.github import GitHubGraphQLClient, GitHubProvider
from epic_autopilot.providers.local_checks import ShellChecks
from epic_autopilot.utils.logging_config import configure_logging
from epic_autopilot.utils.tooling import require_tooling

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=DEFAULT_CONFIG_PATH, show_default=True, help="Path to configuration file")
@click.pass_context
def cli(ctx: click.Context, config: str) -> None:
    """epic-autopilot: develop, review and merge backlog epics autonomously."""
    try:
        settings = AutopilotSettings.from_yaml(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("patterns", nargs=-1)
@click.option("--continue", "resume", is_flag=True, help="Resume from the last committed phase")
@click.option("--debug", is_flag=True, help="Debug logging, also written to the autopilot log file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on the console")
@click.option("--allow-dirty", is_flag=True, help="Start even if the checkout has uncommitted changes")
@click.option("--concurrent/--sequential", default=None, help="Hand submitted items to the pending queue")
@click.option("--max-pending", type=click.IntRange(min=1), default=None, help="Maximum items in the pending queue")
@click.pass_context
def run(
    ctx: click.Context,
    patterns: tuple[str, ...],
    resume: bool,
    debug: bool,
    verbose: bool,
    allow_dirty: bool,
    concurrent: bool | None,
    max_pending: int | None,
) -> None:
    """Process epics matching PATTERNS (all epics when none are given).

    Each pattern is a case-insensitive regular expression; an epic is
    selected when any pattern matches its identifier.
    """
    settings: AutopilotSettings = ctx.obj["settings"]

    overrides: dict[str, object] = {}
    if concurrent is not None:
        overrides["concurrent"] = concurrent
    if max_pending is not None:
        overrides["max_pending"] = max_pending
    if overrides:
        settings.workflow = settings.workflow.model_copy(update=overrides)

    if debug:
        settings.autopilot_dir.mkdir(parents=True, exist_ok=True)
        configure_logging("DEBUG", log_file=settings.log_file)
    else:
        configure_logging("DEBUG" if verbose else "INFO")

    try:
        selected = split_patterns(patterns)
        compile_patterns(selected)
        exit_code = asyncio.run(_run(settings, selected, resume=resume, allow_dirty=allow_dirty))
    except AutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("run_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("run_error_unexpected", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the persisted orchestrator state."""
    settings: AutopilotSettings = ctx.obj["settings"]
    store = StateManager(settings.state_file)
    if not store.exists():
        click.echo("No state yet. Start with: epic-autopilot run")
        return

    try:
        state = asyncio.run(store.read())
    except AutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Phase:        {state.phase}")
    click.echo(f"Active item:  {state.active_item or '-'}")
    if state.active_request is not None:
        click.echo(f"Request:      #{state.active_request}")
    if state.blocked:
        click.echo(f"Blocked in:   {state.blocked.phase} ({state.blocked.error_kind})")
        click.echo(f"Reason:       {state.blocked.reason}")

    click.echo(f"Completed:    {', '.join(state.completed_items) or '-'}")
    if state.pending_queue:
        click.echo("Pending:")
        for entry in state.pending_queue:
            line = f"  {entry.item_id}  #{entry.request_ref}  {entry.status}  checked {entry.last_checked_at}"
            if entry.last_error:
                line += f"  last error: {entry.last_error}"
            click.echo(line)
    else:
        click.echo("Pending:      -")


@cli.command()
@click.argument("item")
@click.pass_context
def abandon(ctx: click.Context, item: str) -> None:
    """Remove ITEM from the pending queue and delete its workspace."""
    settings: AutopilotSettings = ctx.obj["settings"]
    configure_logging("INFO")

    try:
        removed = asyncio.run(_abandon(settings, item))
    except AutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if not removed:
        click.echo(f"{item} is not in the pending queue", err=True)
        sys.exit(1)
    click.echo(f"Abandoned {item}")


async def _resolve_repository(settings: AutopilotSettings) -> tuple[str, str, str]:
    """Base branch, owner and name, detected from git where not configured."""
    repo_config = settings.repository
    base_branch = repo_config.base_branch or await detect_base_branch(settings.root)

    owner, name = repo_config.owner, repo_config.name
    if not (owner and name):
        detected = await detect_remote_repository(settings.root)
        if detected is None:
            raise ConfigurationError(
                "Cannot determine the GitHub repository. Set repository.owner and repository.name in the config"
            )
        owner, name = owner or detected[0], name or detected[1]

    return base_branch, owner, name


async def _build_context(settings: AutopilotSettings, patterns: list[str]) -> tuple[RunContext, GitHubProvider]:
    base_branch, owner, name = await _resolve_repository(settings)
    log.info("repository_detected", owner=owner, name=name, base_branch=base_branch)

    token = settings.github.token.get_secret_value() if settings.github.token else os.environ.get("GITHUB_TOKEN")
    github = GitHubProvider(
        token=token,
        owner=owner,
        repo=name,
        base_branch=base_branch,
        api_url=settings.github.api_url,
        graphql=GitHubGraphQLClient(settings.github.graphql_url, token),
        request_labels=settings.github.request_labels,
    )
    await github.connect()

    vcs = GitCliProvider(
        root=settings.root,
        base_branch=base_branch,
        branch_prefix=settings.repository.branch_prefix,
        worktrees_dir=settings.worktrees_dir,
        review=github,
    )
    agent = ClaudeCliAgent(
        command=settings.agent.command,
        base_branch=base_branch,
        allowed_tools=settings.agent.allowed_tools,
        permission_mode=settings.agent.permission_mode,
        timeout=settings.agent.timeout,
    )
    ctx = RunContext(
        settings=settings,
        vcs=vcs,
        review=github,
        ci=github,
        agent=agent,
        catalog=MarkdownEpicCatalog(settings.backlog_dir),
        checks=ShellChecks(settings.checks.commands, timeout=settings.checks.timeout),
        patterns=patterns,
    )
    return ctx, github


async def _run(settings: AutopilotSettings, patterns: list[str], resume: bool, allow_dirty: bool) -> int:
    require_tooling(["git", settings.agent.command])
    settings.autopilot_dir.mkdir(parents=True, exist_ok=True)
    await exclude_locally(settings.root, settings.autopilot_dir)

    checkout = GitCliProvider(
        root=settings.root,
        base_branch=settings.repository.base_branch or "main",
        branch_prefix=settings.repository.branch_prefix,
        worktrees_dir=settings.worktrees_dir,
    )
    if await checkout.is_dirty() and not allow_dirty:
        raise DirtyPreconditionError(
            "Working tree has uncommitted changes. Commit or stash them, or pass --allow-dirty"
        )

    ctx, github = await _build_context(settings, patterns)
    log.info(
        "run_started",
        resume=resume,
        patterns=patterns,
        concurrent=settings.workflow.concurrent,
        max_pending=settings.workflow.max_pending,
    )
    try:
        return await Orchestrator(ctx, StateManager(settings.state_file)).run(resume=resume)
    finally:
        await github.disconnect()


async def _abandon(settings: AutopilotSettings, item: str) -> bool:
    store = StateManager(settings.state_file)
    if not store.exists():
        return False

    removed = await store.remove_pending(item)
    if removed is None:
        return False

    vcs = GitCliProvider(
        root=settings.root,
        base_branch=settings.repository.base_branch or "main",
        branch_prefix=settings.repository.branch_prefix,
        worktrees_dir=settings.worktrees_dir,
    )
    await vcs.remove_workspace(item)
    log.info("item_abandoned", item=item, pr=removed.request_ref)
    return True


if __name__ == "__main__":
    cli()
