"""CLI entry point for issue-forge.

The CLI is the ingress: a CI workflow triggered by ``issues`` and
``issue_comment`` events calls ``forge process-event`` with the event payload.
Authentication and webhook verification stay with the CI system.
"""

import asyncio
import json
import sys
from pathlib import Path

import click
import structlog

from issue_forge.config.settings import ForgeSettings
from issue_forge.engine.event_classifier import EventClassifier
from issue_forge.engine.session_manager import SessionManager
from issue_forge.engine.state_manager import SessionStateStore
from issue_forge.exceptions import ConfigurationError, IssueForgeError
from issue_forge.models.domain import branch_name_for
from issue_forge.providers.github_rest import GitHubContentStore
from issue_forge.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "forge.yaml"


def parse_repo(value: str) -> tuple[str, str]:
    """Split ``owner/name``."""
    owner, sep, name = value.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise click.BadParameter(f"expected owner/name, got '{value}'")
    return owner, name


def _repo_callback(ctx: click.Context, param: click.Parameter, value: str) -> tuple[str, str]:
    return parse_repo(value)


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: {DEFAULT_CONFIG} if present)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """issue-forge: quality-gated multi-agent build orchestration."""
    configure_logging(log_level)

    try:
        if config is not None:
            settings = ForgeSettings.from_yaml(config)
        elif Path(DEFAULT_CONFIG).exists():
            settings = ForgeSettings.from_yaml(DEFAULT_CONFIG)
        else:
            settings = ForgeSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command(name="run")
@click.option("--repo", required=True, callback=_repo_callback, help="Repository as owner/name")
@click.option("--issue", type=int, required=True, help="Issue number to process")
@click.option("--requirements", default=None, help="Requirements text (default: the issue body)")
@click.pass_context
def run_command(ctx: click.Context, repo: tuple[str, str], issue: int, requirements: str | None) -> None:
    """Run the full pipeline for an issue."""
    settings = ctx.obj["settings"]
    _execute(lambda: _run_session(settings, repo, issue, requirements))


@cli.command(name="restart")
@click.option("--repo", required=True, callback=_repo_callback, help="Repository as owner/name")
@click.option("--issue", type=int, required=True, help="Issue number to restart")
@click.pass_context
def restart_command(ctx: click.Context, repo: tuple[str, str], issue: int) -> None:
    """Restart an issue's session at planning."""
    settings = ctx.obj["settings"]
    _execute(lambda: _restart_session(settings, repo, issue))


@cli.command(name="process-event")
@click.option("--event-type", required=True, help="Event type (e.g., 'issues.opened')")
@click.option("--event-data", required=False, help="JSON event payload (or pass via stdin)")
@click.pass_context
def process_event_command(ctx: click.Context, event_type: str, event_data: str | None) -> None:
    """Process an issue or comment event from CI.

    Examples:

        forge process-event --event-type issues.opened --event-data "$(cat $GITHUB_EVENT_PATH)"

        forge process-event --event-type issue_comment.created < "$GITHUB_EVENT_PATH"
    """
    settings = ctx.obj["settings"]

    if event_data:
        try:
            payload = json.loads(event_data)
        except json.JSONDecodeError as e:
            click.echo(f"Error: Invalid JSON in --event-data: {e}", err=True)
            sys.exit(1)
    elif not sys.stdin.isatty():
        try:
            payload = json.load(sys.stdin)
        except json.JSONDecodeError as e:
            click.echo(f"Error: Invalid JSON from stdin: {e}", err=True)
            sys.exit(1)
    else:
        click.echo("Error: Provide --event-data or pipe the payload on stdin", err=True)
        sys.exit(1)

    if not isinstance(payload, dict):
        click.echo("Error: Event payload must be a JSON object", err=True)
        sys.exit(1)

    _execute(lambda: _process_event(settings, event_type, payload))


@cli.command(name="show-session")
@click.option("--repo", required=True, callback=_repo_callback, help="Repository as owner/name")
@click.option("--issue", type=int, required=True, help="Issue number")
@click.pass_context
def show_session_command(ctx: click.Context, repo: tuple[str, str], issue: int) -> None:
    """Show recorded session state and iteration history."""
    settings = ctx.obj["settings"]
    asyncio.run(_show_session(settings, repo, issue))


def _execute(factory) -> None:
    """Run a coroutine factory and map errors to exit codes."""
    try:
        asyncio.run(factory())
    except IssueForgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("command_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("command_unexpected", exc_info=True)
        sys.exit(1)


async def _fetch_issue_body(settings: ForgeSettings, owner: str, name: str, issue: int) -> str:
    store = GitHubContentStore(
        token=settings.github.api_token,
        owner=owner,
        repo=name,
        branch=branch_name_for(issue),
        base_url=settings.github.base_url,
        default_branch=settings.github.default_branch,
        request_timeout=settings.github.request_timeout,
    )
    await store.connect()
    try:
        return await store.get_issue_body(issue)
    finally:
        await store.disconnect()


async def _run_session(settings: ForgeSettings, repo: tuple[str, str], issue: int, requirements: str | None) -> None:
    owner, name = repo
    if requirements is None:
        requirements = await _fetch_issue_body(settings, owner, name, issue)

    manager = SessionManager(settings)
    outcome = await manager.start_session(owner, name, issue, requirements)
    click.echo(f"Session #{issue} completed: {outcome.pull_request.url}")


async def _restart_session(settings: ForgeSettings, repo: tuple[str, str], issue: int) -> None:
    owner, name = repo
    manager = SessionManager(settings)
    state = await manager.state.load_state(SessionStateStore.make_key(owner, name, issue))
    requirements = None
    if state is None:
        requirements = await _fetch_issue_body(settings, owner, name, issue)

    task = await manager.restart_session(owner, name, issue, requirements)
    outcome = await task
    click.echo(f"Session #{issue} completed: {outcome.pull_request.url}")


async def _process_event(settings: ForgeSettings, event_type: str, payload: dict) -> None:
    event = EventClassifier(settings).classify(event_type, payload)
    if not event.should_process:
        click.echo(f"Event skipped: {event.skip_reason}")
        return

    manager = SessionManager(settings)
    task = await manager.handle_event(event)
    if task is None:
        click.echo(f"Event processed: {event.kind.value}")
        return

    outcome = await task
    click.echo(f"Session #{event.issue_number} completed: {outcome.pull_request.url}")


async def _show_session(settings: ForgeSettings, repo: tuple[str, str], issue: int) -> None:
    owner, name = repo
    state = SessionStateStore(settings.state_dir)
    data = await state.load_state(SessionStateStore.make_key(owner, name, issue))
    if data is None:
        click.echo(f"No session recorded for {owner}/{name}#{issue}.", err=True)
        return

    click.echo(f"\n📋 Session #{issue} ({data['repo']})\n")
    click.echo(f"Current phase: {data['current_phase']}")
    click.echo(f"Runs: {data['run_count']}")
    click.echo(f"Created: {data['created_at']}")
    click.echo(f"Updated: {data['updated_at']}\n")

    click.echo("Phases:")
    for phase_name, phase_data in data["phases"].items():
        status = phase_data["status"]
        emoji = "✅" if status == "completed" else "🔄" if status == "in_progress" else "❌"
        click.echo(f"  {emoji} {phase_name}: {status}")

    if data["history"]:
        click.echo(f"\nIterations ({len(data['history'])}):")
        for entry in data["history"]:
            click.echo(f"  run {entry['run']} {entry['phase']} #{entry['index']}: {entry['score']}%  {entry['path']}")


if __name__ == "__main__":
    cli()
