"""Main CLI for clack."""

import asyncio
import sys
import time
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..app import build_app
from ..changes.types import ChangePlan, ChangeRequest, ChangeSession, TriggerType
from ..core.config import get_change_enabled_repos, is_changes_enabled_for_trigger, load_config
from ..llm.agent_invoker import READ_ONLY_TOOLS, AgentRequest
from ..utils.rich_logging import setup_rich_logging
from ..utils.validators import validate_branch_name


console = Console()

CLI_CHANNEL = "cli"


@click.group()
@click.option("--config", "-c", "config_path", default="config/clack.yaml", help="Config file")
@click.option("--log-level", default="INFO", help="Log level")
@click.pass_context
def cli(ctx, config_path, log_level):
    """Clack - chat-driven codebase assistant."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path))
    ctx.obj["config"] = config
    setup_rich_logging("clack-cli", config.logs_dir, log_level=log_level)


def _print_progress(message: str) -> None:
    console.print(f"[dim]{message}[/]")


async def _notify(session: ChangeSession, message: str) -> None:
    console.print(f"\n[yellow]{session.plan.branch_name}: {message}[/]")


def _require_changes_enabled(config) -> None:
    """CLI requests arrive as direct messages and follow that trigger's switch."""
    trigger = TriggerType.DIRECT_MESSAGES.value
    if not is_changes_enabled_for_trigger(trigger, config):
        console.print(
            f"[red]Error: change workflow is disabled for {trigger}. "
            f"Enable changes_workflow and {trigger}.changes_workflow in the config.[/]"
        )
        sys.exit(1)


def _print_active_workers(registry) -> None:
    workers = registry.active_workers()
    if not workers:
        return

    table = Table(title="Active changes")
    table.add_column("Branch")
    table.add_column("Repository")
    table.add_column("Phase")
    table.add_column("User")
    table.add_column("PR")
    for worker in workers:
        table.add_row(
            worker.branch,
            worker.repo,
            worker.status.phase,
            worker.user_id,
            worker.pr_url or "-",
        )
    console.print(table)


def _print_result(result) -> None:
    if result.success:
        console.print("[green]✓ Done[/]")
        if result.pr_url:
            console.print(f"PR: {result.pr_url}")
        if result.summary:
            console.print(result.summary)
    else:
        console.print(f"[red]Error: {result.error}[/]")


@cli.command("ask-worktree")
@click.option("--cwd", required=True, type=click.Path(exists=True, file_okay=False), help="Working directory")
@click.option("--prompt", "-p", required=True, help="Prompt sent to the agent")
@click.option("--system", "system_prompt", default=None, help="System prompt")
@click.option("--timeout", default=2.0, help="Timeout in minutes")
@click.option("--branch", default=None, help="Also write execution.log for this branch")
@click.pass_context
def ask_worktree(ctx, cwd, prompt, system_prompt, timeout, branch):
    """Run one read-only agent call in a directory."""
    app = build_app(ctx.obj["config"])
    log = None
    if branch:
        log = lambda message: app.store.append_log(branch, message)

    console.print(f"[bold]Asking Claude in {cwd}...[/]")
    result = asyncio.run(app.invoker.run(
        AgentRequest(
            prompt=prompt,
            cwd=Path(cwd),
            system_prompt=system_prompt,
            allowed_tools=list(READ_ONLY_TOOLS),
            timeout_minutes=timeout,
        ),
        log=log,
        on_progress=_print_progress,
    ))

    if not result.success:
        console.print(f"[red]Error: {result.error}[/]")
        if result.text:
            console.print(result.text)
        sys.exit(1)

    console.print(result.text)


@cli.command()
@click.argument("message")
@click.pass_context
def plan(ctx, message):
    """Generate a change plan for MESSAGE."""
    config = ctx.obj["config"]
    app = build_app(config)

    result = asyncio.run(app.executor.generate_change_plan(message, get_change_enabled_repos(config)))
    if not result.success:
        console.print(f"[red]Error: {result.error}[/]")
        sys.exit(1)

    table = Table()
    table.add_column("Branch")
    table.add_column("Repository")
    table.add_column("Description")
    table.add_row(result.plan.branch_name, result.plan.target_repo, result.plan.description)
    console.print(table)


async def _follow_up_loop(app, session_id: str, channel: str, thread_ts: str) -> None:
    """Read replies from stdin and apply them to the session until it ends."""
    console.print("\n[bold]Reply to the change thread (empty line to exit).[/]")
    while app.registry.get(session_id) is not None:
        reply = (await asyncio.to_thread(click.prompt, ">", default="", show_default=False)).strip()
        if not reply:
            return

        detection = await app.detector.detect_for_thread(channel, thread_ts, reply)
        if detection is None:
            console.print("[yellow]The change session has ended.[/]")
            return

        if detection.is_command:
            console.print(f"[cyan]Command: {detection.command.value}[/]")
            result = await app.workflow.handle_follow_up(
                session_id,
                detection.command,
                detection.additional_instructions,
                on_progress=_print_progress,
            )
            _print_result(result)
            continue

        session = app.registry.get(session_id)
        if session is None:
            return
        answer = await app.invoker.run(AgentRequest(
            prompt=reply,
            cwd=session.worktree.worktree_path,
            allowed_tools=list(READ_ONLY_TOOLS),
            timeout_minutes=2,
        ))
        console.print(answer.text if answer.success else f"[red]Error: {answer.error}[/]")


async def _run_change(app, request: ChangeRequest, thread_ts: str, start) -> None:
    app.monitor.start()
    try:
        result = await start()
        _print_result(result)
        _print_active_workers(app.registry)
        if result.success:
            session = app.registry.get_by_thread(request.channel, thread_ts)
            if session is not None:
                await _follow_up_loop(app, session.id, request.channel, thread_ts)
    finally:
        await app.monitor.stop()


def _cli_request(user: str, message: str) -> ChangeRequest:
    ts = f"{time.time():.6f}"
    return ChangeRequest(
        user_id=user,
        message=message,
        trigger_type=TriggerType.DIRECT_MESSAGES,
        channel=CLI_CHANNEL,
        message_ts=ts,
        thread_ts=ts,
    )


@cli.command()
@click.option("--repo", "-r", required=True, help="Target repository name")
@click.option("--branch", "-b", required=True, help="Branch to create")
@click.option("--description", "-d", required=True, help="What to change")
@click.option("--message", "-m", default=None, help="Original request text (defaults to description)")
@click.option("--user", "-u", default="cli", help="Requesting user id")
@click.pass_context
def change(ctx, repo, branch, description, message, user):
    """Start a change request and follow it up interactively."""
    config = ctx.obj["config"]
    try:
        validate_branch_name(branch)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        sys.exit(1)
    _require_changes_enabled(config)

    app = build_app(config, notifier=_notify)
    app.workflow.initialize()

    request = _cli_request(user, message or description)
    thread_ts = request.thread_ts
    change_plan = ChangePlan(branch_name=branch, description=description, target_repo=repo)

    console.print(f"[bold green]Starting change on {repo}:{branch}[/]")
    asyncio.run(_run_change(
        app,
        request,
        thread_ts,
        lambda: app.workflow.start(request, change_plan, thread_ts, on_progress=_print_progress),
    ))


@cli.command()
@click.argument("branch")
@click.option("--user", "-u", default="cli", help="Requesting user id")
@click.pass_context
def resume(ctx, branch, user):
    """Restart the persisted change session for BRANCH."""
    config = ctx.obj["config"]
    _require_changes_enabled(config)
    app = build_app(config, notifier=_notify)
    app.workflow.initialize()

    request = _cli_request(user, f"resume {branch}")
    thread_ts = request.thread_ts

    console.print(f"[bold green]Resuming {branch}[/]")
    asyncio.run(_run_change(
        app,
        request,
        thread_ts,
        lambda: app.workflow.resume(request, branch, thread_ts, on_progress=_print_progress),
    ))


@cli.command()
@click.pass_context
def sessions(ctx):
    """List persisted sessions that can be resumed."""
    app = build_app(ctx.obj["config"])
    resumable = app.store.get_resumable_sessions()

    if not resumable:
        console.print("[dim]No resumable sessions[/]")
        return

    table = Table()
    table.add_column("Branch")
    table.add_column("Repository")
    table.add_column("Phase")
    table.add_column("Started")
    table.add_column("Last message")

    for session in resumable:
        table.add_row(
            session.branch_name,
            session.repo,
            session.phase,
            session.started_at,
            session.last_message[:80],
        )

    console.print(table)


@cli.command()
@click.pass_context
def cleanup(ctx):
    """Remove stale worktrees and session folders."""
    app = build_app(ctx.obj["config"])
    worktrees_removed, folders_removed = app.workflow.initialize()
    console.print(f"[green]✓ Removed {worktrees_removed} stale worktrees[/]")
    console.print(f"[green]✓ Removed {folders_removed} stale session folders[/]")


@cli.command()
@click.pass_context
def sync(ctx):
    """Clone or update every configured repository."""
    config = ctx.obj["config"]
    app = build_app(config)

    if not config.repositories:
        console.print("[yellow]No repositories configured[/]")
        return

    failures = 0
    for repo in config.repositories:
        console.print(f"[bold]Syncing {repo.name}...[/]")
        try:
            path = app.worktrees.sync_repository(repo)
            console.print(f"  [green]✓ {path}[/]")
        except Exception as e:
            failures += 1
            console.print(f"  [red]Error: {e}[/]")

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    cli()
