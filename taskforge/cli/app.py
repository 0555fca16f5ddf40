"""Main Typer app definition and commands.

This is the canonical entry point for the CLI:

    taskforge add-repo / create      register repositories and tasks
    taskforge run <task> [--full]    run, resume or re-run orchestration
    taskforge status [<task>]        dashboard or task detail
    taskforge approve / reject       decide a phase waiting on a human
    taskforge pause / resume / cancel
    taskforge events / verify        event log timeline and integrity
    taskforge budget <task>          spend against the ceiling
"""
from __future__ import annotations

from typing import Optional

import typer

from taskforge import __version__
from taskforge.cli.common import (
    build_coordinator,
    get_config_or_exit,
    get_console,
    get_event_store,
    get_store,
    load_task_or_exit,
    set_config_path,
)
from taskforge.cli.display import (
    format_cost,
    format_status,
    show_all_tasks,
    show_budget,
    show_events,
    show_task_detail,
)

# Create Typer app
app = typer.Typer(
    name="taskforge",
    help="Phase-based orchestration of autonomous coding agents",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"taskforge version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml if present)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Taskforge - drive a task from request to merged pull requests.

    Runs requirements analysis, task breakdown, team execution, integration
    testing and merge, stopping at approval gates.
    """
    set_config_path(config)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Setup Commands
# =========================================================================


@app.command("add-repo")
def add_repo(
    repo_id: str = typer.Argument(..., help="Repository identifier"),
    clone_url: str = typer.Argument(..., help="Clone URL or local path"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owning user id"),
    name: Optional[str] = typer.Option(None, "--name", help="Directory name in the workspace"),
    repo_type: str = typer.Option("backend", "--type", "-t", help="Repository type (backend, frontend, library)"),
    default_branch: str = typer.Option("main", "--branch", "-b", help="Default branch"),
) -> None:
    """Register a repository for a user."""
    from taskforge.models import Repository
    from taskforge.task_store import TaskStoreError

    config = get_config_or_exit()
    store = get_store(config)
    repository = Repository(
        id=repo_id,
        name=name or repo_id,
        owner_id=owner,
        clone_url=clone_url,
        repo_type=repo_type,
        default_branch=default_branch,
    )
    try:
        store.save_repository(repository)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Registered repository:[/green] {repo_id} ({repo_type})")


@app.command()
def create(
    title: str = typer.Argument(..., help="Short title of the task"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owning user id"),
    repos: list[str] = typer.Option(..., "--repo", "-r", help="Repository id (repeatable)"),
    description: str = typer.Option("", "--description", "-d", help="Natural-language request"),
    auto_approve: Optional[list[str]] = typer.Option(
        None, "--auto-approve", help="Phase to approve automatically (repeatable)"
    ),
    task_id: Optional[str] = typer.Option(None, "--id", help="Explicit task id"),
) -> None:
    """Create a pending task."""
    from taskforge.task_store import TaskStoreError

    config = get_config_or_exit()
    store = get_store(config)
    try:
        task = store.create(
            title=title,
            owner_id=owner,
            repository_ids=repos,
            description=description,
            auto_approval_phases=auto_approve,
            task_id=task_id,
        )
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Created task:[/green] {task.id}")
    console.print("\n[cyan]Next step:[/cyan] start orchestration with:")
    console.print(f"  [cyan]taskforge run {task.id}[/cyan]")


# =========================================================================
# Orchestration Commands
# =========================================================================


def _print_outcome(outcome) -> None:
    console.print(
        f"\n[bold]{outcome.task_id}[/bold]: {outcome.stopped_reason} "
        f"(status {outcome.status.value}, cost {format_cost(outcome.total_cost)}, "
        f"{outcome.total_tokens:,} tokens)"
    )
    if outcome.error:
        console.print(f"[red]Error:[/red] {outcome.error}")
    if outcome.stopped_reason == "awaiting_approval":
        console.print(f"[cyan]Approve with:[/cyan] taskforge approve {outcome.task_id} {outcome.phase}")
    elif outcome.stopped_reason == "paused":
        console.print(f"[cyan]Resume with:[/cyan] taskforge resume {outcome.task_id}")


@app.command()
def run(
    task_id: str = typer.Argument(..., help="Task to run or resume"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide progress notifications"),
    full: bool = typer.Option(
        False,
        "--full",
        help="Re-run every phase of a completed or failed task",
    ),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who requested the re-run"),
) -> None:
    """
    Run orchestration for a task.

    Resumes from the first unfinished phase; stops at approval gates.
    With --full, a finished task starts over from requirements analysis.
    """
    from taskforge.errors import ConfigurationError, ValidationBlockingError

    config = get_config_or_exit()
    coordinator = build_coordinator(config, quiet=quiet)
    try:
        if full:
            outcome = coordinator.continue_task(task_id, actor=actor)
        else:
            outcome = coordinator.orchestrate_task(task_id)
    except (ConfigurationError, ValidationBlockingError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _print_outcome(outcome)
    if outcome.stopped_reason == "failed":
        raise typer.Exit(1)


@app.command()
def status(
    task_id: Optional[str] = typer.Argument(
        None,
        help="Task to show detailed status for. If omitted, shows all tasks.",
    ),
) -> None:
    """Show the task dashboard or one task's detailed status."""
    config = get_config_or_exit()
    store = get_store(config)

    if task_id is None:
        show_all_tasks(store.list_tasks(), console)
    else:
        show_task_detail(load_task_or_exit(store, task_id), console)


@app.command()
def approve(
    task_id: str = typer.Argument(..., help="Task waiting on approval"),
    phase: str = typer.Argument(..., help="Approval step (or the phase it gates)"),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who approves"),
    comments: str = typer.Option("", "--comments", "-m", help="Comments recorded with the decision"),
    no_resume: bool = typer.Option(False, "--no-resume", help="Record the approval without resuming"),
) -> None:
    """Approve a phase and resume orchestration."""
    from taskforge.approvals import ApprovalService
    from taskforge.errors import OrchestrationError
    from taskforge.task_store import TaskStoreError

    config = get_config_or_exit()
    coordinator = build_coordinator(config)
    service = ApprovalService(coordinator.store, coordinator.events, coordinator.notifier, coordinator)
    try:
        outcome = service.approve(task_id, phase, actor, comments, resume=not no_resume)
    except (OrchestrationError, TaskStoreError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Approved:[/green] {phase}")
    if outcome is not None:
        _print_outcome(outcome)


@app.command()
def reject(
    task_id: str = typer.Argument(..., help="Task waiting on approval"),
    phase: str = typer.Argument(..., help="Approval step (or the phase it gates)"),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who rejects"),
    comments: str = typer.Option("", "--comments", "-m", help="Reason for the rejection"),
) -> None:
    """Reject a phase; the task is marked failed."""
    from taskforge.approvals import ApprovalService
    from taskforge.errors import OrchestrationError
    from taskforge.task_store import TaskStoreError

    config = get_config_or_exit()
    store = get_store(config)
    service = ApprovalService(store, get_event_store(config))
    try:
        task = service.reject(task_id, phase, actor, comments)
    except (OrchestrationError, TaskStoreError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[yellow]Rejected:[/yellow] {phase}")
    console.print(f"Task status: {format_status(task.status)}")


@app.command()
def pause(
    task_id: str = typer.Argument(..., help="Task to pause"),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who pauses"),
) -> None:
    """Pause a task at the next phase boundary."""
    from taskforge.task_store import TaskStoreError

    store = get_store(get_config_or_exit())
    try:
        store.set_paused(task_id, actor, True)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[yellow]Pause requested for {task_id}[/yellow]")
    console.print("[dim]The running phase finishes first.[/dim]")


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Task to resume"),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who resumes"),
    no_run: bool = typer.Option(False, "--no-run", help="Clear the pause flag without running"),
) -> None:
    """Clear the pause flag and continue orchestration."""
    from taskforge.task_store import TaskStoreError

    config = get_config_or_exit()
    store = get_store(config)
    try:
        store.set_paused(task_id, actor, False)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Resumed {task_id}[/green]")

    if not no_run:
        outcome = build_coordinator(config).orchestrate_task(task_id)
        _print_outcome(outcome)


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task to cancel"),
    actor: str = typer.Option("cli", "--actor", "-a", help="Who cancels"),
) -> None:
    """Request cancellation; honored at the next phase boundary."""
    from taskforge.task_store import TaskStoreError

    store = get_store(get_config_or_exit())
    try:
        store.request_cancel(task_id, actor)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[magenta]Cancellation requested for {task_id}[/magenta]")


# =========================================================================
# Event Log Commands
# =========================================================================


@app.command()
def events(
    task_id: str = typer.Argument(..., help="Task to show events for"),
    limit: int = typer.Option(30, "--limit", "-n", help="Number of most recent events to show"),
    stats: bool = typer.Option(False, "--stats", help="Show counts by event type instead"),
) -> None:
    """Show the event log for a task."""
    from rich.table import Table

    event_store = get_event_store(get_config_or_exit())

    if stats:
        statistics = event_store.get_statistics(task_id)
        table = Table(title=f"Event statistics for {task_id}", show_header=True, header_style="bold")
        table.add_column("Event", style="cyan")
        table.add_column("Count", justify="right")
        for event_type, count in sorted(statistics["events_by_type"].items()):
            table.add_row(event_type, str(count))
        console.print(table)
        console.print(
            f"Total: {statistics['total_events']} events, "
            f"recorded cost {format_cost(statistics['total_cost'])}"
        )
        return

    events_list = event_store.get_events(task_id)
    show_events(task_id, events_list[-limit:] if limit > 0 else events_list, console)


@app.command()
def verify(
    task_id: str = typer.Argument(..., help="Task whose event log to verify"),
) -> None:
    """Verify event log integrity (gaps, duplicates, checksums, payloads)."""
    config = get_config_or_exit()
    event_store = get_event_store(config)
    report = event_store.verify_integrity(task_id)

    if report.valid:
        console.print(f"[green]Event log OK[/green] ({report.event_count} events)")
    else:
        console.print(f"[red]Event log has {len(report.issues)} issue(s):[/red]")
        for issue in report.issues:
            console.print(f"  - {issue}")

    task = get_store(config).load(task_id)
    snapshot = event_store.get_current_state(task_id)
    for error in snapshot.integrity_errors:
        console.print(f"  [yellow]fold:[/yellow] {error}")
    if task is not None and abs(snapshot.total_cost - task.orchestration.total_cost) > 1e-6:
        console.print(
            f"[yellow]Recorded cost {format_cost(snapshot.total_cost)} differs from "
            f"task total {format_cost(task.orchestration.total_cost)}[/yellow]"
        )

    if not report.valid:
        raise typer.Exit(1)


@app.command()
def budget(
    task_id: str = typer.Argument(..., help="Task to show budget status for"),
) -> None:
    """Show spend against the task cost ceiling."""
    from taskforge.governance.budget import CostBudgetService

    config = get_config_or_exit()
    task = load_task_or_exit(get_store(config), task_id)
    service = CostBudgetService(config.budget)
    show_budget(task, service.get_budget_status(task), console)


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
