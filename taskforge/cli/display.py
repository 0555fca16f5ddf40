"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for task status, phase steps, costs and
event listings. This module should NOT import from app.py to avoid circular imports.
"""
from __future__ import annotations

from typing import Any, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from taskforge.events.types import TaskEvent
from taskforge.models import StepStatus, StoryStatus, Task, TaskStatus

# Task status display names and colors
STATUS_DISPLAY: dict[TaskStatus, tuple[str, str]] = {
    TaskStatus.PENDING: ("Pending", "dim"),
    TaskStatus.IN_PROGRESS: ("In Progress", "cyan bold"),
    TaskStatus.COMPLETED: ("Completed", "green bold"),
    TaskStatus.FAILED: ("Failed", "red bold"),
    TaskStatus.CANCELLED: ("Cancelled", "magenta"),
}

# Phase step display names and colors
STEP_DISPLAY: dict[StepStatus, tuple[str, str]] = {
    StepStatus.PENDING: ("Pending", "dim"),
    StepStatus.IN_PROGRESS: ("Running", "cyan bold"),
    StepStatus.COMPLETED: ("Done", "green"),
    StepStatus.FAILED: ("Failed", "red"),
    StepStatus.SKIPPED: ("Skipped", "magenta"),
    StepStatus.AWAITING_APPROVAL: ("Needs Approval", "yellow bold"),
}

STORY_DISPLAY: dict[StoryStatus, tuple[str, str]] = {
    StoryStatus.PENDING: ("Pending", "dim"),
    StoryStatus.IN_PROGRESS: ("In Progress", "cyan"),
    StoryStatus.COMPLETED: ("Done", "green"),
    StoryStatus.FAILED: ("Failed", "red"),
}

BUDGET_STYLES = {
    "healthy": "green",
    "warning": "yellow",
    "critical": "red",
    "exceeded": "red bold",
}


def format_status(status: TaskStatus) -> Text:
    """Format a task status as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_step(status: StepStatus) -> Text:
    display_name, style = STEP_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_story(status: StoryStatus) -> Text:
    display_name, style = STORY_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_cost(cost_usd: float) -> str:
    """Format cost as a string with dollar sign."""
    if cost_usd == 0:
        return "-"
    return f"${cost_usd:.2f}"


def awaiting_approval(task: Task) -> list[str]:
    """Names of steps currently waiting on a human."""
    return [
        name for name, step in task.orchestration.steps.items()
        if step.status == StepStatus.AWAITING_APPROVAL
    ]


def show_all_tasks(tasks: Iterable[Task], console: Console) -> None:
    """Print a table of every task."""
    tasks = list(tasks)
    if not tasks:
        console.print("[dim]No tasks found.[/dim]")
        return

    table = Table(title="Tasks", show_header=True, header_style="bold")
    table.add_column("Task", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Phase", style="dim")
    table.add_column("Cost", justify="right")

    for task in tasks:
        table.add_row(
            task.id,
            task.title,
            format_status(task.status),
            task.orchestration.current_phase or "-",
            format_cost(task.orchestration.total_cost),
        )
    console.print(table)


def show_task_detail(task: Task, console: Console) -> None:
    """Print one task: steps, epics with their stories, team and pending approvals."""
    orch = task.orchestration
    header = Text.assemble(
        (f"{task.title}\n", "bold"),
        ("Status: ", "dim"), format_status(task.status),
        ("   Cost: ", "dim"), format_cost(orch.total_cost),
        ("   Tokens: ", "dim"), f"{orch.total_tokens:,}",
    )
    console.print(Panel(header, title=task.id, expand=False))

    if task.error:
        console.print(f"[red]Error:[/red] {task.error}")
    if orch.paused.active:
        console.print(f"[yellow]Paused by {orch.paused.actor}[/yellow]")
    if orch.cancel_requested.active:
        console.print(f"[magenta]Cancellation requested by {orch.cancel_requested.actor}[/magenta]")
    if orch.continuation:
        console.print(f"[cyan]Full re-run[/cyan] ({format_cost(orch.carried_cost)} carried from earlier runs)")

    if orch.steps:
        steps = Table(title="Phases", show_header=True, header_style="bold")
        steps.add_column("Phase", style="cyan")
        steps.add_column("Status")
        steps.add_column("Attempts", justify="right")
        steps.add_column("Cost", justify="right")
        steps.add_column("Error", style="red")
        for name, step in orch.steps.items():
            steps.add_row(
                name,
                format_step(step.status),
                str(step.attempts),
                format_cost(step.cost_usd),
                (step.error or "")[:60],
            )
        console.print(steps)

    for epic in orch.epics:
        table = Table(
            title=f"{epic.id}: {epic.title} ({epic.target_repository})",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Story", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Assignee", style="dim")
        table.add_column("Review")
        for story in epic.stories:
            table.add_row(
                story.id,
                story.title,
                format_story(story.status),
                story.assignee or "-",
                story.review_verdict or "-",
            )
        console.print(table)
        if epic.pull_request:
            merged = "merged" if epic.pull_request.merged else "open"
            console.print(f"  PR #{epic.pull_request.number} ({merged}): {epic.pull_request.url}")

    if orch.team:
        team = Table(title="Team", show_header=True, header_style="bold")
        team.add_column("Developer", style="cyan")
        team.add_column("Role")
        team.add_column("Status")
        team.add_column("Stories", justify="right")
        team.add_column("Cost", justify="right")
        for member in orch.team:
            team.add_row(
                member.id,
                member.role.value,
                member.status.value,
                str(len(member.story_ids)),
                format_cost(member.cost_usd),
            )
        console.print(team)

    pending = awaiting_approval(task)
    if pending:
        console.print("\n[cyan]Next step:[/cyan] approve or reject with:")
        for name in pending:
            console.print(f"  [cyan]taskforge approve {task.id} {name}[/cyan]")


def show_events(task_id: str, events: list[TaskEvent], console: Console) -> None:
    """Print an event timeline."""
    if not events:
        console.print(f"[dim]No events found for task '{task_id}'[/dim]")
        return

    table = Table(title=f"Events for {task_id}", show_header=True, header_style="bold")
    table.add_column("Ver", justify="right", style="dim")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Event", style="cyan")
    table.add_column("Agent")
    table.add_column("Details")

    for event in events:
        details_parts = []
        for key, value in event.payload.items():
            if isinstance(value, list):
                details_parts.append(f"{key}={len(value)}")
            elif isinstance(value, str) and len(value) > 40:
                details_parts.append(f"{key}={value[:40]}...")
            else:
                details_parts.append(f"{key}={value}")
        table.add_row(
            str(event.version),
            event.timestamp[:19].replace("T", " "),
            event.event_type.value,
            event.agent_name,
            ", ".join(details_parts[:3]),
        )
    console.print(table)


def show_budget(task: Task, status: dict[str, Any], console: Console) -> None:
    style = BUDGET_STYLES.get(status["status"], "white")
    table = Table(title=f"Budget for {task.id}", show_header=False)
    table.add_column("Field", style="dim")
    table.add_column("Value")
    table.add_row("Status", Text(status["status"], style=style))
    table.add_row("Used", f"${status['used']:.4f}")
    table.add_row("Limit", f"${status['limit']:.2f}")
    table.add_row("Used %", f"{status['percentage']:.1f}%")
    table.add_row("Remaining", f"${status['remaining']:.4f}")
    console.print(table)
