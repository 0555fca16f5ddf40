"""Common utilities and global state for the CLI.

Contains config loading and construction of the stores and coordinator.
This module should NOT import from app.py to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from taskforge.config import ForgeConfig
    from taskforge.coordinator import OrchestrationCoordinator
    from taskforge.events.store import EventStore
    from taskforge.notifications import Notification
    from taskforge.task_store import TaskStore

# ============================================================================
# Global State
# ============================================================================

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Service Helpers
# ============================================================================


def get_config_or_exit() -> "ForgeConfig":
    """Load config (defaults when no config.yaml exists), exiting on errors."""
    from taskforge.config import ConfigError, get_config

    try:
        return get_config(get_config_path())
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def get_store(config: "ForgeConfig") -> "TaskStore":
    from taskforge.task_store import TaskStore

    return TaskStore(config)


def get_event_store(config: "ForgeConfig") -> "EventStore":
    from taskforge.events.store import EventStore

    return EventStore(config.events_path)


def print_notification(notification: "Notification") -> None:
    """Console handler for progress notifications."""
    from taskforge.notifications import NotificationType

    styles = {
        NotificationType.PHASE_STARTED: "cyan",
        NotificationType.PHASE_COMPLETED: "green",
        NotificationType.PHASE_FAILED: "red",
        NotificationType.APPROVAL_STATE_CHANGED: "yellow bold",
        NotificationType.TASK_COMPLETED: "green bold",
        NotificationType.TASK_FAILED: "red bold",
    }
    style = styles.get(notification.type, "dim")
    get_console().print(f"[{style}]{notification.message}[/{style}]")


def build_coordinator(config: "ForgeConfig", quiet: bool = False) -> "OrchestrationCoordinator":
    """Wire a coordinator whose notifications print to the console."""
    from taskforge.coordinator import OrchestrationCoordinator
    from taskforge.notifications import NotificationService

    notifier = NotificationService()
    if not quiet:
        notifier.subscribe_all(print_notification)
    return OrchestrationCoordinator(config, notifier=notifier)


def load_task_or_exit(store: "TaskStore", task_id: str):
    """Load a task, printing an error and exiting if it does not exist."""
    task = store.load(task_id)
    if task is None:
        get_console().print(f"[red]Error:[/red] Task '{task_id}' not found")
        raise typer.Exit(1)
    return task
