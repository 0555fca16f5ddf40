"""
Interfaces to the external collaborators of the orchestrator.

- VersionControl: branches, commits, pushes, diffs, merges, pull requests
- WorkspaceProvisioner: clones the selected repositories for a task
- Notifier: fire-and-forget progress notifications

Concrete adapters live in vcs.py, workspace.py and notifications.py;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from taskforge.errors import ErrorCategory, ErrorClassifier, OrchestrationError

if TYPE_CHECKING:
    from taskforge.models import Repository
    from taskforge.notifications import Notification


class VcsError(OrchestrationError):
    """A version-control operation failed; category comes from its output."""

    def __init__(self, message: str, stderr: str = "", category: Optional[ErrorCategory] = None) -> None:
        resolved = category or ErrorClassifier.classify_text(f"{message} {stderr}")
        super().__init__(message, category=resolved, recoverable=resolved.retryable)
        self.stderr = stderr


@dataclass(frozen=True)
class ChangedHunk:
    """
    A changed line range of one file, in merge-base coordinates.

    length is 0 for a pure insertion after line start.
    """
    path: str
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + max(self.length, 1) - 1

    def overlaps(self, other: ChangedHunk) -> bool:
        return self.path == other.path and self.start <= other.end and other.start <= self.end


@dataclass
class PullRequestInfo:
    """A pull request opened on the hosting provider."""
    number: int
    url: str


class VersionControl(Protocol):
    """Version-control operations on a cloned repository."""

    def create_branch(self, repo_path: Path, branch: str, base: str) -> None:
        """Create (or reuse) a local branch from base and check it out."""
        ...

    def checkout(self, repo_path: Path, branch: str) -> None:
        ...

    def commit_all(self, repo_path: Path, message: str) -> Optional[str]:
        """Stage and commit every change. Returns the commit sha, or None if clean."""
        ...

    def push(self, repo_path: Path, branch: str) -> None:
        ...

    def is_pushed(self, repo_path: Path, branch: str) -> bool:
        """True when the remote branch points at the local branch head."""
        ...

    def fetch(self, repo_path: Path, branch: str) -> None:
        ...

    def changed_file_count(self, repo_path: Path) -> int:
        """Files changed in the working tree and index, untracked included."""
        ...

    def diff_hunks(self, repo_path: Path, base: str, head: str) -> list[ChangedHunk]:
        """Hunks changed on head since its merge base with base."""
        ...

    def merge(self, repo_path: Path, source: str, target: str, prefer_source: bool = False) -> str:
        """Merge source into target. Returns the resulting sha."""
        ...

    def run_tests(self, repo_path: Path, command: str = "") -> tuple[bool, str]:
        """Run the test command. Returns (passed, output)."""
        ...

    def open_pull_request(
        self, repo_path: Path, head: str, base: str, title: str, body: str
    ) -> PullRequestInfo:
        ...


class WorkspaceProvisioner(Protocol):
    """Prepares an isolated directory holding the task's repositories."""

    def provision(self, task_id: str, repositories: list[Repository]) -> Path:
        """Clone exactly the given repositories. Returns the workspace root."""
        ...


class Notifier(Protocol):
    """Receives progress notifications. Must not raise."""

    def notify(self, notification: Notification) -> None:
        ...
