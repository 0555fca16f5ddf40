"""
Per-task orchestration context.

OrchestrationContext is the blackboard passed by reference to every phase
call: repositories, workspace path, credential, accumulated phase outputs
under named ContextKey entries, a branch registry and conversation
history. It is built once per orchestration run by the coordinator; there
is no global instance.

Writes happen-before the next phase's reads because phases run one at a
time. Within TeamExecution, epic threads share the context, so mutations
go through the context lock.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

from taskforge.models import Repository, Task, utc_now

if TYPE_CHECKING:
    from taskforge.credentials import ApiCredential
    from taskforge.logger import TaskLogger


class ContextKey(Enum):
    """Named slots for data shared between phases."""
    REQUIREMENTS = "requirements"
    BREAKDOWN = "breakdown"
    ARCHITECTURE = "architecture"              # epic_id -> notes
    INTEGRATION_RESULTS = "integration_results"  # epic_id -> qa output
    INTEGRATION_ERRORS = "integration_errors"  # recoverable failures for the fixer
    FIX_SUMMARY = "fix_summary"
    MERGE_RESULTS = "merge_results"            # epic_id -> merge decision
    WARNINGS = "warnings"


@dataclass
class BranchInfo:
    """A branch created during orchestration."""
    name: str
    branch_type: str                 # epic, story
    repository: str
    epic_id: str
    story_id: Optional[str] = None
    pushed: bool = False
    merged: bool = False
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BranchInfo:
        return cls(**data)


@dataclass
class OrchestrationContext:
    """Mutable state shared by the phases of one orchestration run."""

    task: Task
    repositories: list[Repository]
    workspace_path: Path
    credential: ApiCredential
    shared: dict[ContextKey, Any] = field(default_factory=dict)
    phase_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    branches: dict[str, BranchInfo] = field(default_factory=dict)
    compactions: int = 0
    logger: Optional[TaskLogger] = field(default=None, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def task_id(self) -> str:
        return self.task.id

    # Shared data

    def get(self, key: ContextKey, default: Any = None) -> Any:
        with self.lock:
            return self.shared.get(key, default)

    def set(self, key: ContextKey, value: Any) -> None:
        with self.lock:
            self.shared[key] = value

    def update_entry(self, key: ContextKey, entry_key: str, value: Any) -> None:
        """Set one entry of a dict-valued slot."""
        with self.lock:
            self.shared.setdefault(key, {})[entry_key] = value

    def add_warning(self, message: str) -> None:
        with self.lock:
            self.shared.setdefault(ContextKey.WARNINGS, []).append(message)

    # Repositories

    def get_repository(self, name: str) -> Optional[Repository]:
        for repo in self.repositories:
            if repo.name == name or repo.id == name:
                return repo
        return None

    def repository_names(self) -> list[str]:
        return [repo.name for repo in self.repositories]

    def repo_path(self, name: str) -> Path:
        repo = self.get_repository(name)
        return self.workspace_path / (repo.name if repo else name)

    # Phase results and conversation

    def record_phase_result(self, phase: str, summary: dict[str, Any]) -> None:
        with self.lock:
            self.phase_results[phase] = summary

    def add_conversation(self, role: str, content: str, phase: Optional[str] = None) -> None:
        with self.lock:
            self.conversation_history.append({
                "role": role,
                "phase": phase,
                "content": content,
                "timestamp": utc_now(),
            })

    # Branch registry

    def register_branch(
        self,
        name: str,
        branch_type: str,
        repository: str,
        epic_id: str,
        story_id: Optional[str] = None,
    ) -> BranchInfo:
        with self.lock:
            info = self.branches.get(name)
            if info is None:
                info = BranchInfo(name, branch_type, repository, epic_id, story_id)
                self.branches[name] = info
            return info

    def mark_branch_pushed(self, name: str) -> None:
        with self.lock:
            if name in self.branches:
                self.branches[name].pushed = True

    def mark_branch_merged(self, name: str) -> None:
        with self.lock:
            if name in self.branches:
                self.branches[name].merged = True

    def branches_for_epic(self, epic_id: str) -> list[BranchInfo]:
        return [b for b in self.branches.values() if b.epic_id == epic_id]

    def branches_for_repository(self, repository: str) -> list[BranchInfo]:
        return [b for b in self.branches.values() if b.repository == repository]

    # Checkpoint

    def to_checkpoint(self) -> dict[str, Any]:
        """Serialize shared data, phase results and branches."""
        with self.lock:
            return {
                "shared": {key.value: value for key, value in self.shared.items()},
                "phase_results": dict(self.phase_results),
                "branches": {name: b.to_dict() for name, b in self.branches.items()},
                "conversation_history": list(self.conversation_history),
                "compactions": self.compactions,
                "saved_at": utc_now(),
            }

    def restore_checkpoint(self, data: Optional[dict[str, Any]]) -> None:
        """Restore state written by to_checkpoint(); unknown keys are ignored."""
        if not data:
            return
        with self.lock:
            for raw_key, value in data.get("shared", {}).items():
                try:
                    self.shared[ContextKey(raw_key)] = value
                except ValueError:
                    continue
            self.phase_results.update(data.get("phase_results", {}))
            for name, branch in data.get("branches", {}).items():
                self.branches[name] = BranchInfo.from_dict(branch)
            self.conversation_history = list(data.get("conversation_history", []))
            self.compactions = data.get("compactions", 0)

    def save_checkpoint(self) -> None:
        """Store the checkpoint on the task (caller persists the task)."""
        self.task.orchestration.checkpoint = self.to_checkpoint()


class ContextCompactor:
    """
    Keeps the context bounded between phases.

    When conversation history passes the threshold, older entries are
    folded into a single summary entry and only the most recent ones are
    kept verbatim. Raw outputs of earlier phase results are dropped.
    """

    def __init__(self, history_threshold: int = 40, keep_recent: int = 10) -> None:
        self.history_threshold = history_threshold
        self.keep_recent = keep_recent

    def should_compact(self, context: OrchestrationContext) -> bool:
        return (
            len(context.conversation_history) > self.history_threshold
            or len(context.phase_results) > self.history_threshold
        )

    def compact(self, context: OrchestrationContext) -> int:
        """
        Compact the context in place.

        Returns:
            Number of conversation entries folded into the summary.
        """
        with context.lock:
            history = context.conversation_history
            if len(history) <= self.keep_recent:
                return 0

            older = history[:-self.keep_recent] if self.keep_recent else list(history)
            recent = history[-self.keep_recent:] if self.keep_recent else []
            context.conversation_history = [self._summarize(older)] + recent

            for summary in context.phase_results.values():
                summary.pop("output", None)

            context.compactions += 1
            return len(older)

    @staticmethod
    def _summarize(entries: list[dict[str, Any]]) -> dict[str, Any]:
        by_phase: dict[str, int] = {}
        for entry in entries:
            phase = entry.get("phase") or "unknown"
            by_phase[phase] = by_phase.get(phase, 0) + 1
        lines = [f"{phase}: {count} message(s)" for phase, count in by_phase.items()]
        return {
            "role": "summary",
            "phase": None,
            "content": "Compacted earlier conversation.\n" + "\n".join(lines),
            "timestamp": utc_now(),
        }

    def iter_recent(self, context: OrchestrationContext) -> Iterator[dict[str, Any]]:
        yield from context.conversation_history[-self.keep_recent:]
