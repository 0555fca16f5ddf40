"""
Deterministic fakes for the orchestrator's external boundaries.

- ScriptedExecutor: queued outputs per agent role, optional synthetic
  tool-event streams and workspace edits
- InMemoryVcs: branches as sets of changed hunks; merges, pushes and
  pull requests recorded in memory
- RecordingNotifier: keeps every notification
- StaticProvisioner: creates the workspace directory, clones nothing
"""

from __future__ import annotations

import json
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from taskforge.agents.executor import (
    AgentExecutionResult,
    AgentRequest,
    AgentRole,
    AgentStreamEvent,
)
from taskforge.boundaries import ChangedHunk, PullRequestInfo, VcsError
from taskforge.models import Repository, TokenUsage
from taskforge.notifications import Notification, NotificationType


# ============================================================================
# Agent executor
# ============================================================================


@dataclass
class ScriptedRun:
    """
    One scripted agent execution.

    events are delivered to on_event in order (the callback may raise to
    cancel); edits are (path, start, length) hunks written to the working
    tree of the request's workspace before the result is returned.
    """
    output: Any = None
    events: list[AgentStreamEvent] = field(default_factory=list)
    edits: list[tuple[str, int, int]] = field(default_factory=list)
    cost_usd: float = 0.01
    input_tokens: int = 100
    output_tokens: int = 50
    raises: Optional[BaseException] = None


Script = Union[ScriptedRun, dict, str, BaseException, Callable[[AgentRequest], Any]]


def tool_events(*tools: str, start_turn: int = 1) -> list[AgentStreamEvent]:
    """One tool_use event per turn, e.g. tool_events("Read", "Read", "Write")."""
    return [
        AgentStreamEvent(
            kind="tool_use",
            turn=start_turn + i,
            tool_name=tool,
            data={"file_path": f"src/file_{i}.py"} if tool in ("Write", "Edit") else {},
        )
        for i, tool in enumerate(tools)
    ]


class ScriptedExecutor:
    """Agent executor returning queued outputs per role."""

    def __init__(self, vcs: Optional[InMemoryVcs] = None) -> None:
        self.vcs = vcs
        self.queues: dict[AgentRole, deque[Script]] = defaultdict(deque)
        self.defaults: dict[AgentRole, Script] = {}
        self.requests: list[AgentRequest] = []
        self._lock = threading.Lock()

    def queue(self, role: AgentRole, *scripts: Script) -> ScriptedExecutor:
        self.queues[role].extend(scripts)
        return self

    def set_default(self, role: AgentRole, script: Script) -> ScriptedExecutor:
        self.defaults[role] = script
        return self

    def calls_for(self, role: AgentRole) -> list[AgentRequest]:
        return [r for r in self.requests if r.role == role]

    def _next(self, role: AgentRole) -> Script:
        with self._lock:
            if self.queues[role]:
                return self.queues[role].popleft()
            if role in self.defaults:
                return self.defaults[role]
        raise AssertionError(f"no scripted output left for {role.value}")

    def execute(self, request: AgentRequest, on_event=None) -> AgentExecutionResult:
        with self._lock:
            self.requests.append(request)
        script = self._next(request.role)

        if callable(script) and not isinstance(script, (ScriptedRun, BaseException)):
            script = script(request)
        if isinstance(script, BaseException):
            raise script
        if not isinstance(script, ScriptedRun):
            script = ScriptedRun(output=script)

        if on_event is not None:
            for event in script.events:
                on_event(event)
        if script.raises is not None:
            raise script.raises

        if self.vcs is not None:
            for path, start, length in script.edits:
                self.vcs.write(Path(request.workspace_path), path, start, length)

        output = script.output
        text = output if isinstance(output, str) else json.dumps(output)
        return AgentExecutionResult(
            output_text=text,
            usage=TokenUsage(input_tokens=script.input_tokens, output_tokens=script.output_tokens),
            cost_usd=script.cost_usd,
            num_turns=len(script.events),
        )


# ============================================================================
# Version control
# ============================================================================


class InMemoryVcs:
    """
    Version control over hunk sets.

    Every branch is the set of hunks changed since an empty root; a diff is
    a set difference. The working tree of a repository holds uncommitted
    hunks until commit_all.
    """

    def __init__(self, base_branch: str = "main") -> None:
        self.base_branch = base_branch
        self.branches: dict[tuple[str, str], list[ChangedHunk]] = {}
        self.current: dict[str, str] = {}
        self.working: dict[str, list[ChangedHunk]] = defaultdict(list)
        self.pushed: dict[tuple[str, str], int] = {}
        self.unverifiable_pushes: set[str] = set()
        self.tests_pass = True
        self.test_output = "all tests passed"
        self.fail_fetch = False
        self.fail_pull_request = False
        self.pull_request_stderr = "HTTP 422: Validation Failed"
        self.pull_requests: list[dict[str, Any]] = []
        self.merges: list[tuple[str, str, bool]] = []
        self.commits: list[tuple[str, str, str]] = []
        self._sha = 0
        self._lock = threading.RLock()

    # Test helpers

    def _hunks(self, repo_path: Path, branch: str) -> list[ChangedHunk]:
        key = (str(repo_path), branch)
        if key not in self.branches and branch == self.base_branch:
            self.branches[key] = []
        if key not in self.branches:
            raise VcsError(f"unknown branch {branch}", stderr=f"fatal: invalid reference: {branch}")
        return self.branches[key]

    def write(self, repo_path: Path, path: str, start: int = 1, length: int = 1) -> None:
        with self._lock:
            self.working[str(repo_path)].append(ChangedHunk(path, start, length))

    def add_commit(self, repo_path: Path, branch: str, path: str, start: int = 1, length: int = 1) -> None:
        """Record a change made on a branch by someone else."""
        with self._lock:
            hunks = self.branches.setdefault((str(repo_path), branch), [])
            hunks.append(ChangedHunk(path, start, length))

    def branch_names(self, repo_path: Path) -> list[str]:
        return sorted(b for r, b in self.branches if r == str(repo_path))

    def _next_sha(self) -> str:
        self._sha += 1
        return f"{self._sha:040x}"

    # VersionControl

    def create_branch(self, repo_path: Path, branch: str, base: str) -> None:
        with self._lock:
            key = (str(repo_path), branch)
            if key not in self.branches:
                self.branches[key] = list(self._hunks(repo_path, base))
            self.current[str(repo_path)] = branch

    def checkout(self, repo_path: Path, branch: str) -> None:
        with self._lock:
            self._hunks(repo_path, branch)
            self.current[str(repo_path)] = branch

    def commit_all(self, repo_path: Path, message: str) -> Optional[str]:
        with self._lock:
            pending = self.working.pop(str(repo_path), [])
            if not pending:
                return None
            branch = self.current.get(str(repo_path), self.base_branch)
            self._hunks(repo_path, branch).extend(pending)
            sha = self._next_sha()
            self.commits.append((branch, message, sha))
            return sha

    def push(self, repo_path: Path, branch: str) -> None:
        with self._lock:
            self.pushed[(str(repo_path), branch)] = len(self._hunks(repo_path, branch))

    def is_pushed(self, repo_path: Path, branch: str) -> bool:
        with self._lock:
            if branch in self.unverifiable_pushes:
                return False
            return self.pushed.get((str(repo_path), branch)) == len(self._hunks(repo_path, branch))

    def fetch(self, repo_path: Path, branch: str) -> None:
        if self.fail_fetch:
            raise VcsError(f"fetch of {branch} failed", stderr="fatal: unable to access remote")

    def changed_file_count(self, repo_path: Path) -> int:
        with self._lock:
            return len({h.path for h in self.working.get(str(repo_path), [])})

    def diff_hunks(self, repo_path: Path, base: str, head: str) -> list[ChangedHunk]:
        with self._lock:
            base_hunks = set(self._hunks(repo_path, base))
            return [h for h in self._hunks(repo_path, head) if h not in base_hunks]

    def merge(self, repo_path: Path, source: str, target: str, prefer_source: bool = False) -> str:
        with self._lock:
            target_hunks = self._hunks(repo_path, target)
            for hunk in self._hunks(repo_path, source):
                if hunk not in target_hunks:
                    target_hunks.append(hunk)
            self.merges.append((source, target, prefer_source))
            self.current[str(repo_path)] = target
            return self._next_sha()

    def run_tests(self, repo_path: Path, command: str = "") -> tuple[bool, str]:
        return self.tests_pass, self.test_output

    def open_pull_request(
        self, repo_path: Path, head: str, base: str, title: str, body: str
    ) -> PullRequestInfo:
        with self._lock:
            if self.fail_pull_request:
                raise VcsError("gh pr create failed", stderr=self.pull_request_stderr)
            number = len(self.pull_requests) + 1
            url = f"https://github.example/org/repo/pull/{number}"
            self.pull_requests.append({
                "number": number, "url": url, "head": head, "base": base, "title": title,
            })
            return PullRequestInfo(number=number, url=url)


# ============================================================================
# Notifications and workspace
# ============================================================================


class RecordingNotifier:
    """Keeps every notification it receives."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []
        self._lock = threading.Lock()

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self.notifications.append(notification)

    def of_type(self, notification_type: NotificationType) -> list[Notification]:
        return [n for n in self.notifications if n.type == notification_type]


class StaticProvisioner:
    """Creates <root>/<task_id> and records which repositories were requested."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.provisioned: list[tuple[str, list[str]]] = []

    def provision(self, task_id: str, repositories: list[Repository]) -> Path:
        workspace = self.root / task_id
        workspace.mkdir(parents=True, exist_ok=True)
        self.provisioned.append((task_id, [r.name for r in repositories]))
        return workspace


# ============================================================================
# Canned agent outputs
# ============================================================================


def requirements_output(repositories: list[str]) -> dict[str, Any]:
    return {
        "summary": "Add a health endpoint",
        "requirements": ["GET /health returns 200"],
        "acceptance_criteria": ["endpoint covered by a test"],
        "affected_repositories": repositories,
    }


def story(story_id: str, modify: Optional[list[str]] = None, create: Optional[list[str]] = None,
          complexity: str = "medium", dependencies: Optional[list[str]] = None) -> dict[str, Any]:
    return {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": f"Implement {story_id}",
        "files_to_read": [],
        "files_to_modify": modify or [],
        "files_to_create": create or [],
        "complexity": complexity,
        "dependencies": dependencies or [],
    }


def epic(epic_id: str, repository: str, stories: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "id": epic_id,
        "title": f"Epic {epic_id}",
        "description": f"Deliver {epic_id}",
        "target_repository": repository,
        "stories": stories,
    }


def breakdown_output(*epics: dict[str, Any]) -> dict[str, Any]:
    return {"epics": list(epics)}


ARCHITECTURE_OUTPUT = {"architecture_notes": "Keep handlers thin.", "shared_contracts": ["GET /health"]}
APPROVED_REVIEW = {"verdict": "approved", "comments": "looks good"}
PASSING_QA = {"passed": True, "failures": []}


def developer_run(path: str, start: int = 1, length: int = 3, cost_usd: float = 0.05) -> ScriptedRun:
    """A developer execution that edits one file."""
    return ScriptedRun(
        output="done",
        events=tool_events("Read", "Write"),
        edits=[(path, start, length)],
        cost_usd=cost_usd,
    )
