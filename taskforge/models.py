"""
Core data models for Taskforge.

This module defines the foundational data structures used throughout the system:
- Enums for task, phase-step, story and team-member status
- Dataclasses for the Task aggregate and its orchestration sub-record
- JSON serialization support for all models

Status enums serialize by value, so persisted documents read naturally
("in_progress", "awaiting_approval").
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class TaskStatus(Enum):
    """Lifecycle status of a Task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class StepStatus(Enum):
    """Status of one phase step within a task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_APPROVAL = "awaiting_approval"


class StoryStatus(Enum):
    """Status of a Story."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class DeveloperRole(Enum):
    """Seniority of a developer instance."""
    SENIOR = "senior"
    JUNIOR = "junior"


class MemberStatus(Enum):
    """Status of a team member."""
    IDLE = "idle"
    WORKING = "working"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    BLOCKED = "blocked"


@dataclass
class TokenUsage:
    """Token counts reported by agent executions."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        """Accumulate another usage record in place."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> TokenUsage:
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
        )


@dataclass
class PhaseStep:
    """
    Persisted record of one phase's execution for a task.

    Raw agent output is stored redacted.
    """
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    output: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["usage"] = self.usage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseStep:
        data = data.copy()
        data["status"] = StepStatus(data.get("status", "pending"))
        data["usage"] = TokenUsage.from_dict(data.get("usage"))
        return cls(**data)


@dataclass
class PullRequestRef:
    """Reference to a pull request opened for an epic."""
    number: int
    url: str
    branch: str
    repository: str
    epic_id: str
    merged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullRequestRef:
        return cls(**data)


@dataclass
class Story:
    """
    Smallest schedulable unit of developer work.

    Bound to explicit file lists; belongs to exactly one Epic.
    """
    id: str
    epic_id: str
    title: str
    description: str = ""
    files_to_read: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    complexity: str = "medium"       # simple, medium, complex, very_complex
    dependencies: list[str] = field(default_factory=list)
    status: StoryStatus = StoryStatus.PENDING
    assignee: Optional[str] = None   # TeamMember id, fixed once in progress
    branch: Optional[str] = None
    review_verdict: Optional[str] = None  # approved, changes_requested
    review_comments: str = ""
    push_verified: bool = False
    attempts: int = 0
    error: Optional[str] = None
    failure_category: Optional[str] = None  # ErrorCategory value of the last failure

    @property
    def owned_files(self) -> list[str]:
        """Files this story writes (modify + create)."""
        return list(self.files_to_modify) + list(self.files_to_create)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Story:
        data = data.copy()
        data["status"] = StoryStatus(data.get("status", "pending"))
        return cls(**data)


@dataclass
class Epic:
    """
    A unit of work targeting exactly one repository.

    Naming conventions and contracts are shared by all of its stories.
    """
    id: str
    title: str
    target_repository: str
    description: str = ""
    naming_conventions: dict[str, str] = field(default_factory=dict)
    contracts: list[str] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)
    branch: Optional[str] = None
    architecture_notes: str = ""
    pull_request: Optional[PullRequestRef] = None
    merged: bool = False

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def stories_with_status(self, status: StoryStatus) -> list[Story]:
        return [s for s in self.stories if s.status == status]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stories"] = [s.to_dict() for s in self.stories]
        data["pull_request"] = self.pull_request.to_dict() if self.pull_request else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Epic:
        data = data.copy()
        data["stories"] = [Story.from_dict(s) for s in data.get("stories", [])]
        if data.get("pull_request") is not None:
            data["pull_request"] = PullRequestRef.from_dict(data["pull_request"])
        return cls(**data)


@dataclass
class TeamMember:
    """A developer-role instance with its assigned stories and spend."""
    id: str
    role: DeveloperRole
    epic_id: str
    status: MemberStatus = MemberStatus.IDLE
    story_ids: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    pull_requests: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["status"] = self.status.value
        data["usage"] = self.usage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamMember:
        data = data.copy()
        data["role"] = DeveloperRole(data["role"])
        data["status"] = MemberStatus(data.get("status", "idle"))
        data["usage"] = TokenUsage.from_dict(data.get("usage"))
        return cls(**data)


@dataclass
class ControlFlag:
    """A cooperative control flag (pause / cancel) with who set it and when."""
    active: bool = False
    actor: Optional[str] = None
    timestamp: Optional[str] = None

    def set(self, actor: str, active: bool = True) -> None:
        self.active = active
        self.actor = actor
        self.timestamp = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> ControlFlag:
        return cls(**(data or {}))


@dataclass
class ApprovalRecord:
    """One entry of the append-only approval history."""
    phase: str
    decision: str                    # approved, rejected
    actor: str                       # user id, or "auto"
    timestamp: str = field(default_factory=utc_now)
    comments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRecord:
        return cls(**data)


@dataclass
class Repository:
    """A source repository registered for a user."""
    id: str
    name: str
    owner_id: str
    clone_url: str
    repo_type: Optional[str] = None  # e.g. backend, frontend, library
    default_branch: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Repository:
        return cls(**data)


@dataclass
class OrchestrationState:
    """
    Orchestration sub-record of a Task.

    Mutated only by phases and the coordinator; persisted write-through.
    """
    current_phase: Optional[str] = None
    steps: dict[str, PhaseStep] = field(default_factory=dict)
    team: list[TeamMember] = field(default_factory=list)
    epics: list[Epic] = field(default_factory=list)
    paused: ControlFlag = field(default_factory=ControlFlag)
    cancel_requested: ControlFlag = field(default_factory=ControlFlag)
    total_cost: float = 0.0
    total_tokens: int = 0
    auto_approval_enabled: bool = False
    auto_approval_phases: list[str] = field(default_factory=list)
    approval_history: list[ApprovalRecord] = field(default_factory=list)
    continuation: bool = False
    approval_baseline: int = 0  # approval_history entries before this belong to earlier runs
    carried_cost: float = 0.0
    carried_tokens: int = 0
    checkpoint: dict[str, Any] = field(default_factory=dict)

    def get_step(self, name: str) -> PhaseStep:
        """Get the step record for a phase, creating a pending one if absent."""
        if name not in self.steps:
            self.steps[name] = PhaseStep(name=name)
        return self.steps[name]

    def in_progress_steps(self) -> list[PhaseStep]:
        return [s for s in self.steps.values() if s.status == StepStatus.IN_PROGRESS]

    def get_epic(self, epic_id: str) -> Optional[Epic]:
        for epic in self.epics:
            if epic.id == epic_id:
                return epic
        return None

    def get_member(self, member_id: str) -> Optional[TeamMember]:
        for member in self.team:
            if member.id == member_id:
                return member
        return None

    def all_stories(self) -> list[Story]:
        return [story for epic in self.epics for story in epic.stories]

    def latest_decision(self, phase: str) -> Optional[ApprovalRecord]:
        """Most recent decision on a phase in the current run."""
        for record in reversed(self.approval_history[self.approval_baseline:]):
            if record.phase == phase:
                return record
        return None

    def start_continuation(self) -> None:
        """
        Reset the pipeline for a full re-execution.

        Every step, epic and team member is dropped so each phase runs
        again. Spend so far is carried into the totals and earlier
        approvals stay in the history but no longer count.
        """
        self.carried_cost = self.total_cost
        self.carried_tokens = self.total_tokens
        self.steps = {}
        self.team = []
        self.epics = []
        self.checkpoint = {}
        self.current_phase = None
        self.approval_baseline = len(self.approval_history)
        self.continuation = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_phase": self.current_phase,
            "steps": {name: step.to_dict() for name, step in self.steps.items()},
            "team": [m.to_dict() for m in self.team],
            "epics": [e.to_dict() for e in self.epics],
            "paused": self.paused.to_dict(),
            "cancel_requested": self.cancel_requested.to_dict(),
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "auto_approval_enabled": self.auto_approval_enabled,
            "auto_approval_phases": list(self.auto_approval_phases),
            "approval_history": [a.to_dict() for a in self.approval_history],
            "continuation": self.continuation,
            "approval_baseline": self.approval_baseline,
            "carried_cost": self.carried_cost,
            "carried_tokens": self.carried_tokens,
            "checkpoint": self.checkpoint,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> OrchestrationState:
        data = data or {}
        return cls(
            current_phase=data.get("current_phase"),
            steps={
                name: PhaseStep.from_dict(step)
                for name, step in data.get("steps", {}).items()
            },
            team=[TeamMember.from_dict(m) for m in data.get("team", [])],
            epics=[Epic.from_dict(e) for e in data.get("epics", [])],
            paused=ControlFlag.from_dict(data.get("paused")),
            cancel_requested=ControlFlag.from_dict(data.get("cancel_requested")),
            total_cost=data.get("total_cost", 0.0),
            total_tokens=data.get("total_tokens", 0),
            auto_approval_enabled=data.get("auto_approval_enabled", False),
            auto_approval_phases=list(data.get("auto_approval_phases", [])),
            approval_history=[
                ApprovalRecord.from_dict(a) for a in data.get("approval_history", [])
            ],
            continuation=data.get("continuation", False),
            approval_baseline=data.get("approval_baseline", 0),
            carried_cost=data.get("carried_cost", 0.0),
            carried_tokens=data.get("carried_tokens", 0),
            checkpoint=data.get("checkpoint", {}),
        )


@dataclass
class Task:
    """
    Aggregate root of one orchestration run.

    Persisted to <state_dir>/tasks/<task_id>.json
    """
    id: str
    title: str
    owner_id: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    repository_ids: list[str] = field(default_factory=list)
    credential: Optional[str] = None  # Task/project specific API key
    orchestration: OrchestrationState = field(default_factory=OrchestrationState)
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None

    def __post_init__(self) -> None:
        """Set timestamps if not provided."""
        now = utc_now()
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = now

    def touch(self) -> None:
        self.updated_at = utc_now()

    def recompute_totals(self) -> tuple[float, int]:
        """
        Recompute total cost and tokens from usage records.

        Sums every phase step and every team member plus spend carried
        from earlier runs. Developer spend is recorded on the member only,
        so nothing is counted twice.

        Returns:
            Tuple of (total_cost, total_tokens).
        """
        orch = self.orchestration
        cost = orch.carried_cost + sum(step.cost_usd for step in orch.steps.values())
        tokens = orch.carried_tokens + sum(step.usage.total for step in orch.steps.values())
        cost += sum(member.cost_usd for member in orch.team)
        tokens += sum(member.usage.total for member in orch.team)
        orch.total_cost = round(cost, 6)
        orch.total_tokens = tokens
        return orch.total_cost, orch.total_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "owner_id": self.owner_id,
            "description": self.description,
            "status": self.status.value,
            "repository_ids": list(self.repository_ids),
            "credential": self.credential,
            "orchestration": self.orchestration.to_dict(),
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        data = data.copy()
        data["status"] = TaskStatus(data.get("status", "pending"))
        data["orchestration"] = OrchestrationState.from_dict(data.get("orchestration"))
        return cls(**data)


# JSON encoder for custom types
class ForgeEncoder(json.JSONEncoder):
    """JSON encoder that handles Taskforge model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=ForgeEncoder, **kwargs)


def model_from_json(json_str: str, model_class: type) -> Any:
    """Deserialize a JSON string to a model object."""
    data = json.loads(json_str)
    if hasattr(model_class, "from_dict"):
        return model_class.from_dict(data)
    return model_class(**data)
