"""
Event types for the Taskforge event log.

Defines the TaskEvent record and the EventType enum covering every fact
the orchestration pipeline records. Events are immutable once appended;
their version is assigned by the EventStore.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from taskforge.models import utc_now


class EventType(Enum):
    """All event types recorded for a task."""

    # Phase lifecycle
    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"
    PHASE_FAILED = "phase.failed"
    PHASE_SKIPPED = "phase.skipped"

    # Approval gate
    APPROVAL_REQUESTED = "approval.requested"
    PHASE_APPROVED = "approval.approved"
    PHASE_REJECTED = "approval.rejected"

    # Planning
    REQUIREMENTS_COMPLETED = "requirements.completed"
    EPIC_CREATED = "epic.created"
    STORY_CREATED = "story.created"

    # Team execution
    EPIC_BRANCH_CREATED = "epic.branch_created"
    ARCHITECTURE_COMPLETED = "epic.architecture_completed"
    TEAM_COMPOSITION_DEFINED = "team.composition_defined"
    STORY_STARTED = "story.started"
    STORY_COMPLETED = "story.completed"
    STORY_PUSH_VERIFIED = "story.push_verified"
    STORY_FAILED = "story.failed"
    STORY_REVIEWED = "story.reviewed"
    DEVELOPERS_COMPLETED = "team.developers_completed"

    # Integration test / fixer
    INTEGRATION_TEST_COMPLETED = "qa.completed"
    FIX_APPLIED = "qa.fix_applied"

    # Pull requests and merge
    PR_CREATED = "pr.created"
    PR_MERGED = "pr.merged"
    MERGE_BLOCKED = "merge.blocked"

    # Governance
    BUDGET_WARNING = "budget.warning"

    # Task lifecycle
    TASK_STARTED = "task.started"
    TASK_CONTINUED = "task.continued"
    TASK_PAUSED = "task.paused"
    TASK_CANCELLED = "task.cancelled"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"


def payload_checksum(event_type: EventType, agent_name: str, payload: dict[str, Any]) -> str:
    """Stable short checksum over (type, agent, payload)."""
    canonical = json.dumps(
        {"type": event_type.value, "agent": agent_name, "payload": payload},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass
class TaskEvent:
    """A single immutable fact in a task's event log."""

    task_id: str
    event_type: EventType
    version: int
    agent_name: str = "orchestrator"
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    @property
    def cost(self) -> float:
        return float(self.metadata.get("cost", 0.0) or 0.0)

    @property
    def checksum(self) -> Optional[str]:
        return self.metadata.get("checksum")

    def compute_checksum(self) -> str:
        return payload_checksum(self.event_type, self.agent_name, self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskEvent:
        """Create from dict."""
        data = data.copy()  # Don't mutate input
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)

    def summary(self) -> str:
        """One-line summary used by event history listings."""
        payload = json.dumps(self.payload, default=str)
        if len(payload) > 60:
            payload = payload[:57] + "..."
        return f"{self.version}: {self.event_type.value} [{self.agent_name}] {payload}"

    def __str__(self) -> str:
        return f"[{self.timestamp}] v{self.version} {self.event_type.value} task={self.task_id}"
