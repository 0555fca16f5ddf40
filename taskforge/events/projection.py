"""
State projection for the Taskforge event log.

build_state() is a pure left-fold over a task's events in version order.
It never reads the clock or any external state, so folding the same
sequence twice yields equal snapshots.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Iterable, Optional

from taskforge.events.types import EventType, TaskEvent


@dataclass
class StoryProjection:
    """Story state derived from events."""
    id: str
    epic_id: str
    title: str
    target_repository: str
    status: str = "pending"
    assignee: Optional[str] = None
    branch: Optional[str] = None
    review_verdict: Optional[str] = None
    push_verified: bool = False
    commit_sha: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EpicProjection:
    """Epic state derived from events."""
    id: str
    title: str
    target_repository: str
    status: str = "pending"
    branch: Optional[str] = None
    architecture_completed: bool = False
    story_ids: list[str] = field(default_factory=list)
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    merged: bool = False


@dataclass
class TaskStateSnapshot:
    """Current state of a task reconstructed from its event log."""
    task_id: str = ""
    status: str = "pending"
    current_phase: Optional[str] = None
    completed_phases: list[str] = field(default_factory=list)
    failed_phases: list[str] = field(default_factory=list)
    approved_phases: list[str] = field(default_factory=list)
    rejected_phases: list[str] = field(default_factory=list)
    awaiting_approval: Optional[str] = None
    requirements_summary: Optional[str] = None
    epics: dict[str, EpicProjection] = field(default_factory=dict)
    stories: dict[str, StoryProjection] = field(default_factory=dict)
    team_composition: list[dict[str, Any]] = field(default_factory=list)
    developers_completed: bool = False
    total_cost: float = 0.0
    last_version: int = 0
    error: Optional[str] = None
    integrity_errors: list[str] = field(default_factory=list)

    def pull_requests(self) -> dict[str, dict[str, Any]]:
        """Pull-request associations keyed by epic id."""
        return {
            epic.id: {"number": epic.pr_number, "url": epic.pr_url, "merged": epic.merged}
            for epic in self.epics.values()
            if epic.pr_number is not None
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _add_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)


def _discard(items: list[str], value: str) -> None:
    if value in items:
        items.remove(value)


# Survive a continuation; everything else describes the previous run
_CARRIED_FIELDS = ("task_id", "total_cost", "last_version", "integrity_errors")


def _start_over(state: TaskStateSnapshot) -> None:
    fresh = TaskStateSnapshot()
    for f in fields(TaskStateSnapshot):
        if f.name not in _CARRIED_FIELDS:
            setattr(state, f.name, getattr(fresh, f.name))


def _refresh_epic_status(state: TaskStateSnapshot, epic_id: str) -> None:
    epic = state.epics.get(epic_id)
    if epic is None:
        return
    statuses = [state.stories[sid].status for sid in epic.story_ids if sid in state.stories]
    if statuses and all(s == "completed" for s in statuses):
        epic.status = "completed"
    elif any(s in ("in_progress", "completed") for s in statuses):
        epic.status = "in_progress"


def apply_event(state: TaskStateSnapshot, event: TaskEvent) -> TaskStateSnapshot:
    """Apply a single event to a snapshot in place and return it."""
    payload = event.payload
    etype = event.event_type

    state.total_cost = round(state.total_cost + event.cost, 6)
    state.last_version = event.version

    if etype == EventType.TASK_STARTED:
        if state.status == "pending":
            state.status = "in_progress"

    elif etype == EventType.TASK_CONTINUED:
        _start_over(state)

    elif etype == EventType.PHASE_STARTED:
        state.current_phase = payload["phase"]
        state.status = "in_progress"

    elif etype == EventType.PHASE_COMPLETED:
        _add_unique(state.completed_phases, payload["phase"])
        _discard(state.failed_phases, payload["phase"])

    elif etype == EventType.PHASE_SKIPPED:
        _add_unique(state.completed_phases, payload["phase"])

    elif etype == EventType.PHASE_FAILED:
        _add_unique(state.failed_phases, payload["phase"])
        _discard(state.completed_phases, payload["phase"])

    elif etype == EventType.APPROVAL_REQUESTED:
        state.awaiting_approval = payload["phase"]

    elif etype == EventType.PHASE_APPROVED:
        _add_unique(state.approved_phases, payload["phase"])
        if state.awaiting_approval == payload["phase"]:
            state.awaiting_approval = None

    elif etype == EventType.PHASE_REJECTED:
        _add_unique(state.rejected_phases, payload["phase"])
        if state.awaiting_approval == payload["phase"]:
            state.awaiting_approval = None

    elif etype == EventType.REQUIREMENTS_COMPLETED:
        state.requirements_summary = payload["summary"]

    elif etype == EventType.EPIC_CREATED:
        if not payload.get("target_repository"):
            state.integrity_errors.append(
                f"v{event.version}: epic {payload.get('id')} has no target_repository"
            )
        elif payload["id"] not in state.epics:
            state.epics[payload["id"]] = EpicProjection(
                id=payload["id"],
                title=payload["title"],
                target_repository=payload["target_repository"],
            )

    elif etype == EventType.STORY_CREATED:
        if not payload.get("target_repository"):
            state.integrity_errors.append(
                f"v{event.version}: story {payload.get('id')} has no target_repository"
            )
        elif payload["id"] not in state.stories:
            state.stories[payload["id"]] = StoryProjection(
                id=payload["id"],
                epic_id=payload["epic_id"],
                title=payload["title"],
                target_repository=payload["target_repository"],
            )
            epic = state.epics.get(payload["epic_id"])
            if epic is not None:
                _add_unique(epic.story_ids, payload["id"])

    elif etype == EventType.EPIC_BRANCH_CREATED:
        epic = state.epics.get(payload["epic_id"])
        if epic is not None:
            epic.branch = payload["branch"]

    elif etype == EventType.ARCHITECTURE_COMPLETED:
        epic = state.epics.get(payload["epic_id"])
        if epic is not None:
            epic.architecture_completed = True

    elif etype == EventType.TEAM_COMPOSITION_DEFINED:
        state.team_composition = list(payload["developers"])

    elif etype == EventType.STORY_STARTED:
        story = state.stories.get(payload["story_id"])
        if story is not None:
            if not story.push_verified:
                story.status = "in_progress"
            story.assignee = payload["developer_id"]
            story.branch = payload.get("branch") or story.branch
            _refresh_epic_status(state, story.epic_id)

    elif etype == EventType.STORY_COMPLETED:
        story = state.stories.get(payload["story_id"])
        if story is not None:
            story.status = "completed"
            story.error = None
            _refresh_epic_status(state, story.epic_id)

    elif etype == EventType.STORY_PUSH_VERIFIED:
        # A verified push is definitive: the story is completed whatever came before
        story = state.stories.get(payload["story_id"])
        if story is not None:
            story.push_verified = True
            story.status = "completed"
            story.branch = payload["branch"]
            story.commit_sha = payload.get("commit_sha")
            story.error = None
            _refresh_epic_status(state, story.epic_id)

    elif etype == EventType.STORY_FAILED:
        story = state.stories.get(payload["story_id"])
        if story is not None and not story.push_verified:
            story.status = "failed"
            story.error = payload["error"]
            _refresh_epic_status(state, story.epic_id)

    elif etype == EventType.STORY_REVIEWED:
        story = state.stories.get(payload["story_id"])
        if story is not None:
            story.review_verdict = payload["verdict"]

    elif etype == EventType.DEVELOPERS_COMPLETED:
        state.developers_completed = True

    elif etype == EventType.PR_CREATED:
        epic = state.epics.get(payload["epic_id"])
        if epic is not None:
            epic.pr_number = payload["pr_number"]
            epic.pr_url = payload["pr_url"]

    elif etype == EventType.PR_MERGED:
        epic = state.epics.get(payload["epic_id"])
        if epic is not None:
            epic.merged = True

    elif etype == EventType.TASK_PAUSED:
        state.current_phase = payload.get("phase", state.current_phase)

    elif etype == EventType.TASK_COMPLETED:
        state.status = "completed"
        state.current_phase = None

    elif etype == EventType.TASK_FAILED:
        state.status = "failed"
        state.error = payload["error"]

    elif etype == EventType.TASK_CANCELLED:
        state.status = "cancelled"

    return state


def build_state(events: Iterable[TaskEvent], task_id: str = "") -> TaskStateSnapshot:
    """
    Fold events into a TaskStateSnapshot.

    Events are applied in version order regardless of input order.

    Args:
        events: Events for a single task.
        task_id: Task id recorded on the snapshot (taken from the events
            when omitted).

    Returns:
        The derived snapshot.
    """
    ordered = sorted(events, key=lambda e: e.version)
    state = TaskStateSnapshot(task_id=task_id or (ordered[0].task_id if ordered else ""))
    for event in ordered:
        apply_event(state, event)
    return state
