"""
Crash recovery for resumed tasks.

The persisted Task document is a convenience cache; the event log is the
source of truth. RecoveryService compares the two when a task is resumed
and backfills the cache from the log wherever they disagree or the cache
lacks data (completed phases, epics, story outcomes, branches, pull
requests). Steps left in_progress by an interrupted run are reset to
pending so the phase runs again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from taskforge.events.projection import EpicProjection, TaskStateSnapshot
from taskforge.events.store import EventStore
from taskforge.models import Epic, PullRequestRef, StepStatus, Story, StoryStatus, Task

if TYPE_CHECKING:
    from taskforge.logger import TaskLogger


@dataclass
class RecoveryReport:
    """What a reconciliation pass changed on the cached task."""
    task_id: str
    last_version: int = 0
    changes: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


class RecoveryService:
    """Reconciles a cached Task with its event-derived state."""

    def __init__(self, event_store: EventStore, logger: Optional[TaskLogger] = None) -> None:
        self._events = event_store
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def reconcile(self, task: Task) -> RecoveryReport:
        """
        Backfill the task from its event log, in place.

        Args:
            task: The cached task (mutated; caller persists it).

        Returns:
            RecoveryReport listing every change made.
        """
        snapshot = self._events.get_current_state(task.id)
        report = RecoveryReport(task_id=task.id, last_version=snapshot.last_version)

        self._reset_interrupted_steps(task, report)
        if snapshot.last_version == 0:
            return report

        self._reconcile_phases(task, snapshot, report)
        self._reconcile_epics(task, snapshot, report)
        self._reconcile_stories(task, snapshot, report)

        if report.changed:
            self._log("task_recovered_from_events", {
                "last_version": report.last_version,
                "changes": report.changes,
            }, level="warn")
        return report

    def _reset_interrupted_steps(self, task: Task, report: RecoveryReport) -> None:
        for step in task.orchestration.in_progress_steps():
            step.status = StepStatus.PENDING
            step.started_at = None
            report.changes.append(f"step {step.name}: interrupted run reset to pending")

    def _reconcile_phases(
        self, task: Task, snapshot: TaskStateSnapshot, report: RecoveryReport
    ) -> None:
        for phase in snapshot.completed_phases:
            step = task.orchestration.get_step(phase)
            if step.status != StepStatus.COMPLETED:
                report.changes.append(f"step {phase}: {step.status.value} -> completed")
                step.status = StepStatus.COMPLETED

    def _reconcile_epics(
        self, task: Task, snapshot: TaskStateSnapshot, report: RecoveryReport
    ) -> None:
        for projection in snapshot.epics.values():
            epic = task.orchestration.get_epic(projection.id)
            if epic is None:
                epic = self._epic_from_projection(projection, snapshot)
                task.orchestration.epics.append(epic)
                report.changes.append(f"epic {epic.id}: restored from event log")

            if projection.branch and epic.branch != projection.branch:
                report.changes.append(f"epic {epic.id}: branch -> {projection.branch}")
                epic.branch = projection.branch

            if projection.pr_number is not None and (
                epic.pull_request is None or epic.pull_request.number != projection.pr_number
            ):
                epic.pull_request = PullRequestRef(
                    number=projection.pr_number,
                    url=projection.pr_url or "",
                    branch=epic.branch or "",
                    repository=epic.target_repository,
                    epic_id=epic.id,
                )
                report.changes.append(f"epic {epic.id}: pull request #{projection.pr_number} backfilled")

            if projection.merged and not epic.merged:
                epic.merged = True
                if epic.pull_request:
                    epic.pull_request.merged = True
                report.changes.append(f"epic {epic.id}: marked merged")

    def _reconcile_stories(
        self, task: Task, snapshot: TaskStateSnapshot, report: RecoveryReport
    ) -> None:
        for projection in snapshot.stories.values():
            epic = task.orchestration.get_epic(projection.epic_id)
            if epic is None:
                continue
            story = epic.get_story(projection.id)
            if story is None:
                story = Story(id=projection.id, epic_id=projection.epic_id, title=projection.title)
                epic.stories.append(story)
                report.changes.append(f"story {story.id}: restored from event log")

            status = StoryStatus(projection.status)
            if story.status != status:
                report.changes.append(f"story {story.id}: {story.status.value} -> {status.value}")
                story.status = status
            if projection.assignee and story.assignee != projection.assignee:
                story.assignee = projection.assignee
                report.changes.append(f"story {story.id}: assignee -> {projection.assignee}")
            if projection.branch and story.branch != projection.branch:
                story.branch = projection.branch
            if projection.push_verified and not story.push_verified:
                story.push_verified = True
                report.changes.append(f"story {story.id}: push verified")
            if projection.review_verdict and story.review_verdict != projection.review_verdict:
                story.review_verdict = projection.review_verdict
            if status == StoryStatus.FAILED:
                story.error = projection.error
            elif status == StoryStatus.COMPLETED:
                story.error = None

    @staticmethod
    def _epic_from_projection(projection: EpicProjection, snapshot: TaskStateSnapshot) -> Epic:
        return Epic(
            id=projection.id,
            title=projection.title,
            target_repository=projection.target_repository,
            branch=projection.branch,
            stories=[
                Story(id=sid, epic_id=projection.id, title=snapshot.stories[sid].title)
                for sid in projection.story_ids
                if sid in snapshot.stories
            ],
        )
