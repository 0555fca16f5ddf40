"""
Approval re-entry.

A human decision on a paused phase is recorded here. Approving appends
to the task's approval history and, when a coordinator is wired in,
re-invokes orchestrate_task so the loop resumes where it stopped.
Rejecting marks the task failed; the loop is not resumed.

Phases may be named either by their gate (requirements_approval) or by
the phase the gate follows (requirements_analysis).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from taskforge.errors import ErrorCategory, ValidationBlockingError
from taskforge.events.types import EventType
from taskforge.models import ApprovalRecord, StepStatus, Task, TaskStatus, utc_now
from taskforge.notifications import Notification, NotificationType
from taskforge.phases import PhaseName

if TYPE_CHECKING:
    from taskforge.boundaries import Notifier
    from taskforge.coordinator import OrchestrationCoordinator, OrchestrationOutcome
    from taskforge.events.store import EventStore
    from taskforge.logger import TaskLogger
    from taskforge.task_store import TaskStore


# Gated phase -> the gate that follows it
APPROVAL_GATES: dict[str, str] = {
    PhaseName.REQUIREMENTS_ANALYSIS.value: PhaseName.REQUIREMENTS_APPROVAL.value,
    PhaseName.TASK_BREAKDOWN.value: PhaseName.BREAKDOWN_APPROVAL.value,
    PhaseName.TEAM_EXECUTION.value: PhaseName.MERGE_APPROVAL.value,
    PhaseName.INTEGRATION_TEST.value: PhaseName.MERGE_APPROVAL.value,
}

# Steps that can be waiting on a human
APPROVABLE_STEPS = frozenset({
    PhaseName.REQUIREMENTS_APPROVAL.value,
    PhaseName.BREAKDOWN_APPROVAL.value,
    PhaseName.MERGE_APPROVAL.value,
    PhaseName.AUTO_MERGE.value,
})


def normalize_phase(phase: str) -> str:
    """Map a gated phase name to its approval step name."""
    phase = phase.strip().lower()
    return APPROVAL_GATES.get(phase, phase)


class ApprovalService:
    """Records approve/reject decisions and resumes orchestration."""

    def __init__(
        self,
        store: TaskStore,
        events: EventStore,
        notifier: Optional[Notifier] = None,
        coordinator: Optional[OrchestrationCoordinator] = None,
        logger: Optional[TaskLogger] = None,
    ) -> None:
        self._store = store
        self._events = events
        self._notifier = notifier
        self._coordinator = coordinator
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _notify(self, notification: Notification) -> None:
        if self._notifier is not None:
            self._notifier.notify(notification)

    def _awaiting_task(self, task_id: str, phase: str) -> tuple[Task, str]:
        """
        Load a task and check that the named step is waiting on a decision.

        Raises:
            TaskStoreError: If the task does not exist.
            ValidationBlockingError: If the step is not awaiting approval.
        """
        task = self._store.load_fresh(task_id)
        step_name = normalize_phase(phase)

        if step_name not in APPROVABLE_STEPS:
            raise ValidationBlockingError(
                f"'{phase}' is not an approval step",
                errors=[f"expected one of: {', '.join(sorted(APPROVABLE_STEPS))}"],
            )
        if task.status.is_terminal:
            raise ValidationBlockingError(f"Task {task_id} is {task.status.value}")

        step = task.orchestration.steps.get(step_name)
        if step is None or step.status != StepStatus.AWAITING_APPROVAL:
            status = step.status.value if step else "pending"
            raise ValidationBlockingError(
                f"Phase {step_name} of task {task_id} is not awaiting approval ({status})"
            )
        return task, step_name

    def approve(
        self,
        task_id: str,
        phase: str,
        actor: str,
        comments: str = "",
        resume: bool = True,
    ) -> Optional[OrchestrationOutcome]:
        """
        Approve a waiting phase.

        Returns:
            The outcome of the resumed orchestration, or None when not
            resuming (or no coordinator is wired in).
        """
        task, step_name = self._awaiting_task(task_id, phase)

        task.orchestration.approval_history.append(ApprovalRecord(
            phase=step_name,
            decision="approved",
            actor=actor,
            comments=comments,
        ))
        self._store.save(task)
        self._events.append(task_id, EventType.PHASE_APPROVED, {
            "phase": step_name,
            "actor": actor,
            "comments": comments,
        })
        self._notify(Notification(
            type=NotificationType.APPROVAL_STATE_CHANGED,
            task_id=task_id,
            message=f"{step_name} approved by {actor}",
            phase=step_name,
            data={"state": "approved", "actor": actor},
        ))
        self._log("phase_approved", {"task_id": task_id, "phase": step_name, "actor": actor})

        if resume and self._coordinator is not None:
            return self._coordinator.orchestrate_task(task_id)
        return None

    def reject(self, task_id: str, phase: str, actor: str, comments: str = "") -> Task:
        """Reject a waiting phase; the task fails and is not resumed."""
        task, step_name = self._awaiting_task(task_id, phase)

        error = f"{step_name} rejected by {actor}" + (f": {comments}" if comments else "")
        task.orchestration.approval_history.append(ApprovalRecord(
            phase=step_name,
            decision="rejected",
            actor=actor,
            comments=comments,
        ))
        step = task.orchestration.get_step(step_name)
        step.status = StepStatus.FAILED
        step.error = error
        step.completed_at = utc_now()
        task.status = TaskStatus.FAILED
        task.error = error
        self._store.save(task)

        self._events.append(task_id, EventType.PHASE_REJECTED, {
            "phase": step_name,
            "actor": actor,
            "comments": comments,
        })
        self._events.append(task_id, EventType.TASK_FAILED, {
            "error": error,
            "phase": step_name,
            "category": ErrorCategory.VALIDATION.value,
        })
        self._notify(Notification(
            type=NotificationType.APPROVAL_STATE_CHANGED,
            task_id=task_id,
            message=error,
            phase=step_name,
            data={"state": "rejected", "actor": actor},
        ))
        self._notify(Notification(
            type=NotificationType.TASK_FAILED,
            task_id=task_id,
            message=error,
            phase=step_name,
        ))
        self._log("phase_rejected", {"task_id": task_id, "phase": step_name, "actor": actor})
        return task
