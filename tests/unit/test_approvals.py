"""Tests for approval decisions and orchestration re-entry."""

from __future__ import annotations

import pytest

from taskforge.agents.executor import AgentRole
from taskforge.approvals import ApprovalService, normalize_phase
from taskforge.errors import ValidationBlockingError
from taskforge.events.types import EventType
from taskforge.models import StepStatus, TaskStatus
from taskforge.notifications import NotificationType
from taskforge.task_store import TaskStoreError

from tests.fakes import breakdown_output, epic, requirements_output, story


@pytest.fixture
def waiting_task(make_task, store):
    """A task stopped at the requirements gate."""
    task = make_task()
    task.status = TaskStatus.IN_PROGRESS
    task.orchestration.get_step("requirements_analysis").status = StepStatus.COMPLETED
    task.orchestration.get_step("requirements_approval").status = StepStatus.AWAITING_APPROVAL
    store.save(task)
    return task


@pytest.fixture
def service(store, event_store, notifier):
    return ApprovalService(store, event_store, notifier)


class TestNormalizePhase:

    def test_gated_phase_maps_to_gate(self):
        assert normalize_phase("requirements_analysis") == "requirements_approval"
        assert normalize_phase("task_breakdown") == "breakdown_approval"
        assert normalize_phase("integration_test") == "merge_approval"

    def test_gate_names_pass_through(self):
        assert normalize_phase(" Breakdown_Approval ") == "breakdown_approval"
        assert normalize_phase("auto_merge") == "auto_merge"


class TestApprove:

    def test_records_decision(self, service, waiting_task, store, event_store, notifier):
        result = service.approve(waiting_task.id, "requirements_approval", "user-1", "ship it")

        assert result is None
        saved = store.load(waiting_task.id)
        record = saved.orchestration.approval_history[-1]
        assert (record.phase, record.decision, record.actor, record.comments) == (
            "requirements_approval", "approved", "user-1", "ship it",
        )
        events = event_store.get_events(waiting_task.id)
        assert events[-1].event_type == EventType.PHASE_APPROVED
        assert events[-1].payload["phase"] == "requirements_approval"
        assert notifier.of_type(NotificationType.APPROVAL_STATE_CHANGED)[-1].data["state"] == "approved"

    def test_accepts_gated_phase_name(self, service, waiting_task, store):
        service.approve(waiting_task.id, "requirements_analysis", "user-1")

        assert store.load(waiting_task.id).orchestration.approval_history[-1].phase == "requirements_approval"

    def test_step_not_waiting_is_rejected(self, service, waiting_task):
        with pytest.raises(ValidationBlockingError, match="not awaiting approval \\(pending\\)"):
            service.approve(waiting_task.id, "breakdown_approval", "user-1")

    def test_non_approval_step_is_rejected(self, service, waiting_task):
        with pytest.raises(ValidationBlockingError, match="is not an approval step"):
            service.approve(waiting_task.id, "fixer", "user-1")

    def test_unknown_task(self, service):
        with pytest.raises(TaskStoreError, match="not found"):
            service.approve("task-missing", "requirements_approval", "user-1")

    def test_terminal_task_cannot_be_approved(self, service, waiting_task, store):
        waiting_task.status = TaskStatus.CANCELLED
        store.save(waiting_task)

        with pytest.raises(ValidationBlockingError, match="is cancelled"):
            service.approve(waiting_task.id, "requirements_approval", "user-1")

    def test_resumes_orchestration(self, store, event_store, notifier, coordinator, make_task, executor):
        task = make_task()
        executor.queue(AgentRole.REQUIREMENTS_ANALYST, requirements_output(["api"]))
        assert coordinator.orchestrate_task(task.id).phase == "requirements_approval"

        executor.queue(AgentRole.PROJECT_MANAGER, breakdown_output(epic("E1", "api", [story("S1")])))
        service = ApprovalService(store, event_store, notifier, coordinator)
        outcome = service.approve(task.id, "requirements_analysis", "user-1")

        assert outcome.stopped_reason == "awaiting_approval"
        assert outcome.phase == "breakdown_approval"
        saved = store.load(task.id)
        assert saved.orchestration.steps["requirements_approval"].status == StepStatus.COMPLETED
        assert saved.orchestration.steps["task_breakdown"].status == StepStatus.COMPLETED
        # Completed phases were not run again
        assert len(executor.calls_for(AgentRole.REQUIREMENTS_ANALYST)) == 1

    def test_no_resume_when_asked(self, store, event_store, coordinator, waiting_task, executor):
        service = ApprovalService(store, event_store, coordinator=coordinator)

        assert service.approve(waiting_task.id, "requirements_approval", "user-1", resume=False) is None
        assert executor.requests == []


class TestReject:

    def test_fails_task(self, service, waiting_task, store, event_store, notifier):
        task = service.reject(waiting_task.id, "requirements_approval", "user-1", "out of scope")

        assert task.status == TaskStatus.FAILED
        assert task.error == "requirements_approval rejected by user-1: out of scope"
        saved = store.load(waiting_task.id)
        assert saved.status == TaskStatus.FAILED
        step = saved.orchestration.steps["requirements_approval"]
        assert step.status == StepStatus.FAILED
        assert step.completed_at is not None
        assert saved.orchestration.approval_history[-1].decision == "rejected"

        types = [e.event_type for e in event_store.get_events(waiting_task.id)]
        assert types[-2:] == [EventType.PHASE_REJECTED, EventType.TASK_FAILED]
        assert notifier.notifications[-1].type == NotificationType.TASK_FAILED

    def test_rejected_gate_fails_again_on_rerun(self, service, waiting_task, coordinator, executor):
        service.reject(waiting_task.id, "requirements_approval", "user-1")

        outcome = coordinator.orchestrate_task(waiting_task.id)

        assert outcome.stopped_reason == "failed"
        assert "rejected by user-1" in outcome.error
        assert executor.requests == []

    def test_cannot_reject_twice(self, service, waiting_task):
        service.reject(waiting_task.id, "requirements_approval", "user-1")

        with pytest.raises(ValidationBlockingError):
            service.reject(waiting_task.id, "requirements_approval", "user-1")
