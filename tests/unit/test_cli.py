"""Tests for the taskforge CLI commands."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from taskforge import __version__
from taskforge.agents.executor import AgentRole
from taskforge.cli import app
from taskforge.coordinator import OrchestrationOutcome
from taskforge.models import StepStatus, TaskStatus

from tests.fakes import requirements_output


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"repo_root: {tmp_path}\n"
        f"workspace_root: {tmp_path / 'workspaces'}\n"
        "orchestration:\n"
        "  phase_delay_seconds: 0\n"
    )
    return str(path)


@pytest.fixture
def invoke(cli_runner, config_file):
    def _invoke(*args):
        return cli_runner.invoke(app, ["--config", config_file, *args])
    return _invoke


class TestGlobalOptions:

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_command_shows_help(self, cli_runner):
        result = cli_runner.invoke(app, [])

        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_missing_config_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "status"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestSetupCommands:

    def test_add_repo_and_create(self, invoke, store):
        result = invoke("add-repo", "repo-api", "https://github.example/org/api.git", "--owner", "user-1")
        assert result.exit_code == 0
        assert "Registered repository" in result.output

        result = invoke(
            "create", "Add health endpoint",
            "--owner", "user-1", "--repo", "repo-api",
            "--description", "Expose GET /health",
            "--auto-approve", "requirements_analysis",
            "--id", "task-1",
        )

        assert result.exit_code == 0
        assert "Created task: task-1" in result.output
        task = store.load("task-1")
        assert task.repository_ids == ["repo-api"]
        assert task.orchestration.auto_approval_enabled
        assert task.orchestration.auto_approval_phases == ["requirements_analysis"]
        assert store.get_repositories(["repo-api"])[0].repo_type == "backend"

    def test_duplicate_task_id(self, invoke, make_task):
        make_task(task_id="task-1")

        result = invoke("create", "Again", "--owner", "user-1", "--repo", "repo-api", "--id", "task-1")

        assert result.exit_code == 1
        assert "already exists" in result.output


class TestStatusCommands:

    def test_dashboard_without_tasks(self, invoke):
        result = invoke("status")

        assert result.exit_code == 0
        assert "No tasks found" in result.output

    def test_dashboard_lists_tasks(self, invoke, make_task):
        make_task(task_id="task-1")

        result = invoke("status")

        assert result.exit_code == 0
        assert "task-1" in result.output

    def test_detail_shows_pending_approval(self, invoke, make_task, store):
        task = make_task(task_id="task-1")
        task.orchestration.get_step("requirements_approval").status = StepStatus.AWAITING_APPROVAL
        store.save(task)

        result = invoke("status", "task-1")

        assert result.exit_code == 0
        assert "requirements_approval" in result.output
        assert "taskforge approve task-1" in result.output

    def test_detail_unknown_task(self, invoke):
        result = invoke("status", "task-missing")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_budget(self, invoke, make_task):
        make_task(task_id="task-1")

        result = invoke("budget", "task-1")

        assert result.exit_code == 0
        assert "healthy" in result.output


class TestRunCommand:

    def test_prints_outcome(self, invoke, make_task):
        make_task(task_id="task-1")
        coordinator = MagicMock()
        coordinator.orchestrate_task.return_value = OrchestrationOutcome(
            task_id="task-1",
            status=TaskStatus.IN_PROGRESS,
            stopped_reason="awaiting_approval",
            phase="requirements_approval",
        )

        with patch("taskforge.cli.app.build_coordinator", return_value=coordinator):
            result = invoke("run", "task-1")

        assert result.exit_code == 0
        coordinator.orchestrate_task.assert_called_once_with("task-1")
        assert "awaiting_approval" in result.output
        assert "taskforge approve task-1 requirements_approval" in result.output

    def test_failed_run_exits_nonzero(self, invoke):
        coordinator = MagicMock()
        coordinator.orchestrate_task.return_value = OrchestrationOutcome(
            task_id="task-1",
            status=TaskStatus.FAILED,
            stopped_reason="failed",
            error="requirements_analysis: boom",
        )

        with patch("taskforge.cli.app.build_coordinator", return_value=coordinator):
            result = invoke("run", "task-1")

        assert result.exit_code == 1
        assert "boom" in result.output

    def test_runs_real_coordinator(self, invoke, make_task, coordinator, executor):
        make_task(task_id="task-1")
        executor.queue(AgentRole.REQUIREMENTS_ANALYST, requirements_output(["api"]))

        with patch("taskforge.cli.app.build_coordinator", return_value=coordinator):
            result = invoke("run", "task-1", "--quiet")

        assert result.exit_code == 0
        assert "awaiting_approval" in result.output


class TestDecisionCommands:

    @pytest.fixture
    def waiting(self, make_task, store):
        task = make_task(task_id="task-1")
        task.status = TaskStatus.IN_PROGRESS
        task.orchestration.get_step("requirements_approval").status = StepStatus.AWAITING_APPROVAL
        store.save(task)
        return task

    def test_approve_without_resume(self, invoke, waiting, store):
        result = invoke("approve", "task-1", "requirements_analysis", "--actor", "user-1", "--no-resume")

        assert result.exit_code == 0
        assert "Approved" in result.output
        record = store.load("task-1").orchestration.approval_history[-1]
        assert (record.phase, record.actor) == ("requirements_approval", "user-1")

    def test_approve_step_not_waiting(self, invoke, waiting):
        result = invoke("approve", "task-1", "breakdown_approval", "--no-resume")

        assert result.exit_code == 1
        assert "not awaiting approval" in result.output

    def test_reject(self, invoke, waiting, store):
        result = invoke("reject", "task-1", "requirements_approval", "-m", "too vague")

        assert result.exit_code == 0
        assert "Rejected" in result.output
        assert store.load("task-1").status == TaskStatus.FAILED


class TestControlCommands:

    def test_pause_then_resume_without_run(self, invoke, make_task, store):
        make_task(task_id="task-1")

        result = invoke("pause", "task-1", "--actor", "user-1")
        assert result.exit_code == 0
        assert store.read_control_flags("task-1")[0].active

        result = invoke("resume", "task-1", "--no-run")
        assert result.exit_code == 0
        assert not store.read_control_flags("task-1")[0].active

    def test_cancel(self, invoke, make_task, store):
        make_task(task_id="task-1")

        result = invoke("cancel", "task-1")

        assert result.exit_code == 0
        paused, cancel = store.read_control_flags("task-1")
        assert cancel.active
        assert cancel.actor == "cli"

    def test_pause_unknown_task(self, invoke):
        result = invoke("pause", "task-missing")

        assert result.exit_code == 1


class TestEventCommands:

    def test_events_and_verify(self, invoke, make_task, coordinator, executor):
        make_task(task_id="task-1")
        executor.queue(AgentRole.REQUIREMENTS_ANALYST, requirements_output(["api"]))
        coordinator.orchestrate_task("task-1")

        result = invoke("events", "task-1")
        assert result.exit_code == 0
        assert "task.started" in result.output

        result = invoke("events", "task-1", "--stats")
        assert result.exit_code == 0
        assert "phase.completed" in result.output

        result = invoke("verify", "task-1")
        assert result.exit_code == 0
        assert "Event log OK" in result.output

    def test_events_for_unknown_task(self, invoke):
        result = invoke("events", "task-missing")

        assert result.exit_code == 0
        assert "No events found" in result.output


class TestFullRerun:

    def test_full_calls_continue_task(self, invoke, make_task):
        make_task(task_id="task-1")
        coordinator = MagicMock()
        coordinator.continue_task.return_value = OrchestrationOutcome(
            task_id="task-1",
            status=TaskStatus.IN_PROGRESS,
            stopped_reason="awaiting_approval",
            phase="requirements_approval",
        )

        with patch("taskforge.cli.app.build_coordinator", return_value=coordinator):
            result = invoke("run", "task-1", "--full", "--actor", "alice")

        assert result.exit_code == 0
        coordinator.continue_task.assert_called_once_with("task-1", actor="alice")
        coordinator.orchestrate_task.assert_not_called()

    def test_full_on_unfinished_task_is_an_error(self, invoke, make_task, coordinator, executor):
        make_task(task_id="task-1")
        executor.queue(AgentRole.REQUIREMENTS_ANALYST, requirements_output(["api"]))

        with patch("taskforge.cli.app.build_coordinator", return_value=coordinator):
            invoke("run", "task-1", "--quiet")
            result = invoke("run", "task-1", "--full")

        assert result.exit_code == 1
        assert "in_progress" in result.output
