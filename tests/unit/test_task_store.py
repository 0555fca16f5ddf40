"""Unit tests for TaskStore persistence and control flags."""

import json
import os
import stat

import pytest

from taskforge.models import Repository, StepStatus, TaskStatus
from taskforge.task_store import TaskStore, TaskStoreError


class TestTasks:
    def test_create_and_load(self, store):
        task = store.create("Add health endpoint", "user-1", ["repo-api"], task_id="task-a")
        loaded = store.load("task-a")

        assert loaded is not None
        assert loaded.id == task.id
        assert loaded.status == TaskStatus.PENDING
        assert loaded.repository_ids == ["repo-api"]

    def test_create_generates_ids(self, store):
        task = store.create("t", "user-1", [])
        assert task.id.startswith("task-")
        assert store.exists(task.id)

    def test_create_duplicate_is_an_error(self, store):
        store.create("t", "user-1", [], task_id="dup")
        with pytest.raises(TaskStoreError, match="already exists"):
            store.create("t", "user-1", [], task_id="dup")

    def test_auto_approval_phases_enable_auto_approval(self, store):
        task = store.create("t", "user-1", [], auto_approval_phases=["requirements_approval"])
        assert task.orchestration.auto_approval_enabled
        assert store.load(task.id).orchestration.auto_approval_phases == ["requirements_approval"]

    def test_save_persists_changes(self, store):
        task = store.create("t", "user-1", [], task_id="task-b")
        task.status = TaskStatus.IN_PROGRESS
        task.orchestration.get_step("requirements_analysis").status = StepStatus.IN_PROGRESS
        store.save(task)

        loaded = store.load_fresh("task-b")
        assert loaded.status == TaskStatus.IN_PROGRESS
        assert loaded.orchestration.steps["requirements_analysis"].status == StepStatus.IN_PROGRESS

    def test_missing_task(self, store):
        assert store.load("nope") is None
        with pytest.raises(TaskStoreError, match="not found"):
            store.load_fresh("nope")

    def test_corrupted_task_loads_as_none(self, store, config):
        store.create("t", "user-1", [], task_id="bad")
        (config.tasks_path / "bad.json").write_text("{not json")
        assert store.load("bad") is None

    def test_list_tasks_skips_control_files(self, store):
        store.create("first", "user-1", [], task_id="t1")
        store.create("second", "user-1", [], task_id="t2")
        store.set_paused("t1", "user-1")

        assert [t.id for t in store.list_tasks()] == ["t1", "t2"]

    def test_list_tasks_without_state_dir(self, config):
        assert TaskStore(config).list_tasks() == []


class TestControlFlags:
    def test_flags_default_inactive(self, store):
        store.create("t", "user-1", [], task_id="t1")
        paused, cancel = store.read_control_flags("t1")
        assert not paused.active
        assert not cancel.active

    def test_pause_and_resume(self, store):
        store.create("t", "user-1", [], task_id="t1")
        flag = store.set_paused("t1", "alice")
        assert flag.active and flag.actor == "alice" and flag.timestamp

        assert store.load("t1").orchestration.paused.active
        store.set_paused("t1", "bob", paused=False)
        assert not store.load("t1").orchestration.paused.active

    def test_save_does_not_clobber_flags(self, store):
        task = store.create("t", "user-1", [], task_id="t1")
        store.request_cancel("t1", "alice")

        # A stale in-memory copy saved after the operator acted
        task.status = TaskStatus.IN_PROGRESS
        store.save(task)

        _, cancel = store.read_control_flags("t1")
        assert cancel.active
        assert cancel.actor == "alice"

    def test_flags_for_missing_task_are_an_error(self, store):
        with pytest.raises(TaskStoreError):
            store.request_cancel("ghost", "alice")


class TestRepositoriesAndCredentials:
    def test_repositories_round_trip(self, store):
        store.save_repository(Repository(id="r1", name="api", owner_id="u", clone_url="x"))
        repos = store.get_repositories(["r1", "missing"])
        assert [r.name for r in repos] == ["api"]

    def test_user_credentials(self, store, config):
        assert store.get_user_credential("user-1") is None
        store.set_user_credential("user-1", "user-key")

        assert store.get_user_credential("user-1") == "user-key"
        mode = stat.S_IMODE(os.stat(config.state_path / "credentials.json").st_mode)
        assert mode == 0o600

    def test_task_credential_is_kept_out_of_the_task_file(self, store, config):
        store.create("t", "user-1", [], credential="sk-task-secret", task_id="task-k")

        document = json.loads((config.tasks_path / "task-k.json").read_text())
        assert "credential" not in document
        assert "sk-task-secret" not in (config.tasks_path / "task-k.json").read_text()
        secrets_path = config.state_path / "task_credentials.json"
        assert stat.S_IMODE(os.stat(secrets_path).st_mode) == 0o600
        assert store.load("task-k").credential == "sk-task-secret"

    def test_task_credential_survives_later_saves(self, store):
        task = store.create("t", "user-1", [], credential="sk-task-secret", task_id="task-k")
        task.status = TaskStatus.IN_PROGRESS
        store.save(task)

        assert store.load("task-k").credential == "sk-task-secret"

    def test_legacy_inline_credential_is_moved_out(self, store, config):
        store.create("t", "user-1", [], task_id="task-old")
        path = config.tasks_path / "task-old.json"
        document = json.loads(path.read_text())
        document["credential"] = "sk-inline"
        path.write_text(json.dumps(document))

        store.save(store.load("task-old"))

        assert "sk-inline" not in path.read_text()
        assert store.load("task-old").credential == "sk-inline"
