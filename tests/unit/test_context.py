"""Unit tests for OrchestrationContext and ContextCompactor."""

from pathlib import Path

import pytest

from taskforge.context import ContextCompactor, ContextKey, OrchestrationContext
from taskforge.credentials import ApiCredential
from taskforge.models import Repository, Task


@pytest.fixture
def context(tmp_path):
    return OrchestrationContext(
        task=Task(id="task-1", title="t", owner_id="user-1"),
        repositories=[
            Repository(id="repo-api", name="api", owner_id="user-1", clone_url="x", repo_type="backend"),
            Repository(id="repo-web", name="web", owner_id="user-1", clone_url="y", repo_type="frontend"),
        ],
        workspace_path=tmp_path,
        credential=ApiCredential("test-task-credential", "task"),
    )


class TestSharedData:
    def test_get_set_and_entries(self, context):
        context.set(ContextKey.REQUIREMENTS, {"summary": "health"})
        context.update_entry(ContextKey.ARCHITECTURE, "E1", "thin handlers")
        context.update_entry(ContextKey.ARCHITECTURE, "E2", "reuse client")
        context.add_warning("budget at 80%")

        assert context.get(ContextKey.REQUIREMENTS) == {"summary": "health"}
        assert context.get(ContextKey.ARCHITECTURE) == {"E1": "thin handlers", "E2": "reuse client"}
        assert context.get(ContextKey.WARNINGS) == ["budget at 80%"]
        assert context.get(ContextKey.FIX_SUMMARY, "none") == "none"

    def test_repository_lookup(self, context, tmp_path):
        assert context.get_repository("repo-web").name == "web"
        assert context.get_repository("api").id == "repo-api"
        assert context.get_repository("mobile") is None
        assert context.repository_names() == ["api", "web"]
        assert context.repo_path("repo-api") == tmp_path / "api"


class TestBranches:
    def test_register_is_idempotent(self, context):
        first = context.register_branch("epic/e1", "epic", "api", "E1")
        again = context.register_branch("epic/e1", "epic", "api", "E1")
        context.register_branch("story/s1", "story", "api", "E1", story_id="S1")
        context.mark_branch_pushed("story/s1")
        context.mark_branch_merged("epic/e1")
        context.mark_branch_merged("unknown")

        assert first is again
        assert first.merged
        assert [b.name for b in context.branches_for_epic("E1")] == ["epic/e1", "story/s1"]
        assert context.branches["story/s1"].pushed
        assert context.branches_for_repository("web") == []


class TestCheckpoint:
    def test_round_trip(self, context, tmp_path):
        context.set(ContextKey.REQUIREMENTS, {"summary": "health"})
        context.record_phase_result("requirements_analysis", {"success": True})
        context.register_branch("epic/e1", "epic", "api", "E1")
        context.add_conversation("requirements_analyst", "analysis", phase="requirements_analysis")
        context.save_checkpoint()

        restored = OrchestrationContext(
            task=context.task,
            repositories=context.repositories,
            workspace_path=tmp_path,
            credential=context.credential,
        )
        restored.restore_checkpoint(context.task.orchestration.checkpoint)

        assert restored.get(ContextKey.REQUIREMENTS) == {"summary": "health"}
        assert restored.phase_results == {"requirements_analysis": {"success": True}}
        assert restored.branches["epic/e1"].repository == "api"
        assert len(restored.conversation_history) == 1

    def test_unknown_keys_and_empty_checkpoints(self, context):
        context.restore_checkpoint(None)
        context.restore_checkpoint({"shared": {"retired_key": 1, "fix_summary": "patched"}})
        assert context.get(ContextKey.FIX_SUMMARY) == "patched"
        assert len(context.shared) == 1


class TestCompaction:
    def test_compacts_older_history(self, context):
        for i in range(12):
            context.add_conversation("developer", f"message {i}", phase="team_execution")
        context.add_conversation("reviewer", "late", phase="integration_test")
        context.record_phase_result("team_execution", {"success": True, "output": "long raw text"})
        compactor = ContextCompactor(history_threshold=10, keep_recent=3)

        assert compactor.should_compact(context)
        folded = compactor.compact(context)

        history = context.conversation_history
        assert folded == 10
        assert len(history) == 4
        assert history[0]["role"] == "summary"
        assert "team_execution: 10 message(s)" in history[0]["content"]
        assert history[-1]["content"] == "late"
        assert "output" not in context.phase_results["team_execution"]
        assert context.compactions == 1
        assert [e["content"] for e in compactor.iter_recent(context)][-1] == "late"

    def test_short_history_is_left_alone(self, context):
        context.add_conversation("developer", "only one")
        compactor = ContextCompactor(history_threshold=10, keep_recent=3)
        assert not compactor.should_compact(context)
        assert compactor.compact(context) == 0
        assert context.compactions == 0
