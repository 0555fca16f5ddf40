"""Unit tests for conflict classification and the MergeGovernor."""

from pathlib import Path

import pytest

from taskforge.boundaries import ChangedHunk
from taskforge.merge import ConflictSeverity, MergeGovernor, classify_conflicts

REPO = Path("/work/task-1/api")


@pytest.fixture
def governor(vcs):
    return MergeGovernor(vcs)


@pytest.fixture
def epic_branch(vcs):
    vcs.create_branch(REPO, "epic/e1", "main")
    vcs.add_commit(REPO, "epic/e1", "app.py", 1, 3)
    return "epic/e1"


class TestClassifyConflicts:
    def test_disjoint_ranges_are_simple(self):
        conflicts = classify_conflicts([ChangedHunk("app.py", 1, 3)], [ChangedHunk("app.py", 10, 2)])
        assert [(c.path, c.severity) for c in conflicts] == [("app.py", ConflictSeverity.SIMPLE)]
        assert conflicts[0].source_ranges == [(1, 3)]
        assert conflicts[0].target_ranges == [(10, 11)]

    def test_overlapping_ranges_are_complex(self):
        conflicts = classify_conflicts([ChangedHunk("app.py", 1, 3)], [ChangedHunk("app.py", 3, 1)])
        assert conflicts[0].severity == ConflictSeverity.COMPLEX

    def test_files_on_one_side_are_not_conflicts(self):
        assert classify_conflicts([ChangedHunk("a.py", 1, 1)], [ChangedHunk("b.py", 1, 1)]) == []


class TestMergeGovernor:
    def test_clean_merge(self, governor, vcs, epic_branch):
        decision = governor.merge(REPO, epic_branch, "main")

        assert decision.merged
        assert decision.conflicts == []
        assert vcs.merges == [("epic/e1", "main", False)]
        assert ChangedHunk("app.py", 1, 3) in vcs.branches[(str(REPO), "main")]

    def test_simple_conflict_merges_preferring_source(self, governor, vcs, epic_branch):
        vcs.add_commit(REPO, "main", "app.py", 10, 2)

        decision = governor.merge(REPO, epic_branch, "main")

        assert decision.merged
        assert [c.path for c in decision.simple_conflicts] == ["app.py"]
        assert vcs.merges == [("epic/e1", "main", True)]

    def test_complex_conflict_blocks(self, governor, vcs, epic_branch):
        vcs.add_commit(REPO, "main", "app.py", 2, 2)

        decision = governor.merge(REPO, epic_branch, "main")

        assert not decision.allowed
        assert not decision.merged
        assert decision.needs_human
        assert decision.reasons[0].startswith("complex conflict in app.py")
        assert vcs.merges == []

    def test_failing_tests_and_fetch_block(self, governor, vcs, epic_branch):
        vcs.tests_pass = False
        vcs.test_output = "collected 3 items\n1 failed, 2 passed"
        vcs.fail_fetch = True

        decision = governor.evaluate(REPO, epic_branch, "main")

        assert not decision.allowed
        assert decision.reasons[0].startswith("could not fetch latest main")
        assert decision.reasons[1] == "tests failed on epic/e1: 1 failed, 2 passed"
        assert not decision.needs_human

    def test_to_dict(self, governor, epic_branch):
        data = governor.merge(REPO, epic_branch, "main").to_dict()
        assert data["merged"] is True
        assert data["merge_sha"]
