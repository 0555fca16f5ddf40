"""Unit tests for the git adapter and unified-diff parsing."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from taskforge.boundaries import ChangedHunk, VcsError
from taskforge.config import GitConfig
from taskforge.errors import ErrorCategory
from taskforge.vcs import GitClient, parse_unified_diff

DIFF = """\
diff --git a/app.py b/app.py
index 1111111..2222222 100644
--- a/app.py
+++ b/app.py
@@ -3,2 +3,4 @@ def create_app():
@@ -10 +12 @@ def routes():
diff --git a/health.py b/health.py
new file mode 100644
--- /dev/null
+++ b/health.py
@@ -0,0 +1,12 @@
diff --git a/old.py b/old.py
deleted file mode 100644
--- a/old.py
+++ /dev/null
@@ -1,5 +0,0 @@
"""


def completed(stdout="", returncode=0, stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def git():
    return GitClient(GitConfig(test_command="pytest -q"))


REPO = Path("/work/task-1/api")


class TestParseUnifiedDiff:
    def test_hunks_use_old_side_ranges(self):
        assert parse_unified_diff(DIFF) == [
            ChangedHunk("app.py", 3, 2),
            ChangedHunk("app.py", 10, 1),
            ChangedHunk("health.py", 0, 0),
            ChangedHunk("old.py", 1, 5),
        ]

    def test_empty_diff(self):
        assert parse_unified_diff("") == []


class TestChangedHunk:
    def test_overlap(self):
        a = ChangedHunk("app.py", 3, 2)     # lines 3-4
        assert a.overlaps(ChangedHunk("app.py", 4, 3))
        assert not a.overlaps(ChangedHunk("app.py", 5, 3))
        assert not a.overlaps(ChangedHunk("other.py", 3, 2))

    def test_insertion_occupies_one_line(self):
        insertion = ChangedHunk("app.py", 7, 0)
        assert insertion.end == 7
        assert insertion.overlaps(ChangedHunk("app.py", 7, 1))


class TestGitClient:
    def test_create_branch_from_base(self, git):
        with patch("taskforge.vcs.subprocess.run", side_effect=[completed(""), completed("")]) as run:
            git.create_branch(REPO, "epic/e1-health", "main")

        commands = [call.args[0] for call in run.call_args_list]
        assert commands[0] == ["git", "-C", str(REPO), "branch", "--list", "epic/e1-health"]
        assert commands[1] == ["git", "-C", str(REPO), "checkout", "-b", "epic/e1-health", "main"]

    def test_existing_branch_is_checked_out(self, git):
        with patch("taskforge.vcs.subprocess.run",
                   side_effect=[completed("  epic/e1\n"), completed("")]) as run:
            git.create_branch(REPO, "epic/e1", "main")
        assert run.call_args_list[1].args[0][-2:] == ["checkout", "epic/e1"]

    def test_commit_all_on_clean_tree(self, git):
        with patch("taskforge.vcs.subprocess.run", side_effect=[completed(), completed("")]):
            assert git.commit_all(REPO, "story S1") is None

    def test_commit_all_returns_sha(self, git):
        responses = [completed(), completed(" M app.py\n"), completed(), completed("abc123\n")]
        with patch("taskforge.vcs.subprocess.run", side_effect=responses):
            assert git.commit_all(REPO, "story S1") == "abc123"

    def test_is_pushed_compares_remote_head(self, git):
        with patch("taskforge.vcs.subprocess.run",
                   side_effect=[completed("abc\n"), completed("abc\trefs/heads/epic/e1\n")]):
            assert git.is_pushed(REPO, "epic/e1")
        with patch("taskforge.vcs.subprocess.run",
                   side_effect=[completed("abc\n"), completed("")]):
            assert not git.is_pushed(REPO, "epic/e1")

    def test_failures_are_classified(self, git):
        with patch("taskforge.vcs.subprocess.run",
                   return_value=completed(returncode=128, stderr="fatal: Connection reset by peer")):
            with pytest.raises(VcsError) as exc_info:
                git.push(REPO, "epic/e1")
        assert exc_info.value.category == ErrorCategory.TRANSIENT

        with patch("taskforge.vcs.subprocess.run",
                   return_value=completed(returncode=128, stderr="fatal: not a git repository")):
            with pytest.raises(VcsError) as exc_info:
                git.checkout(REPO, "main")
        assert exc_info.value.category == ErrorCategory.FATAL

    def test_failed_merge_is_aborted(self, git):
        responses = [completed(), completed(returncode=1, stderr="CONFLICT (content)"), completed()]
        with patch("taskforge.vcs.subprocess.run", side_effect=responses) as run:
            with pytest.raises(VcsError):
                git.merge(REPO, "epic/e1", "main", prefer_source=True)

        merge_cmd = run.call_args_list[1].args[0]
        assert merge_cmd[-3:] == ["-X", "theirs", "epic/e1"]
        assert run.call_args_list[2].args[0][-2:] == ["merge", "--abort"]

    def test_diff_hunks(self, git):
        with patch("taskforge.vcs.subprocess.run", return_value=completed(DIFF)) as run:
            hunks = git.diff_hunks(REPO, "main", "epic/e1")
        assert run.call_args.args[0][-1] == "main...epic/e1"
        assert len(hunks) == 4

    def test_run_tests(self, git):
        with patch("taskforge.vcs.subprocess.run",
                   return_value=completed("3 passed\n", returncode=0)) as run:
            assert git.run_tests(REPO) == (True, "3 passed\n")
        assert run.call_args.args[0] == "pytest -q"

        assert GitClient(GitConfig()).run_tests(REPO) == (True, "no test command configured")

    def test_open_pull_request(self, git):
        with patch("taskforge.vcs.subprocess.run",
                   return_value=completed("https://github.com/org/api/pull/42\n")):
            info = git.open_pull_request(REPO, "epic/e1", "main", "Health", "body")
        assert (info.number, info.url) == (42, "https://github.com/org/api/pull/42")

    def test_open_pull_request_without_url(self, git):
        with patch("taskforge.vcs.subprocess.run", return_value=completed("ok\n")):
            with pytest.raises(VcsError, match="could not parse"):
                git.open_pull_request(REPO, "epic/e1", "main", "Health", "body")
