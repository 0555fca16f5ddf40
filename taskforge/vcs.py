"""
Local git adapter for the version-control boundary.

GitClient runs `git -C <repo>` subprocesses and the `gh` CLI for pull
requests. Failures raise VcsError, classified transient when the output
looks like a network or rate-limit problem.
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from taskforge.boundaries import ChangedHunk, PullRequestInfo, VcsError
from taskforge.errors import ErrorCategory

if TYPE_CHECKING:
    from taskforge.config import GitConfig
    from taskforge.logger import TaskLogger


HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
PR_URL = re.compile(r"https://\S+/pull/(\d+)")


def parse_unified_diff(diff_text: str) -> list[ChangedHunk]:
    """
    Parse `git diff -U0` output into changed hunks.

    Ranges are taken from the old side of each hunk header, so diffs made
    against the same merge base are directly comparable. New files are
    reported as a single insertion at line 0.
    """
    hunks: list[ChangedHunk] = []
    old_path: Optional[str] = None
    path: Optional[str] = None

    for line in diff_text.splitlines():
        if line.startswith("--- "):
            old_path = None if line[4:] == "/dev/null" else line[4:].removeprefix("a/")
            continue
        if line.startswith("+++ "):
            new_path = None if line[4:] == "/dev/null" else line[4:].removeprefix("b/")
            path = new_path or old_path
            continue
        match = HUNK_HEADER.match(line)
        if match and path:
            start = int(match.group(1))
            length = int(match.group(2)) if match.group(2) is not None else 1
            hunks.append(ChangedHunk(path=path, start=start, length=length))

    return hunks


class GitClient:
    """VersionControl implementation backed by the git and gh CLIs."""

    def __init__(self, config: GitConfig, logger: Optional[TaskLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "git"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _git(self, repo_path: Path, *args: str, check: bool = True, timeout: int = 300) -> str:
        cmd = ["git", "-C", str(repo_path), *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise VcsError(f"git {args[0]} timed out", category=ErrorCategory.TRANSIENT)
        except FileNotFoundError:
            raise VcsError("git executable not found", category=ErrorCategory.FATAL)

        if check and result.returncode != 0:
            self._log("git_command_failed", {
                "args": list(args),
                "stderr": result.stderr[:500],
            }, level="warn")
            raise VcsError(f"git {' '.join(args[:2])} failed", stderr=result.stderr)
        return result.stdout

    def clone(self, url: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                ["git", "clone", url, str(destination)],
                capture_output=True,
                text=True,
                timeout=900,
            )
        except subprocess.TimeoutExpired:
            raise VcsError(f"git clone of {url} timed out", category=ErrorCategory.TRANSIENT)
        if result.returncode != 0:
            raise VcsError(f"git clone of {url} failed", stderr=result.stderr)

    def branch_exists(self, repo_path: Path, branch: str) -> bool:
        out = self._git(repo_path, "branch", "--list", branch)
        return bool(out.strip())

    def create_branch(self, repo_path: Path, branch: str, base: str) -> None:
        if self.branch_exists(repo_path, branch):
            self._git(repo_path, "checkout", branch)
            return
        self._git(repo_path, "checkout", "-b", branch, base)
        self._log("branch_created", {"branch": branch, "base": base})

    def checkout(self, repo_path: Path, branch: str) -> None:
        self._git(repo_path, "checkout", branch)

    def commit_all(self, repo_path: Path, message: str) -> Optional[str]:
        self._git(repo_path, "add", "-A")
        if not self._git(repo_path, "status", "--porcelain").strip():
            return None
        self._git(repo_path, "commit", "-m", message)
        return self._git(repo_path, "rev-parse", "HEAD").strip()

    def push(self, repo_path: Path, branch: str) -> None:
        self._git(repo_path, "push", "-u", self.config.remote, branch)
        self._log("branch_pushed", {"branch": branch})

    def is_pushed(self, repo_path: Path, branch: str) -> bool:
        local = self._git(repo_path, "rev-parse", branch).strip()
        remote = self._git(
            repo_path, "ls-remote", "--heads", self.config.remote, branch, check=False
        ).split()
        return bool(remote) and remote[0] == local

    def current_branch(self, repo_path: Path) -> str:
        return self._git(repo_path, "rev-parse", "--abbrev-ref", "HEAD").strip()

    def fetch(self, repo_path: Path, branch: str) -> None:
        """Bring the local branch up to date with the remote (fast-forward only)."""
        if self.current_branch(repo_path) == branch:
            self._git(repo_path, "pull", "--ff-only", self.config.remote, branch)
        else:
            self._git(repo_path, "fetch", self.config.remote, f"{branch}:{branch}")

    def changed_file_count(self, repo_path: Path) -> int:
        out = self._git(repo_path, "status", "--porcelain")
        return len([line for line in out.splitlines() if line.strip()])

    def diff_hunks(self, repo_path: Path, base: str, head: str) -> list[ChangedHunk]:
        out = self._git(repo_path, "diff", "-U0", "--no-color", f"{base}...{head}")
        return parse_unified_diff(out)

    def merge(self, repo_path: Path, source: str, target: str, prefer_source: bool = False) -> str:
        self._git(repo_path, "checkout", target)
        args = ["merge", "--no-ff", "--no-edit"]
        if prefer_source:
            # On conflicting hunks take the incoming (source) side
            args += ["-X", "theirs"]
        try:
            self._git(repo_path, *args, source)
        except VcsError:
            self._git(repo_path, "merge", "--abort", check=False)
            raise
        return self._git(repo_path, "rev-parse", "HEAD").strip()

    def run_tests(self, repo_path: Path, command: str = "") -> tuple[bool, str]:
        command = command or self.config.test_command
        if not command:
            return True, "no test command configured"
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=str(repo_path),
                capture_output=True,
                text=True,
                timeout=self.config.test_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return False, f"tests timed out after {self.config.test_timeout_seconds}s"
        output = (result.stdout + result.stderr)[-4000:]
        return result.returncode == 0, output

    def open_pull_request(
        self, repo_path: Path, head: str, base: str, title: str, body: str
    ) -> PullRequestInfo:
        try:
            result = subprocess.run(
                ["gh", "pr", "create", "--head", head, "--base", base, "--title", title, "--body", body],
                cwd=str(repo_path),
                capture_output=True,
                text=True,
                timeout=60,
            )
        except FileNotFoundError:
            raise VcsError("gh CLI not found", category=ErrorCategory.FATAL)
        except subprocess.TimeoutExpired:
            raise VcsError("gh pr create timed out", category=ErrorCategory.TRANSIENT)

        if result.returncode != 0:
            raise VcsError("gh pr create failed", stderr=result.stderr)

        match = PR_URL.search(result.stdout)
        if not match:
            raise VcsError(f"could not parse pull request url from: {result.stdout[:200]}")
        info = PullRequestInfo(number=int(match.group(1)), url=match.group(0))
        self._log("pull_request_opened", {"number": info.number, "url": info.url, "head": head})
        return info
