"""
Merge and conflict governance.

Changes on a feature branch are compared with changes on the target
branch since their merge base:

- simple conflict: both sides touch the same file on disjoint line
  ranges; resolved automatically, preferring the feature branch
- complex conflict: both sides touch overlapping line ranges; the merge
  is blocked and escalated to a human reviewer

A merge is attempted only after the target is fetched to latest, the
tests pass and no complex conflict remains. Otherwise the decision lists
every failed precondition.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from taskforge.boundaries import ChangedHunk, VcsError

if TYPE_CHECKING:
    from taskforge.boundaries import VersionControl
    from taskforge.logger import TaskLogger


class ConflictSeverity(Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


@dataclass
class FileConflict:
    """A file changed on both sides of a merge."""
    path: str
    severity: ConflictSeverity
    source_ranges: list[tuple[int, int]] = field(default_factory=list)
    target_ranges: list[tuple[int, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "severity": self.severity.value,
            "source_ranges": [list(r) for r in self.source_ranges],
            "target_ranges": [list(r) for r in self.target_ranges],
        }


def _by_path(hunks: list[ChangedHunk]) -> dict[str, list[ChangedHunk]]:
    grouped: dict[str, list[ChangedHunk]] = defaultdict(list)
    for hunk in hunks:
        grouped[hunk.path].append(hunk)
    return grouped


def classify_conflicts(
    source_hunks: list[ChangedHunk],
    target_hunks: list[ChangedHunk],
) -> list[FileConflict]:
    """
    Classify files changed on both sides.

    Args:
        source_hunks: Changes on the feature branch since the merge base.
        target_hunks: Changes on the target branch since the merge base.

    Returns:
        One FileConflict per file touched by both sides, sorted by path.
        Files touched by only one side are not conflicts.
    """
    source = _by_path(source_hunks)
    target = _by_path(target_hunks)
    conflicts = []

    for path in sorted(set(source) & set(target)):
        overlapping = any(a.overlaps(b) for a in source[path] for b in target[path])
        conflicts.append(FileConflict(
            path=path,
            severity=ConflictSeverity.COMPLEX if overlapping else ConflictSeverity.SIMPLE,
            source_ranges=[(h.start, h.end) for h in source[path]],
            target_ranges=[(h.start, h.end) for h in target[path]],
        ))
    return conflicts


@dataclass
class MergeDecision:
    """Outcome of a merge attempt for one branch."""
    source: str
    target: str
    allowed: bool = False
    merged: bool = False
    reasons: list[str] = field(default_factory=list)
    conflicts: list[FileConflict] = field(default_factory=list)
    test_output: str = ""
    merge_sha: Optional[str] = None

    @property
    def simple_conflicts(self) -> list[FileConflict]:
        return [c for c in self.conflicts if c.severity == ConflictSeverity.SIMPLE]

    @property
    def complex_conflicts(self) -> list[FileConflict]:
        return [c for c in self.conflicts if c.severity == ConflictSeverity.COMPLEX]

    @property
    def needs_human(self) -> bool:
        return bool(self.complex_conflicts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "allowed": self.allowed,
            "merged": self.merged,
            "reasons": list(self.reasons),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "merge_sha": self.merge_sha,
        }


class MergeGovernor:
    """Checks merge preconditions and performs allowed merges."""

    def __init__(
        self,
        vcs: VersionControl,
        test_command: str = "",
        logger: Optional[TaskLogger] = None,
    ) -> None:
        self.vcs = vcs
        self.test_command = test_command
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def evaluate(self, repo_path: Path, source: str, target: str) -> MergeDecision:
        """Check every precondition and collect the failures."""
        decision = MergeDecision(source=source, target=target)

        try:
            self.vcs.checkout(repo_path, source)
            self.vcs.fetch(repo_path, target)
        except VcsError as e:
            decision.reasons.append(f"could not fetch latest {target}: {e}")

        passed, output = self.vcs.run_tests(repo_path, self.test_command)
        decision.test_output = output
        if not passed:
            tail = output.strip().splitlines()[-1] if output.strip() else "no output"
            decision.reasons.append(f"tests failed on {source}: {tail}")

        try:
            source_hunks = self.vcs.diff_hunks(repo_path, target, source)
            target_hunks = self.vcs.diff_hunks(repo_path, source, target)
            decision.conflicts = classify_conflicts(source_hunks, target_hunks)
        except VcsError as e:
            decision.reasons.append(f"could not compute diff against {target}: {e}")

        for conflict in decision.complex_conflicts:
            decision.reasons.append(
                f"complex conflict in {conflict.path}: "
                f"{source} lines {conflict.source_ranges} overlap {target} lines {conflict.target_ranges}"
            )

        decision.allowed = not decision.reasons
        return decision

    def merge(self, repo_path: Path, source: str, target: str) -> MergeDecision:
        """
        Evaluate and, when allowed, merge source into target and push.

        Returns:
            The decision. merged is True only when the merge and push
            both succeeded.
        """
        decision = self.evaluate(repo_path, source, target)
        if not decision.allowed:
            self._log("merge_blocked", {
                "source": source,
                "target": target,
                "reasons": decision.reasons,
            }, level="warn")
            return decision

        try:
            decision.merge_sha = self.vcs.merge(
                repo_path, source, target, prefer_source=bool(decision.simple_conflicts)
            )
            self.vcs.push(repo_path, target)
            decision.merged = True
        except VcsError as e:
            decision.allowed = False
            decision.reasons.append(f"merge of {source} into {target} failed: {e}")

        self._log("merge_completed" if decision.merged else "merge_failed", {
            "source": source,
            "target": target,
            "simple_conflicts": len(decision.simple_conflicts),
            "reasons": decision.reasons,
        }, level="info" if decision.merged else "warn")
        return decision
