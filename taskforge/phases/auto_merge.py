"""
Auto merge: merge each epic's pull request into its base branch.

Merges go through MergeGovernor. A blocked merge (fetch failure, failing
tests, complex conflicts) is recorded with its itemized reasons and the
phase asks for human approval; already-merged epics are not touched
again when the phase resumes.

An approval of the escalated merge means the blocking problems were
resolved outside the pipeline: the merge is evaluated once more and a
merge that still blocks fails the phase with the same itemized reasons.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from taskforge.context import ContextKey
from taskforge.errors import ErrorCategory
from taskforge.events.types import EventType
from taskforge.merge import MergeGovernor
from taskforge.models import ApprovalRecord, StoryStatus
from taskforge.notifications import NotificationType
from taskforge.phases.base import Phase, PhaseName, PhaseResult, UsageMeter

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


def format_blocked(blocked: dict[str, list[str]]) -> str:
    return "; ".join(f"{epic_id}: {', '.join(reasons)}" for epic_id, reasons in blocked.items())


class AutoMergePhase(Phase):
    """Merges every epic branch that has an open pull request."""

    name = PhaseName.AUTO_MERGE

    def latest_decision(self, context: OrchestrationContext) -> Optional[ApprovalRecord]:
        return context.task.orchestration.latest_decision(self.step_name)

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        all_epics = context.task.orchestration.epics
        decision = self.latest_decision(context)
        if decision is not None and decision.decision == "rejected":
            return PhaseResult.fail(
                f"merge rejected by {decision.actor}"
                + (f": {decision.comments}" if decision.comments else ""),
                category=ErrorCategory.VALIDATION,
            )

        without_pr = [
            e.id for e in all_epics
            if not e.merged and e.pull_request is None
            and e.stories_with_status(StoryStatus.COMPLETED)
        ]
        if without_pr:
            return PhaseResult.fail(
                f"completed work has no pull request to merge: {', '.join(without_pr)}",
                category=ErrorCategory.VALIDATION,
                data={"errors": [f"epic {epic_id} has no pull request" for epic_id in without_pr]},
            )

        epics = [e for e in all_epics if e.pull_request is not None and not e.merged]
        if not epics:
            result = PhaseResult.ok({"merged": [], "blocked": {}})
            result.skipped = not any(e.merged for e in all_epics)
            return result

        governor = MergeGovernor(self.services.vcs, self.config.git.test_command, context.logger)
        merged: list[str] = []
        blocked: dict[str, list[str]] = {}

        for epic in epics:
            repo = context.get_repository(epic.target_repository)
            base = repo.default_branch if repo else self.config.git.base_branch
            outcome = governor.merge(context.repo_path(epic.target_repository), epic.branch, base)
            context.update_entry(ContextKey.MERGE_RESULTS, epic.id, outcome.to_dict())

            if outcome.merged:
                with context.lock:
                    epic.merged = True
                    epic.pull_request.merged = True
                context.mark_branch_merged(epic.branch)
                self.persist(context)
                self.emit(context, EventType.PR_MERGED, {
                    "epic_id": epic.id,
                    "pr_number": epic.pull_request.number,
                    "merge_sha": outcome.merge_sha,
                    "simple_conflicts": [c.path for c in outcome.simple_conflicts],
                })
                merged.append(epic.id)
            else:
                blocked[epic.id] = outcome.reasons
                self.emit(context, EventType.MERGE_BLOCKED, {
                    "epic_id": epic.id,
                    "reasons": outcome.reasons,
                    "complex_conflicts": [c.path for c in outcome.complex_conflicts],
                })

        data = {"merged": merged, "blocked": blocked}
        if not blocked:
            return PhaseResult.ok(data)

        if decision is not None:
            # Approved after escalation: no second escalation
            return PhaseResult.fail(
                f"merge still blocked after approval by {decision.actor}: {format_blocked(blocked)}",
                category=ErrorCategory.VALIDATION,
                data={**data, "errors": [format_blocked({k: v}) for k, v in blocked.items()]},
            )

        self.emit(context, EventType.APPROVAL_REQUESTED, {"phase": self.step_name})
        self.notify(
            context,
            NotificationType.APPROVAL_STATE_CHANGED,
            f"Merge blocked for {', '.join(blocked)}; human review required",
            state="awaiting_approval",
            blocked=blocked,
        )
        return PhaseResult.approval(data)
