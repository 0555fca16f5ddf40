"""
Human approval gate.

The gate never blocks. Without a decision it requests approval and
returns needs_approval; the coordinator stops and a later call resumes
the loop once ApprovalService has recorded a decision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from taskforge.errors import ErrorCategory
from taskforge.events.types import EventType
from taskforge.models import ApprovalRecord
from taskforge.notifications import NotificationType
from taskforge.phases.base import Phase, PhaseName, PhaseResult, PhaseServices, UsageMeter

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


class ApprovalPhase(Phase):
    """Approval gate following one phase (one instance per gated phase)."""

    def __init__(self, services: PhaseServices, name: PhaseName, gated_phase: PhaseName) -> None:
        super().__init__(services)
        self.name = name
        self.gated_phase = gated_phase

    def latest_decision(self, context: OrchestrationContext) -> Optional[ApprovalRecord]:
        return context.task.orchestration.latest_decision(self.step_name)

    def auto_approves(self, context: OrchestrationContext) -> bool:
        orch = context.task.orchestration
        enabled = orch.auto_approval_enabled or self.config.orchestration.auto_approval_enabled
        phases = set(orch.auto_approval_phases) | set(self.config.orchestration.auto_approval_phases)
        return enabled and (self.step_name in phases or self.gated_phase.value in phases)

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        decision = self.latest_decision(context)

        if decision is None and self.auto_approves(context):
            decision = ApprovalRecord(phase=self.step_name, decision="approved", actor="auto")
            with context.lock:
                context.task.orchestration.approval_history.append(decision)
            self.persist(context)
            self.emit(context, EventType.PHASE_APPROVED, {"phase": self.step_name, "actor": "auto"})
            self._log(context, "phase_auto_approved", {"phase": self.step_name})

        if decision is None:
            self.emit(context, EventType.APPROVAL_REQUESTED, {
                "phase": self.step_name,
                "gated_phase": self.gated_phase.value,
            }, idempotent=True)
            self.notify(
                context,
                NotificationType.APPROVAL_STATE_CHANGED,
                f"Approval required for {self.gated_phase.value}",
                state="awaiting_approval",
            )
            return PhaseResult.approval({"gated_phase": self.gated_phase.value})

        if decision.decision == "rejected":
            return PhaseResult.fail(
                f"{self.gated_phase.value} rejected by {decision.actor}"
                + (f": {decision.comments}" if decision.comments else ""),
                category=ErrorCategory.VALIDATION,
            )

        return PhaseResult.ok({"approved_by": decision.actor, "comments": decision.comments})
