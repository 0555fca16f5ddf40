"""Pipeline phases."""

from taskforge.phases.approval import ApprovalPhase
from taskforge.phases.auto_merge import AutoMergePhase
from taskforge.phases.base import Phase, PhaseName, PhaseResult, PhaseServices, UsageMeter
from taskforge.phases.fixer import FixerPhase
from taskforge.phases.integration_test import IntegrationTestPhase
from taskforge.phases.requirements import RequirementsAnalysisPhase
from taskforge.phases.task_breakdown import TaskBreakdownPhase
from taskforge.phases.team_execution import TeamExecutionPhase

__all__ = [
    "ApprovalPhase",
    "AutoMergePhase",
    "FixerPhase",
    "IntegrationTestPhase",
    "Phase",
    "PhaseName",
    "PhaseResult",
    "PhaseServices",
    "RequirementsAnalysisPhase",
    "TaskBreakdownPhase",
    "TeamExecutionPhase",
    "UsageMeter",
]
