"""
Cost budget governance.

CostBudgetService keeps a task's spend against a configured ceiling:
- check_budget_before_phase() gates a phase on current spend plus the
  phase's estimate; a phase that would pass the ceiling never starts
- check_phase_cost() flags a single phase that exceeded the per-phase limit
- get_budget_status() reports used/limit/percentage/status for display

The budget is checked before a phase starts, never mid-phase.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from taskforge.config import BudgetConfig

if TYPE_CHECKING:
    from taskforge.logger import TaskLogger
    from taskforge.models import Task


CRITICAL_PERCENTAGE = 90.0


@dataclass
class BudgetCheck:
    """Result of a pre-phase budget check."""
    allowed: bool
    warning: Optional[str] = None
    reason: Optional[str] = None
    current_cost: float = 0.0
    estimated_cost: float = 0.0
    ceiling: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "warning": self.warning,
            "reason": self.reason,
            "current_cost": self.current_cost,
            "estimated_cost": self.estimated_cost,
            "ceiling": self.ceiling,
        }


class CostBudgetService:
    """Tracks task spend against the configured ceilings."""

    def __init__(self, config: Optional[BudgetConfig] = None, logger: Optional[TaskLogger] = None) -> None:
        self.config = config or BudgetConfig()
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def get_phase_estimate(self, phase_name: str) -> float:
        return self.config.estimate_for(phase_name)

    def check_budget_before_phase(
        self,
        task: Task,
        phase_name: str,
        estimated_phase_cost: Optional[float] = None,
    ) -> BudgetCheck:
        """
        Decide whether a phase may start.

        Args:
            task: The task (its orchestration.total_cost is current spend).
            phase_name: Phase about to run.
            estimated_phase_cost: Override for the configured estimate.

        Returns:
            BudgetCheck. allowed=False when current spend, or spend plus
            the estimate, passes the ceiling.
        """
        ceiling = self.config.max_task_cost_usd
        current = task.orchestration.total_cost or 0.0
        estimate = (
            estimated_phase_cost if estimated_phase_cost is not None
            else self.get_phase_estimate(phase_name)
        )
        check = BudgetCheck(
            allowed=True, current_cost=current, estimated_cost=estimate, ceiling=ceiling
        )

        if current >= ceiling:
            message = f"Task budget exceeded: ${current:.2f} >= ${ceiling:.2f}"
        elif current + estimate > ceiling:
            message = (
                f"Phase {phase_name} would exceed budget: "
                f"${current + estimate:.2f} > ${ceiling:.2f}"
            )
        else:
            message = None

        if message is not None:
            self._log("budget_exceeded", {
                "phase": phase_name,
                "current_cost": current,
                "estimate": estimate,
                "ceiling": ceiling,
            }, level="error")
            check.allowed = False
            check.reason = message
            return check

        usage = current / ceiling if ceiling else 0.0
        if usage >= self.config.warning_threshold:
            check.warning = (
                f"Cost warning: {usage * 100:.1f}% of budget used "
                f"(${current:.2f}/${ceiling:.2f})"
            )
            self._log("budget_warning", {
                "phase": phase_name,
                "current_cost": current,
                "usage_percentage": round(usage * 100, 1),
            }, level="warn")

        return check

    def check_phase_cost(self, phase_cost: float, phase_name: str) -> bool:
        """Return False (and log a warning) when a phase exceeded the per-phase limit."""
        if phase_cost > self.config.max_phase_cost_usd:
            self._log("phase_cost_exceeded", {
                "phase": phase_name,
                "cost": phase_cost,
                "limit": self.config.max_phase_cost_usd,
            }, level="warn")
            return False
        return True

    def get_remaining_budget(self, task: Task) -> float:
        return max(0.0, self.config.max_task_cost_usd - (task.orchestration.total_cost or 0.0))

    def get_budget_status(self, task: Task) -> dict[str, Any]:
        """
        Budget summary for display.

        Returns:
            Dict with used, limit, percentage (capped at 100), status
            (healthy, warning, critical, exceeded) and remaining.
        """
        used = task.orchestration.total_cost or 0.0
        limit = self.config.max_task_cost_usd
        percentage = (used / limit) * 100 if limit else 100.0

        if percentage >= 100:
            status = "exceeded"
        elif percentage >= CRITICAL_PERCENTAGE:
            status = "critical"
        elif percentage >= self.config.warning_threshold * 100:
            status = "warning"
        else:
            status = "healthy"

        return {
            "used": round(used, 4),
            "limit": limit,
            "percentage": round(min(100.0, percentage), 2),
            "status": status,
            "remaining": round(max(0.0, limit - used), 4),
        }

    @staticmethod
    def format_cost(cost: float) -> str:
        return f"${cost:.4f}"
