"""Unit tests for CostBudgetService."""

import pytest

from taskforge.config import BudgetConfig
from taskforge.governance.budget import CostBudgetService
from taskforge.models import Task


def task_with_cost(cost):
    task = Task(id="task-1", title="t", owner_id="user-1")
    task.orchestration.total_cost = cost
    return task


@pytest.fixture
def budget():
    return CostBudgetService(BudgetConfig(max_task_cost_usd=10.0, max_phase_cost_usd=4.0,
                                          warning_threshold=0.8))


class TestBeforePhase:
    def test_under_budget_is_allowed(self, budget):
        check = budget.check_budget_before_phase(task_with_cost(1.0), "task_breakdown")
        assert check.allowed
        assert check.warning is None
        assert check.estimated_cost == 0.20

    def test_spend_at_ceiling_is_refused(self, budget):
        check = budget.check_budget_before_phase(task_with_cost(10.0), "task_breakdown")
        assert not check.allowed
        assert "Task budget exceeded" in check.reason

    def test_estimate_that_would_cross_ceiling_is_refused(self, budget):
        check = budget.check_budget_before_phase(task_with_cost(9.0), "fixer",
                                                 estimated_phase_cost=1.5)
        assert not check.allowed
        assert "Phase fixer would exceed budget" in check.reason

    def test_warning_threshold(self, budget):
        check = budget.check_budget_before_phase(task_with_cost(8.5), "auto_merge")
        assert check.allowed
        assert "85.0% of budget used" in check.warning

    @pytest.mark.parametrize("threshold", [0.5, 1.0])
    def test_crossing_the_ceiling_is_refused_whatever_the_warning_threshold(self, threshold):
        service = CostBudgetService(BudgetConfig(max_task_cost_usd=10.0, warning_threshold=threshold))
        check = service.check_budget_before_phase(task_with_cost(9.0), "team_execution",
                                                  estimated_phase_cost=1.01)
        assert not check.allowed
        assert check.warning is None

    @pytest.mark.parametrize("spent", [0.0, 2.5, 5.0, 9.9, 10.0, 25.0])
    def test_never_allows_a_phase_once_spend_reaches_ceiling(self, budget, spent):
        check = budget.check_budget_before_phase(task_with_cost(spent), "requirements_analysis",
                                                 estimated_phase_cost=0.0)
        assert check.allowed == (spent < 10.0)


class TestStatus:
    @pytest.mark.parametrize("spent,status", [
        (1.0, "healthy"),
        (8.0, "warning"),
        (9.5, "critical"),
        (10.0, "exceeded"),
        (15.0, "exceeded"),
    ])
    def test_status_levels(self, budget, spent, status):
        assert budget.get_budget_status(task_with_cost(spent))["status"] == status

    def test_status_fields(self, budget):
        status = budget.get_budget_status(task_with_cost(15.0))
        assert status["percentage"] == 100.0
        assert status["remaining"] == 0.0
        assert budget.get_remaining_budget(task_with_cost(2.5)) == 7.5

    def test_phase_cost_limit(self, budget):
        assert budget.check_phase_cost(3.9, "team_execution")
        assert not budget.check_phase_cost(4.1, "team_execution")

    def test_format_cost(self):
        assert CostBudgetService.format_cost(1.23456) == "$1.2346"
