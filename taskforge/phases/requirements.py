"""Requirements analysis: turn the task description into requirements."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskforge.agents.executor import AgentRole
from taskforge.context import ContextKey
from taskforge.events.types import EventType
from taskforge.phases.base import Phase, PhaseName, PhaseResult, UsageMeter

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


PROMPT = """You are the requirements analyst for a software change spanning these repositories:
{repositories}

Task: {title}

{description}

Explore the repositories as needed, then reply with one JSON object:
{{"summary": str, "requirements": [str], "acceptance_criteria": [str], "affected_repositories": [str]}}
Use repository names exactly as listed above."""


class RequirementsAnalysisPhase(Phase):
    """Runs the requirements analyst and stores its output on the context."""

    name = PhaseName.REQUIREMENTS_ANALYSIS

    def build_prompt(self, context: OrchestrationContext) -> str:
        repositories = "\n".join(
            f"- {repo.name} ({repo.repo_type})" for repo in context.repositories
        )
        return PROMPT.format(
            repositories=repositories,
            title=context.task.title,
            description=context.task.description or "(no further description)",
        )

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        data = self.run_structured(
            context, AgentRole.REQUIREMENTS_ANALYST, self.build_prompt(context), meter
        )

        warnings = []
        known = set(context.repository_names())
        unknown = [name for name in data["affected_repositories"] if name not in known]
        if unknown:
            warnings.append(f"requirements mention unknown repositories: {', '.join(unknown)}")

        context.set(ContextKey.REQUIREMENTS, data)
        self.emit(context, EventType.REQUIREMENTS_COMPLETED, {
            "summary": data["summary"],
            "requirement_count": len(data["requirements"]),
            "affected_repositories": data["affected_repositories"],
        }, agent_name=AgentRole.REQUIREMENTS_ANALYST.value)

        return PhaseResult.ok(data, warnings=warnings)
