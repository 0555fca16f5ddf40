"""
Task breakdown: split the requirements into epics and stories.

The breakdown is rejected (VALIDATION) when an epic targets an unknown
repository, story ids repeat, or two epics claim the same file in the
same repository. Overlapping assignments would have parallel teams
editing the same file.
"""

from __future__ import annotations

import json
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from taskforge.agents.executor import AgentRole
from taskforge.context import ContextKey
from taskforge.errors import ValidationBlockingError
from taskforge.events.types import EventType
from taskforge.models import Epic, Story
from taskforge.phases.base import Phase, PhaseName, PhaseResult, UsageMeter

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


PROMPT = """You are the project manager. Break the requirements below into epics and stories.

Repositories: {repositories}

Requirements:
{requirements}

Rules:
- Each epic targets exactly one repository (use the names listed above).
- Each story lists the files it reads, modifies and creates.
- Two epics must never modify or create the same file.

Reply with one JSON object:
{{"epics": [{{"id", "title", "description", "target_repository", "naming_conventions"?, "contracts"?,
  "stories": [{{"id", "title", "description", "files_to_read", "files_to_modify", "files_to_create",
  "complexity"?, "dependencies"?}}]}}]}}"""


def find_overlaps(epics: list[dict[str, Any]]) -> list[str]:
    """
    Find files claimed (modified or created) by stories of more than one epic.

    Returns:
        One message per overlapping path, naming the repository and epics.
    """
    owners: dict[tuple[str, str], list[str]] = defaultdict(list)
    for epic in epics:
        for story in epic["stories"]:
            for path in story["files_to_modify"] + story["files_to_create"]:
                key = (epic["target_repository"], path)
                if epic["id"] not in owners[key]:
                    owners[key].append(epic["id"])

    return [
        f"overlapping work assignment: {repo}:{path} claimed by epics {', '.join(epic_ids)}"
        for (repo, path), epic_ids in sorted(owners.items())
        if len(epic_ids) > 1
    ]


def validate_breakdown(epics: list[dict[str, Any]], repositories: set[str]) -> list[str]:
    """Return every structural problem of a breakdown."""
    errors = []
    if not epics:
        errors.append("breakdown contains no epics")

    epic_ids: set[str] = set()
    story_ids: set[str] = set()
    for epic in epics:
        if epic["id"] in epic_ids:
            errors.append(f"duplicate epic id {epic['id']}")
        epic_ids.add(epic["id"])
        if epic["target_repository"] not in repositories:
            errors.append(f"epic {epic['id']} targets unknown repository {epic['target_repository']}")
        if not epic["stories"]:
            errors.append(f"epic {epic['id']} has no stories")
        for story in epic["stories"]:
            if story["id"] in story_ids:
                errors.append(f"duplicate story id {story['id']}")
            story_ids.add(story["id"])

    errors.extend(find_overlaps(epics))
    return errors


class TaskBreakdownPhase(Phase):
    """Runs the project manager and records the epics and stories."""

    name = PhaseName.TASK_BREAKDOWN

    def build_prompt(self, context: OrchestrationContext) -> str:
        requirements = context.get(ContextKey.REQUIREMENTS) or {"summary": context.task.description}
        return PROMPT.format(
            repositories=", ".join(context.repository_names()),
            requirements=json.dumps(requirements, indent=2),
        )

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        data = self.run_structured(
            context, AgentRole.PROJECT_MANAGER, self.build_prompt(context), meter
        )
        raw_epics = data["epics"]

        errors = validate_breakdown(raw_epics, set(context.repository_names()))
        if errors:
            raise ValidationBlockingError(
                "Task breakdown rejected: " + "; ".join(errors), errors=errors
            )

        epics = [self._to_epic(raw) for raw in raw_epics]
        warnings = self._dependency_warnings(epics)

        with context.lock:
            context.task.orchestration.epics = epics
            context.task.orchestration.team = []
        self.persist(context)
        context.set(ContextKey.BREAKDOWN, data)

        agent = AgentRole.PROJECT_MANAGER.value
        for epic in epics:
            self.emit(context, EventType.EPIC_CREATED, {
                "id": epic.id,
                "title": epic.title,
                "target_repository": epic.target_repository,
                "story_count": len(epic.stories),
            }, agent_name=agent, idempotent=True)
            for story in epic.stories:
                self.emit(context, EventType.STORY_CREATED, {
                    "id": story.id,
                    "epic_id": epic.id,
                    "title": story.title,
                    "target_repository": epic.target_repository,
                    "complexity": story.complexity,
                }, agent_name=agent, idempotent=True)

        return PhaseResult.ok({
            "epic_count": len(epics),
            "story_count": sum(len(e.stories) for e in epics),
            "epics": [e.id for e in epics],
        }, warnings=warnings)

    @staticmethod
    def _to_epic(raw: dict[str, Any]) -> Epic:
        return Epic(
            id=raw["id"],
            title=raw["title"],
            description=raw["description"],
            target_repository=raw["target_repository"],
            naming_conventions=dict(raw.get("naming_conventions", {})),
            contracts=list(raw.get("contracts", [])),
            stories=[
                Story(
                    id=s["id"],
                    epic_id=raw["id"],
                    title=s["title"],
                    description=s["description"],
                    files_to_read=list(s["files_to_read"]),
                    files_to_modify=list(s["files_to_modify"]),
                    files_to_create=list(s["files_to_create"]),
                    complexity=s.get("complexity", "medium"),
                    dependencies=list(s.get("dependencies", [])),
                )
                for s in raw["stories"]
            ],
        )

    @staticmethod
    def _dependency_warnings(epics: list[Epic]) -> list[str]:
        known = {story.id for epic in epics for story in epic.stories}
        return [
            f"story {story.id} depends on unknown story {dep}"
            for epic in epics
            for story in epic.stories
            for dep in story.dependencies
            if dep not in known
        ]
