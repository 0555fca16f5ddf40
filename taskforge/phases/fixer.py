"""Fixer: repair recoverable integration failures, one epic at a time."""

from __future__ import annotations

import json
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from taskforge.agents.executor import AgentRole
from taskforge.context import ContextKey
from taskforge.errors import ErrorCategory
from taskforge.events.types import EventType
from taskforge.phases.base import Phase, PhaseName, PhaseResult, UsageMeter
from taskforge.supervisor import ExecutionSupervisor

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


PROMPT = """You are fixing integration test failures on branch {branch} of {repository}.

Failures:
{failures}

Architecture notes:
{architecture}

Make the smallest change that fixes these failures. Do not commit.
Reply with one JSON object:
{{"fixed": bool, "summary"?: str}}"""


class FixerPhase(Phase):
    """Runs the fixer for each epic with recoverable failures."""

    name = PhaseName.FIXER

    def should_skip(self, context: OrchestrationContext) -> bool:
        # Invoked on demand by the coordinator; every invocation runs
        return False

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        errors: list[dict[str, Any]] = context.get(ContextKey.INTEGRATION_ERRORS) or []
        if not errors:
            return PhaseResult.ok({"fixed_epics": []})

        by_epic: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for error in errors:
            by_epic[error["epic_id"]].append(error)

        vcs = self.services.vcs
        fixed, unfixed, summaries = [], [], {}
        for epic_id, failures in by_epic.items():
            epic = context.task.orchestration.get_epic(epic_id)
            if epic is None or not epic.branch:
                unfixed.append(epic_id)
                continue

            repo_path = context.repo_path(epic.target_repository)
            vcs.checkout(repo_path, epic.branch)
            supervisor = ExecutionSupervisor(
                self.config.supervisor,
                diff_check=lambda: vcs.changed_file_count(repo_path),
                logger=context.logger,
                label=f"fixer-{epic_id}",
            )
            supervisor.start()
            prompt = PROMPT.format(
                branch=epic.branch,
                repository=epic.target_repository,
                failures=json.dumps(
                    [{"test": f["test"], "message": f["message"]} for f in failures], indent=2
                ),
                architecture=epic.architecture_notes or "-",
            )
            data = self.run_structured(
                context, AgentRole.FIXER, prompt, meter,
                workspace=repo_path,
                on_event=supervisor.observe,
                timeout_seconds=self.config.supervisor.wall_clock_seconds,
            )

            sha = vcs.commit_all(repo_path, f"fix integration failures for {epic_id}")
            if data["fixed"] and sha:
                vcs.push(repo_path, epic.branch)
                fixed.append(epic_id)
                summaries[epic_id] = data.get("summary", "")
                self.emit(context, EventType.FIX_APPLIED, {
                    "epic_id": epic_id,
                    "commit_sha": sha,
                    "failure_count": len(failures),
                    "summary": data.get("summary", ""),
                }, agent_name=AgentRole.FIXER.value)
            else:
                unfixed.append(epic_id)

        context.set(ContextKey.FIX_SUMMARY, summaries)
        result_data = {"fixed_epics": fixed, "unfixed_epics": unfixed}
        if unfixed:
            return PhaseResult.fail(
                f"fixer could not resolve failures for {', '.join(unfixed)}",
                ErrorCategory.VALIDATION,
                result_data,
            )
        return PhaseResult.ok(result_data)
