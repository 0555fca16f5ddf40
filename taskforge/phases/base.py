"""
Phase abstraction for the orchestration pipeline.

Every pipeline stage implements the same lifecycle:
- should_skip(context): pure read of persisted state, used on resume
- execute(context): do the work and return a PhaseResult

Expected failures (bad agent output, boundary errors, rejected work) are
returned as PhaseResult(success=False) with an error category; only
programmer errors propagate as exceptions. The coordinator is the only
writer of phase step status.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from taskforge.agents.executor import AgentRequest, AgentRole, StreamCallback
from taskforge.agents.parsing import extract_json_block
from taskforge.errors import ErrorCategory, OrchestrationError
from taskforge.governance.schema_validation import ContractValidationError, SchemaValidationService
from taskforge.governance.secrets import SecretsDetectionService
from taskforge.models import StepStatus, TokenUsage
from taskforge.notifications import Notification, NotificationType

if TYPE_CHECKING:
    from taskforge.agents.executor import AgentExecutionResult, AgentExecutor
    from taskforge.boundaries import Notifier, VersionControl
    from taskforge.config import ForgeConfig
    from taskforge.context import OrchestrationContext
    from taskforge.events.store import EventStore
    from taskforge.events.types import EventType, TaskEvent
    from taskforge.task_store import TaskStore


logger = logging.getLogger(__name__)


class PhaseName(Enum):
    """Names of the pipeline phases (also the step keys on the task)."""
    REQUIREMENTS_ANALYSIS = "requirements_analysis"
    REQUIREMENTS_APPROVAL = "requirements_approval"
    TASK_BREAKDOWN = "task_breakdown"
    BREAKDOWN_APPROVAL = "breakdown_approval"
    TEAM_EXECUTION = "team_execution"
    INTEGRATION_TEST = "integration_test"
    FIXER = "fixer"
    MERGE_APPROVAL = "merge_approval"
    AUTO_MERGE = "auto_merge"


@dataclass
class PhaseResult:
    """The only value a phase returns to the coordinator."""
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    needs_approval: bool = False
    warnings: list[str] = field(default_factory=list)
    error_category: Optional[ErrorCategory] = None
    skipped: bool = False
    recoverable_errors: list[dict[str, Any]] = field(default_factory=list)
    cost_usd: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)

    @classmethod
    def ok(cls, data: Optional[dict[str, Any]] = None, warnings: Optional[list[str]] = None) -> PhaseResult:
        return cls(success=True, data=data or {}, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        error: str,
        category: ErrorCategory = ErrorCategory.FATAL,
        data: Optional[dict[str, Any]] = None,
    ) -> PhaseResult:
        return cls(success=False, error=error, error_category=category, data=data or {})

    @classmethod
    def approval(cls, data: Optional[dict[str, Any]] = None) -> PhaseResult:
        return cls(success=True, needs_approval=True, data=data or {})

    def summary(self) -> dict[str, Any]:
        """Compact, JSON-safe record kept on the context."""
        return {
            "success": self.success,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "needs_approval": self.needs_approval,
            "warnings": list(self.warnings),
            "cost_usd": round(self.cost_usd, 6),
            "output": self.data,
        }


class UsageMeter:
    """Accumulates phase-level agent spend; safe across epic threads."""

    def __init__(self) -> None:
        self.usage = TokenUsage()
        self.cost_usd = 0.0
        self._lock = threading.Lock()

    def add(self, result: AgentExecutionResult) -> None:
        with self._lock:
            self.usage.add(result.usage)
            self.cost_usd += result.cost_usd


@dataclass
class PhaseServices:
    """Collaborators wired once by the coordinator and shared by all phases."""
    config: ForgeConfig
    store: TaskStore
    events: EventStore
    executor: AgentExecutor
    vcs: VersionControl
    notifier: Notifier
    secrets: SecretsDetectionService = field(default_factory=SecretsDetectionService)
    schemas: SchemaValidationService = field(default_factory=SchemaValidationService)


class Phase(ABC):
    """Base class of every pipeline phase."""

    name: PhaseName

    def __init__(self, services: PhaseServices) -> None:
        self.services = services
        self.config = services.config

    @property
    def step_name(self) -> str:
        return self.name.value

    def should_skip(self, context: OrchestrationContext) -> bool:
        """
        Skip a phase already completed in the current run.

        A continuation starts with no steps, so every phase runs again.
        """
        step = context.task.orchestration.steps.get(self.step_name)
        return step is not None and step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

    def execute(self, context: OrchestrationContext) -> PhaseResult:
        """Run the phase; boundary and validation errors become failed results."""
        meter = UsageMeter()
        try:
            result = self.run(context, meter)
        except OrchestrationError as e:
            message = self.services.secrets.sanitize_text(str(e))
            self._log(context, "phase_error", {
                "phase": self.step_name,
                "category": e.category.value,
                "error": message,
            }, level="error")
            result = PhaseResult.fail(
                message,
                category=e.category,
                data={"errors": list(getattr(e, "errors", []))},
            )
        result.usage.add(meter.usage)
        result.cost_usd += meter.cost_usd
        return result

    @abstractmethod
    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        """Phase body. May raise OrchestrationError for expected failures."""
        ...

    # Helpers shared by the concrete phases

    def _log(
        self,
        context: OrchestrationContext,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        if context.logger:
            context.logger.log(event_type, data, level=level)

    def run_agent(
        self,
        context: OrchestrationContext,
        role: AgentRole,
        prompt: str,
        meter: Optional[UsageMeter] = None,
        workspace: Optional[Path] = None,
        on_event: Optional[StreamCallback] = None,
        attachments: Optional[list[str]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> AgentExecutionResult:
        """
        Run one agent execution and redact its output.

        Spend is added to meter when given; developer spend is recorded on
        the team member by the caller instead.
        """
        request = AgentRequest(
            role=role,
            prompt=prompt,
            workspace_path=str(workspace or context.workspace_path),
            model=self.config.claude.model_for(role.value),
            allowed_tools=role.default_tools,
            credential=context.credential.api_key,
            attachments=list(attachments or []),
            max_turns=self.config.claude.max_turns,
            timeout_seconds=timeout_seconds,
        )
        result = self.services.executor.execute(request, on_event=on_event)

        text, warning = self.services.secrets.sanitize_agent_output(role.value, result.output_text)
        result.output_text = text
        if warning:
            context.add_warning(warning)
            self._log(context, "agent_output_redacted", {"role": role.value, "warning": warning}, level="warn")

        if meter is not None:
            meter.add(result)
        context.add_conversation(role.value, text[:2000], phase=self.step_name)
        return result

    def run_structured(
        self,
        context: OrchestrationContext,
        role: AgentRole,
        prompt: str,
        meter: Optional[UsageMeter] = None,
        workspace: Optional[Path] = None,
        on_event: Optional[StreamCallback] = None,
        timeout_seconds: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Run an agent whose output must match the role's contract.

        Invalid output is sent back with the validation errors, up to
        max_schema_repair_attempts times.

        Raises:
            ContractValidationError: Output still invalid after the repairs.
        """
        repairs = self.config.orchestration.max_schema_repair_attempts
        current = prompt
        errors: list[str] = []

        for attempt in range(1, repairs + 2):
            result = self.run_agent(
                context, role, current, meter, workspace,
                on_event=on_event, timeout_seconds=timeout_seconds,
            )
            try:
                data = extract_json_block(result.output_text)
            except ValueError as e:
                errors = [str(e)]
            else:
                errors = self.services.schemas.validate(role.value, data)
                if not errors:
                    return data

            self._log(context, "schema_repair", {
                "role": role.value,
                "attempt": attempt,
                "errors": errors[:10],
            }, level="warn")
            current = (
                f"{prompt}\n\nYour previous answer did not match the required JSON format:\n"
                + "\n".join(f"- {err}" for err in errors)
                + "\nReply with a single corrected JSON object."
            )

        raise ContractValidationError(role.value, errors)

    def emit(
        self,
        context: OrchestrationContext,
        event_type: EventType,
        payload: dict[str, Any],
        agent_name: str = "orchestrator",
        metadata: Optional[dict[str, Any]] = None,
        idempotent: bool = False,
    ) -> TaskEvent:
        """Append a redacted event to the task's log."""
        return self.services.events.append(
            context.task_id,
            event_type,
            self.services.secrets.sanitize_object(payload),
            agent_name=agent_name,
            metadata=metadata,
            idempotent=idempotent,
        )

    def notify(
        self,
        context: OrchestrationContext,
        notification_type: NotificationType,
        message: str,
        **data: Any,
    ) -> None:
        try:
            self.services.notifier.notify(Notification(
                type=notification_type,
                task_id=context.task_id,
                message=message,
                phase=self.step_name,
                data=data,
            ))
        except Exception:
            logger.exception("Notification %s for %s was not delivered", notification_type.value, context.task_id)

    def persist(self, context: OrchestrationContext) -> None:
        """Write the task through to storage."""
        with context.lock:
            self.services.store.save(context.task)
