"""
Orchestration coordinator.

OrchestrationCoordinator.orchestrate_task(task_id) drives a task through
the fixed phase order:

    requirements_analysis -> requirements_approval -> task_breakdown ->
    breakdown_approval -> team_execution -> integration_test ->
    merge_approval -> auto_merge

Before each phase it re-reads the pause/cancel flags from storage, then
asks the budget service whether the phase may start, then runs the phase
under the retry service. Results are interpreted as:

- success: persist, notify, compact the context, pace, continue
- needs_approval: persist and return; a later call resumes the loop
- failure: mark the task failed and stop; no later phase runs

The call is idempotent: completed phases are skipped, so calling it
again after a pause, an approval or a transient failure continues from
the first unfinished phase. Any unexpected exception is caught once at
the top, the task is marked failed and a notification is sent.

continue_task(task_id) re-runs a completed or failed task from the first
phase. Spend carries over into the budget and earlier approvals no longer
count.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from taskforge.agents.executor import AgentExecutor, ClaudeCliExecutor
from taskforge.boundaries import Notifier, VersionControl, WorkspaceProvisioner
from taskforge.config import ForgeConfig
from taskforge.context import ContextCompactor, OrchestrationContext
from taskforge.credentials import CredentialResolver
from taskforge.errors import (
    BudgetExceededError,
    ConfigurationError,
    ErrorCategory,
    TransientError,
    ValidationBlockingError,
    classify_error,
)
from taskforge.events.recovery import RecoveryService
from taskforge.events.store import EventStore
from taskforge.events.types import EventType
from taskforge.governance.budget import CostBudgetService
from taskforge.governance.retry import RetryExhaustedError, RetryService
from taskforge.governance.schema_validation import SchemaValidationService
from taskforge.governance.secrets import SecretsDetectionService
from taskforge.logger import TaskLogger
from taskforge.models import (
    Repository,
    StepStatus,
    StoryStatus,
    Task,
    TaskStatus,
    TokenUsage,
    model_to_json,
    utc_now,
)
from taskforge.notifications import Notification, NotificationService, NotificationType
from taskforge.phases import (
    ApprovalPhase,
    AutoMergePhase,
    FixerPhase,
    IntegrationTestPhase,
    Phase,
    PhaseName,
    PhaseResult,
    PhaseServices,
    RequirementsAnalysisPhase,
    TaskBreakdownPhase,
    TeamExecutionPhase,
)
from taskforge.task_store import TaskStore
from taskforge.vcs import GitClient
from taskforge.workspace import GitWorkspaceProvisioner


logger = logging.getLogger(__name__)

PHASE_ORDER: list[PhaseName] = [
    PhaseName.REQUIREMENTS_ANALYSIS,
    PhaseName.REQUIREMENTS_APPROVAL,
    PhaseName.TASK_BREAKDOWN,
    PhaseName.BREAKDOWN_APPROVAL,
    PhaseName.TEAM_EXECUTION,
    PhaseName.INTEGRATION_TEST,
    PhaseName.MERGE_APPROVAL,
    PhaseName.AUTO_MERGE,
]

MAX_STEP_OUTPUT_CHARS = 20000


@dataclass
class OrchestrationOutcome:
    """What one orchestrate_task call ended with."""
    task_id: str
    status: TaskStatus
    stopped_reason: str              # completed, paused, cancelled, awaiting_approval, failed
    phase: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    total_cost: float = 0.0
    total_tokens: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "stopped_reason": self.stopped_reason,
            "phase": self.phase,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "warnings": list(self.warnings),
        }


class OrchestrationCoordinator:
    """
    Top-level driver of the phase pipeline.

    Owns and wires every service and phase once; phases receive their
    collaborators through PhaseServices.
    """

    def __init__(
        self,
        config: ForgeConfig,
        store: Optional[TaskStore] = None,
        events: Optional[EventStore] = None,
        executor: Optional[AgentExecutor] = None,
        vcs: Optional[VersionControl] = None,
        provisioner: Optional[WorkspaceProvisioner] = None,
        notifier: Optional[Notifier] = None,
        secrets: Optional[SecretsDetectionService] = None,
        budget: Optional[CostBudgetService] = None,
        retry: Optional[RetryService] = None,
        credentials: Optional[CredentialResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store or TaskStore(config)
        self.events = events or EventStore(config.events_path)
        self.secrets = secrets or SecretsDetectionService()
        git = GitClient(config.git)
        self.vcs = vcs or git
        self.provisioner = provisioner or GitWorkspaceProvisioner(config, git)
        self.notifier = notifier or NotificationService()
        self.budget = budget or CostBudgetService(config.budget)
        self.retry = retry or RetryService(config.retry, sleep=sleep)
        self.credentials = credentials or CredentialResolver(self.store, config.credentials)
        self.recovery = RecoveryService(self.events)
        self.compactor = ContextCompactor(
            config.orchestration.compaction_history_threshold,
            config.orchestration.compaction_keep_recent,
        )
        self._sleep = sleep

        services = PhaseServices(
            config=config,
            store=self.store,
            events=self.events,
            executor=executor or ClaudeCliExecutor(config),
            vcs=self.vcs,
            notifier=self.notifier,
            secrets=self.secrets,
            schemas=SchemaValidationService(),
        )
        self.phases: dict[PhaseName, Phase] = {
            PhaseName.REQUIREMENTS_ANALYSIS: RequirementsAnalysisPhase(services),
            PhaseName.REQUIREMENTS_APPROVAL: ApprovalPhase(
                services, PhaseName.REQUIREMENTS_APPROVAL, PhaseName.REQUIREMENTS_ANALYSIS
            ),
            PhaseName.TASK_BREAKDOWN: TaskBreakdownPhase(services),
            PhaseName.BREAKDOWN_APPROVAL: ApprovalPhase(
                services, PhaseName.BREAKDOWN_APPROVAL, PhaseName.TASK_BREAKDOWN
            ),
            PhaseName.TEAM_EXECUTION: TeamExecutionPhase(services),
            PhaseName.INTEGRATION_TEST: IntegrationTestPhase(services),
            PhaseName.FIXER: FixerPhase(services),
            PhaseName.MERGE_APPROVAL: ApprovalPhase(
                services, PhaseName.MERGE_APPROVAL, PhaseName.INTEGRATION_TEST
            ),
            PhaseName.AUTO_MERGE: AutoMergePhase(services),
        }

    # Entry point

    def orchestrate_task(self, task_id: str) -> OrchestrationOutcome:
        """
        Run (or resume) the pipeline for a task.

        Raises:
            ConfigurationError: If the task does not exist.
        """
        task = self.store.load(task_id)
        if task is None:
            raise ConfigurationError(f"Task {task_id} not found")

        if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            return self._outcome(task, task.status.value)

        task_logger = TaskLogger(task_id, self.config, self.secrets)
        try:
            return self._run(task, task_logger)
        except Exception as e:
            return self._fail_unexpected(task, e, task_logger)

    def continue_task(self, task_id: str, actor: str = "cli") -> OrchestrationOutcome:
        """
        Re-execute every phase of a completed or failed task.

        Raises:
            ConfigurationError: If the task does not exist.
            ValidationBlockingError: If the task is not completed or failed.
        """
        task = self.store.load(task_id)
        if task is None:
            raise ConfigurationError(f"Task {task_id} not found")
        if task.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            raise ValidationBlockingError(
                f"Task {task_id} is {task.status.value}; only completed or failed tasks can be re-run"
            )

        carried_cost, carried_tokens = task.recompute_totals()
        # Logged before the cache is reset so recovery never refolds the old run
        self.events.append(task.id, EventType.TASK_CONTINUED, {
            "actor": actor,
            "previous_status": task.status.value,
            "carried_cost": carried_cost,
            "carried_tokens": carried_tokens,
        })
        task.orchestration.start_continuation()
        task.status = TaskStatus.PENDING
        task.error = None
        task.completed_at = None
        self.store.save(task)
        logger.info(f"Task {task_id} continued by {actor} (${carried_cost:.2f} carried)")

        return self.orchestrate_task(task_id)

    # Main loop

    def _run(self, task: Task, task_logger: TaskLogger) -> OrchestrationOutcome:
        report = self.recovery.reconcile(task)
        task.recompute_totals()
        if report.changed:
            task_logger.warn("task_state_recovered", {"changes": report.changes})
        self.store.save(task)

        repositories = self._load_repositories(task)
        credential = self.credentials.resolve(task)
        workspace = self.provisioner.provision(task.id, repositories)

        context = OrchestrationContext(
            task=task,
            repositories=repositories,
            workspace_path=workspace,
            credential=credential,
            logger=task_logger,
        )
        context.restore_checkpoint(task.orchestration.checkpoint)

        if task.status != TaskStatus.IN_PROGRESS:
            task.status = TaskStatus.IN_PROGRESS
            task.error = None
            self.store.save(task)
            self.events.append(task.id, EventType.TASK_STARTED, {
                "title": task.title,
                "continuation": task.orchestration.continuation,
            })
        task_logger.info("orchestration_started", {
            "repositories": [r.name for r in repositories],
            "credential_source": credential.source,
        })

        for phase_name in PHASE_ORDER:
            phase = self.phases[phase_name]

            stop = self._check_control_flags(context, phase_name)
            if stop is not None:
                return stop

            if phase.should_skip(context):
                task_logger.debug("phase_skipped", {"phase": phase_name.value})
                continue

            check = self.budget.check_budget_before_phase(task, phase.step_name)
            if not check.allowed:
                error = BudgetExceededError(phase.step_name, check.current_cost, check.ceiling, check.reason or "")
                return self._fail_task(context, phase_name, PhaseResult.fail(str(error), ErrorCategory.BUDGET))
            if check.warning:
                self.events.append(task.id, EventType.BUDGET_WARNING, {
                    "phase": phase.step_name,
                    "reason": check.warning,
                })
                self._notify(task.id, NotificationType.CONSOLE_LOG, check.warning, phase.step_name)

            result = self._execute_phase(context, phase)

            if phase_name == PhaseName.INTEGRATION_TEST and result.recoverable_errors:
                result = self._fix_and_retest(context, result)

            if not result.success:
                return self._fail_task(context, phase_name, result)

            if result.needs_approval:
                task_logger.info("awaiting_approval", {"phase": phase_name.value})
                return self._outcome(task, "awaiting_approval", phase=phase_name.value, warnings=result.warnings)

            if not result.skipped:
                self._sleep(self.config.orchestration.phase_delay_seconds)

        return self._complete_task(context)

    def _check_control_flags(
        self, context: OrchestrationContext, next_phase: PhaseName
    ) -> Optional[OrchestrationOutcome]:
        """Fresh read of pause/cancel; returns an outcome when the loop must stop."""
        task = context.task
        paused, cancel = self.store.read_control_flags(task.id)
        task.orchestration.paused = paused
        task.orchestration.cancel_requested = cancel

        if cancel.active:
            task.status = TaskStatus.CANCELLED
            task.completed_at = utc_now()
            self.store.save(task)
            self.events.append(task.id, EventType.TASK_CANCELLED, {
                "actor": cancel.actor or "unknown",
                "phase": next_phase.value,
            })
            self._notify(task.id, NotificationType.TASK_FAILED, f"Task cancelled by {cancel.actor}")
            context.logger.info("task_cancelled", {"actor": cancel.actor})
            return self._outcome(task, "cancelled", phase=next_phase.value)

        if paused.active:
            self.events.append(task.id, EventType.TASK_PAUSED, {
                "actor": paused.actor,
                "phase": next_phase.value,
            })
            self._notify(task.id, NotificationType.CONSOLE_LOG, f"Task paused before {next_phase.value}")
            context.logger.info("task_paused", {"actor": paused.actor, "next_phase": next_phase.value})
            return self._outcome(task, "paused", phase=next_phase.value)

        return None

    # Phase execution

    def _execute_phase(self, context: OrchestrationContext, phase: Phase) -> PhaseResult:
        task = context.task
        orch = task.orchestration
        name = phase.step_name

        step = orch.get_step(name)
        step.status = StepStatus.IN_PROGRESS
        step.started_at = utc_now()
        step.completed_at = None
        step.error = None
        step.attempts += 1
        orch.current_phase = name
        self.store.save(task)
        self.events.append(task.id, EventType.PHASE_STARTED, {"phase": name, "attempt": step.attempts})
        self._notify(task.id, NotificationType.PHASE_STARTED, f"Starting {name}", name)

        member_cost_before = sum(m.cost_usd for m in orch.team)
        spent = {"cost": 0.0}
        usage = TokenUsage()

        def attempt() -> PhaseResult:
            outcome = phase.execute(context)
            usage.add(outcome.usage)
            spent["cost"] += outcome.cost_usd
            if not outcome.success and outcome.error_category == ErrorCategory.TRANSIENT:
                raise TransientError(outcome.error or f"{name} failed transiently")
            return outcome

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            self._notify(
                task.id, NotificationType.CONSOLE_LOG,
                f"{name} attempt {attempt_number} failed ({error}); retrying in {delay:.1f}s", name,
            )

        with context.logger.phase_context(name):
            try:
                result = self.retry.execute_with_retry(attempt, name, on_retry=on_retry)
            except RetryExhaustedError as e:
                result = PhaseResult.fail(str(e), ErrorCategory.VALIDATION)

        result.usage = usage
        result.cost_usd = spent["cost"]
        phase_cost = result.cost_usd + sum(m.cost_usd for m in orch.team) - member_cost_before

        with context.lock:
            step.usage.add(usage)
            step.cost_usd = round(step.cost_usd + result.cost_usd, 6)
            step.output = model_to_json(self.secrets.sanitize_object(result.data))[:MAX_STEP_OUTPUT_CHARS]
            if result.needs_approval:
                step.status = StepStatus.AWAITING_APPROVAL
            elif result.success:
                step.status = StepStatus.SKIPPED if result.skipped else StepStatus.COMPLETED
                step.completed_at = utc_now()
            else:
                step.status = StepStatus.FAILED
                step.error = result.error
                step.completed_at = utc_now()
            task.recompute_totals()
            self.store.save(task)

        context.record_phase_result(name, result.summary())
        self.budget.check_phase_cost(phase_cost, name)

        if result.needs_approval:
            pass
        elif result.success and result.skipped:
            self.events.append(task.id, EventType.PHASE_SKIPPED, {"phase": name})
        elif result.success:
            self.events.append(task.id, EventType.PHASE_COMPLETED, {
                "phase": name,
                "cost_usd": round(phase_cost, 6),
                "warnings": result.warnings,
            }, metadata={"cost": round(phase_cost, 6)})
            self._notify(task.id, NotificationType.PHASE_COMPLETED, f"Completed {name}", name,
                         cost_usd=round(phase_cost, 6))
            self._compact(context)
        else:
            self.events.append(task.id, EventType.PHASE_FAILED, {
                "phase": name,
                "error": result.error or "unknown error",
                "category": result.error_category.value if result.error_category else None,
            }, metadata={"cost": round(phase_cost, 6)})
            self._notify(task.id, NotificationType.PHASE_FAILED, f"{name} failed: {result.error}", name)

        context.save_checkpoint()
        self.store.save(task)
        return result

    def _fix_and_retest(self, context: OrchestrationContext, result: PhaseResult) -> PhaseResult:
        """Run the fixer, then the integration test once more, per fixer attempt."""
        attempts = self.config.orchestration.max_fixer_attempts
        for _ in range(attempts):
            fix = self._execute_phase(context, self.phases[PhaseName.FIXER])
            if not fix.success:
                return PhaseResult.fail(
                    f"{result.error}; fixer failed: {fix.error}", ErrorCategory.VALIDATION
                )
            result = self._execute_phase(context, self.phases[PhaseName.INTEGRATION_TEST])
            if result.success or not result.recoverable_errors:
                return result

        return PhaseResult.fail(
            f"integration failures remain after {attempts} fix attempt(s): {result.error}",
            ErrorCategory.VALIDATION,
        )

    def _compact(self, context: OrchestrationContext) -> None:
        if self.compactor.should_compact(context):
            removed = self.compactor.compact(context)
            context.logger.info("context_compacted", {
                "removed_entries": removed,
                "compactions": context.compactions,
            })

    # Finalization

    def _complete_task(self, context: OrchestrationContext) -> OrchestrationOutcome:
        task = context.task
        orch = task.orchestration
        total_cost, total_tokens = task.recompute_totals()
        task.status = TaskStatus.COMPLETED
        task.completed_at = utc_now()
        orch.current_phase = None
        orch.continuation = False
        context.save_checkpoint()
        self.store.save(task)

        summary = {
            "total_cost": total_cost,
            "total_tokens": total_tokens,
            "epics": len(orch.epics),
            "merged_epics": [e.id for e in orch.epics if e.merged],
            "failed_stories": [s.id for s in orch.all_stories() if s.status == StoryStatus.FAILED],
        }
        self.events.append(task.id, EventType.TASK_COMPLETED, summary)
        self._notify(task.id, NotificationType.TASK_COMPLETED,
                     f"Task completed (${total_cost:.2f}, {total_tokens} tokens)", **summary)
        context.logger.info("orchestration_completed", summary)
        return self._outcome(task, "completed")

    def _fail_task(
        self, context: OrchestrationContext, phase_name: PhaseName, result: PhaseResult
    ) -> OrchestrationOutcome:
        task = context.task
        category = result.error_category or ErrorCategory.FATAL
        error = self.secrets.sanitize_text(result.error or "unknown error")

        task.status = TaskStatus.FAILED
        task.error = f"{phase_name.value}: {error}"
        task.recompute_totals()
        self.store.save(task)

        self.events.append(task.id, EventType.TASK_FAILED, {
            "error": task.error,
            "phase": phase_name.value,
            "category": category.value,
        })
        self._notify(task.id, NotificationType.TASK_FAILED, task.error, phase_name.value,
                     category=category.value)
        context.logger.error("orchestration_failed", {
            "phase": phase_name.value,
            "category": category.value,
            "error": error,
        })
        return self._outcome(
            task, "failed",
            phase=phase_name.value,
            error=task.error,
            error_category=category,
            warnings=result.warnings,
        )

    def _fail_unexpected(self, task: Task, error: Exception, task_logger: TaskLogger) -> OrchestrationOutcome:
        """Top-level handler: the task never stays in_progress after a crash."""
        category = classify_error(error)
        message = self.secrets.sanitize_text(f"{type(error).__name__}: {error}")
        logger.exception("Orchestration of %s failed", task.id)
        task_logger.error("orchestration_crashed", {"error": message, "category": category.value})

        for step in task.orchestration.in_progress_steps():
            step.status = StepStatus.FAILED
            step.error = message
            step.completed_at = utc_now()
        task.status = TaskStatus.FAILED
        task.error = message

        try:
            self.store.save(task)
            self.events.append(task.id, EventType.TASK_FAILED, {
                "error": message,
                "phase": task.orchestration.current_phase,
                "category": category.value,
            })
        except Exception:
            logger.exception("Could not record failure of %s", task.id)

        self._notify(task.id, NotificationType.TASK_FAILED, message, task.orchestration.current_phase,
                     category=category.value)
        return self._outcome(
            task, "failed",
            phase=task.orchestration.current_phase,
            error=message,
            error_category=category,
        )

    # Helpers

    def _load_repositories(self, task: Task) -> list[Repository]:
        """
        Load and check the task's repositories.

        Raises:
            ConfigurationError: Missing repositories, another owner, or no
                repository type.
        """
        if not task.repository_ids:
            raise ConfigurationError(f"Task {task.id} has no repositories selected")

        repositories = self.store.get_repositories(task.repository_ids)
        missing = sorted(set(task.repository_ids) - {r.id for r in repositories})
        if missing:
            raise ConfigurationError(f"Repositories not found: {', '.join(missing)}")

        for repo in repositories:
            if repo.owner_id != task.owner_id:
                raise ConfigurationError(
                    f"Repository {repo.name} belongs to a different user than task {task.id}"
                )
            if not repo.repo_type:
                raise ConfigurationError(f"Repository {repo.name} has no repository type")
        return repositories

    def _notify(
        self,
        task_id: str,
        notification_type: NotificationType,
        message: str,
        phase: Optional[str] = None,
        **data: Any,
    ) -> None:
        try:
            self.notifier.notify(Notification(
                type=notification_type,
                task_id=task_id,
                message=message,
                phase=phase,
                data=data,
            ))
        except Exception:
            logger.exception("Notification %s for %s was not delivered", notification_type.value, task_id)

    @staticmethod
    def _outcome(
        task: Task,
        stopped_reason: str,
        phase: Optional[str] = None,
        error: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        warnings: Optional[list[str]] = None,
    ) -> OrchestrationOutcome:
        return OrchestrationOutcome(
            task_id=task.id,
            status=task.status,
            stopped_reason=stopped_reason,
            phase=phase,
            error=error,
            error_category=error_category,
            total_cost=task.orchestration.total_cost,
            total_tokens=task.orchestration.total_tokens,
            warnings=list(warnings or []),
        )
