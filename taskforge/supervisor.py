"""
Execution supervisor for developer agent runs.

Watches the tool-use stream of a running coding-agent execution and aborts
it when it stagnates. Four conditions are evaluated:

- Read-dominant stall: many reads and no writes after a number of turns,
  or a sustained read/write ratio above the fatal threshold
- Idle stall: too many turns since the last write/edit
- No-op stall: a periodic workspace diff finding no changed files
- Wall-clock timeout: execution running past a fixed ceiling

Turn-based checks run on a fixed cadence (every check_interval_turns
turns), not on every event. The wall clock is checked on every event.
Fatal conditions raise; the executor then terminates the agent process.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from taskforge.agents.executor import AgentStreamEvent
from taskforge.config import SupervisorConfig
from taskforge.errors import ErrorCategory, OrchestrationError
from taskforge.models import TokenUsage

if TYPE_CHECKING:
    from taskforge.logger import TaskLogger


READ_TOOLS = frozenset({"Read", "Glob", "Grep", "LS", "NotebookRead"})
WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


class ExecutionStalledError(OrchestrationError):
    """Raised when an execution stops making progress."""

    category = ErrorCategory.STAGNATION

    def __init__(self, reason: str, turn: int = 0) -> None:
        super().__init__(f"stalled: {reason}")
        self.reason = reason
        self.turn = turn


class ExecutionTimeoutError(OrchestrationError):
    """Raised when an execution exceeds its wall-clock ceiling."""

    category = ErrorCategory.STAGNATION

    def __init__(self, elapsed_seconds: float, limit_seconds: float) -> None:
        super().__init__(
            f"timeout: execution ran {elapsed_seconds:.0f}s, limit is {limit_seconds:.0f}s"
        )
        self.elapsed_seconds = elapsed_seconds
        self.limit_seconds = limit_seconds


@dataclass
class SupervisorVerdict:
    """Result of one cadence check."""
    status: str                      # ok, warning, fatal
    turn: int
    reasons: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class ExecutionSupervisor:
    """
    Stagnation monitor for one agent execution.

    Usage:
        supervisor = ExecutionSupervisor(config.supervisor, diff_check=count_changes)
        supervisor.start()
        executor.execute(request, on_event=supervisor.observe)
    """

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        diff_check: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[TaskLogger] = None,
        label: str = "",
    ) -> None:
        """
        Args:
            config: Thresholds. Defaults to SupervisorConfig().
            diff_check: Returns the number of changed files in the workspace.
                When omitted, the no-op stall check is skipped.
            clock: Monotonic seconds source (injected in tests).
            logger: Optional task logger for warnings and aborts.
            label: Identifies the supervised execution in logs (e.g. story id).
        """
        self.config = config or SupervisorConfig()
        self._diff_check = diff_check
        self._clock = clock
        self._logger = logger
        self.label = label

        self.reads = 0
        self.writes = 0
        self.turn = 0
        self.last_write_turn = 0
        self.files_written: set[str] = set()
        self.warnings: list[str] = []
        self.usage = TokenUsage()  # tokens reported so far; kept when the run is aborted
        self._started_at: Optional[float] = None
        self._last_check_bucket = 0
        self._last_diff_bucket = -1

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def start(self) -> None:
        """Mark the start of the execution (for the wall clock)."""
        self._started_at = self._clock()

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def observe(self, event: AgentStreamEvent) -> Optional[SupervisorVerdict]:
        """
        Record one stream event and run any due checks.

        Returns:
            The verdict when a cadence check ran, else None.

        Raises:
            ExecutionStalledError: A stall condition is fatal.
            ExecutionTimeoutError: The wall clock is exceeded.
        """
        if self._started_at is None:
            self.start()

        self.turn = max(self.turn, event.turn)
        if event.usage is not None:
            self.usage.add(event.usage)

        if event.is_tool_use and event.tool_name:
            if event.tool_name in WRITE_TOOLS:
                self.writes += 1
                self.last_write_turn = self.turn
                path = event.data.get("file_path") or event.data.get("notebook_path")
                if path:
                    self.files_written.add(str(path))
            elif event.tool_name in READ_TOOLS:
                self.reads += 1

        self.check_wall_clock()

        bucket = self.turn // self.config.check_interval_turns
        if bucket > self._last_check_bucket:
            self._last_check_bucket = bucket
            return self.check(self.turn)
        return None

    def check_wall_clock(self) -> None:
        """Raise ExecutionTimeoutError when the ceiling is exceeded."""
        elapsed = self.elapsed_seconds
        if elapsed > self.config.wall_clock_seconds:
            self._log("supervisor_abort", {
                "label": self.label,
                "reason": "wall_clock",
                "elapsed_seconds": round(elapsed, 1),
            }, level="error")
            raise ExecutionTimeoutError(elapsed, self.config.wall_clock_seconds)

    def check(self, turn: int) -> SupervisorVerdict:
        """
        Run the turn-based checks for the given turn.

        Raises:
            ExecutionStalledError: On the first fatal condition.
        """
        cfg = self.config
        warnings: list[str] = []

        # Read-dominant stall
        if self.writes == 0 and self.reads >= cfg.min_reads_without_write and turn >= cfg.read_stall_turn:
            self._abort(f"{self.reads} reads and no writes after {turn} turns", turn)

        ratio = self.reads / max(self.writes, 1)
        if self.writes > 0:
            if ratio > cfg.ratio_fatal and turn >= cfg.ratio_fatal_after_turn:
                self._abort(
                    f"read/write ratio {ratio:.1f}:1 exceeds {cfg.ratio_fatal}:1 after {turn} turns",
                    turn,
                )
            if ratio > cfg.ratio_warning:
                warnings.append(f"read/write ratio {ratio:.1f}:1 above {cfg.ratio_warning}:1")

        # Idle stall
        idle = turn - self.last_write_turn
        if idle > cfg.idle_fatal_turns:
            self._abort(f"no write/edit for {idle} turns", turn)
        if idle > cfg.idle_warning_turns:
            warnings.append(f"no write/edit for {idle} turns")

        # No-op stall
        if self._diff_check is not None and turn >= cfg.diff_check_start_turn:
            diff_bucket = (turn - cfg.diff_check_start_turn) // cfg.diff_check_interval_turns
            if diff_bucket > self._last_diff_bucket:
                self._last_diff_bucket = diff_bucket
                changed = self._diff_check()
                if changed == 0:
                    if turn >= cfg.diff_fatal_after_turn:
                        self._abort(f"workspace has no file changes after {turn} turns", turn)
                    warnings.append(f"workspace has no file changes at turn {turn}")

        if warnings:
            self.warnings.extend(warnings)
            self._log("supervisor_warning", {
                "label": self.label,
                "turn": turn,
                "warnings": warnings,
                "reads": self.reads,
                "writes": self.writes,
            }, level="warn")
            return SupervisorVerdict(status="warning", turn=turn, reasons=warnings)

        return SupervisorVerdict(status="ok", turn=turn)

    def _abort(self, reason: str, turn: int) -> None:
        self._log("supervisor_abort", {
            "label": self.label,
            "reason": reason,
            "turn": turn,
            "reads": self.reads,
            "writes": self.writes,
        }, level="error")
        raise ExecutionStalledError(reason, turn=turn)

    def metrics(self) -> dict[str, Any]:
        return {
            "turn": self.turn,
            "reads": self.reads,
            "writes": self.writes,
            "files_written": sorted(self.files_written),
            "last_write_turn": self.last_write_turn,
            "tokens": self.usage.total,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "warnings": list(self.warnings),
        }
