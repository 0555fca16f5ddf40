"""
Agent execution boundary.

This module provides:
- AgentRole, the closed set of agent roles the pipeline invokes
- AgentRequest / AgentExecutionResult / AgentStreamEvent records
- The AgentExecutor protocol every executor implements
- ClaudeCliExecutor, which runs the Claude Code CLI with stream-json
  output, forwards tool-use/tool-result events to a callback, and
  terminates the subprocess when the callback raises (cancellation)
"""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from taskforge.errors import AgentExecutionError, ErrorCategory
from taskforge.models import TokenUsage

if TYPE_CHECKING:
    from taskforge.config import ForgeConfig
    from taskforge.logger import TaskLogger


class AgentRole(Enum):
    """Every agent role the pipeline invokes."""
    REQUIREMENTS_ANALYST = "requirements_analyst"
    PROJECT_MANAGER = "project_manager"
    ARCHITECT = "architect"
    DEVELOPER = "developer"
    REVIEWER = "reviewer"
    QA_ENGINEER = "qa_engineer"
    FIXER = "fixer"

    @property
    def default_tools(self) -> list[str]:
        return list(ROLE_TOOLS[self])

    @property
    def writes_code(self) -> bool:
        return self in (AgentRole.DEVELOPER, AgentRole.FIXER)


READ_TOOLS = ["Read", "Glob", "Grep"]
WRITE_TOOLS = ["Read", "Write", "Edit", "MultiEdit", "Glob", "Grep", "Bash"]

# One entry per role; tests assert the mapping covers AgentRole exactly.
ROLE_TOOLS: dict[AgentRole, list[str]] = {
    AgentRole.REQUIREMENTS_ANALYST: READ_TOOLS,
    AgentRole.PROJECT_MANAGER: READ_TOOLS,
    AgentRole.ARCHITECT: READ_TOOLS,
    AgentRole.DEVELOPER: WRITE_TOOLS,
    AgentRole.REVIEWER: READ_TOOLS + ["Bash"],
    AgentRole.QA_ENGINEER: READ_TOOLS + ["Bash"],
    AgentRole.FIXER: WRITE_TOOLS,
}


class AgentTimeoutError(AgentExecutionError):
    """Raised when an execution exceeds its hard timeout."""

    def __init__(self, message: str, elapsed_seconds: float = 0.0) -> None:
        super().__init__(message, category=ErrorCategory.TRANSIENT)
        self.elapsed_seconds = elapsed_seconds


@dataclass
class AgentRequest:
    """One agent execution."""
    role: AgentRole
    prompt: str
    workspace_path: str
    model: str
    allowed_tools: list[str] = field(default_factory=list)
    credential: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    max_turns: Optional[int] = None
    timeout_seconds: Optional[int] = None


@dataclass
class AgentStreamEvent:
    """An intermediate event from a running execution."""
    kind: str                        # tool_use, tool_result, text, usage
    turn: int
    tool_name: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    usage: Optional[TokenUsage] = None  # per-turn tokens, on "usage" events only

    @property
    def is_tool_use(self) -> bool:
        return self.kind == "tool_use"


@dataclass
class AgentExecutionResult:
    """Final result of an agent execution."""
    output_text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    session_id: str = ""
    num_turns: int = 0


StreamCallback = Callable[[AgentStreamEvent], None]


class AgentExecutor(Protocol):
    """
    Contract for running an agent.

    Implementations call on_event for each intermediate event. If on_event
    raises, the execution is cancelled and the exception propagates.
    """

    def execute(
        self,
        request: AgentRequest,
        on_event: Optional[StreamCallback] = None,
    ) -> AgentExecutionResult:
        ...


@dataclass
class ClaudeCliExecutor:
    """
    Executor backed by the Claude Code CLI.

    Runs `claude --print --output-format stream-json` in the workspace and
    reads its newline-delimited JSON messages as they arrive.
    """

    config: ForgeConfig
    logger: Optional[TaskLogger] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _build_prompt(self, request: AgentRequest) -> str:
        """Prepend attachment contents to the prompt."""
        parts = []
        for file_path in request.attachments:
            path = Path(file_path)
            if path.is_file():
                try:
                    parts.append(f"File: {file_path}\n```\n{path.read_text()}\n```\n")
                except (OSError, UnicodeDecodeError):
                    self._log("attachment_unreadable", {"file": file_path}, level="warn")
        if not parts:
            return request.prompt
        return "Attached files:\n\n" + "\n".join(parts) + "\n---\n\n" + request.prompt

    def _build_command(self, request: AgentRequest) -> list[str]:
        """Build the CLI command."""
        cmd = [
            self.config.claude.binary,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--max-turns", str(request.max_turns or self.config.claude.max_turns),
            "--model", request.model,
        ]
        # Empty list disables all tools
        cmd.extend(["--allowedTools", ",".join(request.allowed_tools)])
        # "--" keeps prompts that start with dashes from being parsed as options
        cmd.extend(["--", self._build_prompt(request)])
        return cmd

    def _build_env(self, request: AgentRequest) -> dict[str, str]:
        env = os.environ.copy()
        if request.credential:
            env["ANTHROPIC_API_KEY"] = request.credential
        return env

    @staticmethod
    def _stream_events(message: dict[str, Any], turn: int) -> list[AgentStreamEvent]:
        """Translate one stream-json message into stream events."""
        events: list[AgentStreamEvent] = []
        usage = message.get("message", {}).get("usage")
        if isinstance(usage, dict):
            events.append(AgentStreamEvent(kind="usage", turn=turn, usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            )))
        content = message.get("message", {}).get("content", [])
        if not isinstance(content, list):
            return events
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "tool_use":
                events.append(AgentStreamEvent(
                    kind="tool_use",
                    turn=turn,
                    tool_name=item.get("name"),
                    data=item.get("input") or {},
                ))
            elif item.get("type") == "tool_result":
                events.append(AgentStreamEvent(
                    kind="tool_result",
                    turn=turn,
                    data={"is_error": bool(item.get("is_error")),
                          "tool_use_id": item.get("tool_use_id")},
                ))
            elif item.get("type") == "text":
                events.append(AgentStreamEvent(kind="text", turn=turn,
                                               data={"text": item.get("text", "")}))
        return events

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def execute(
        self,
        request: AgentRequest,
        on_event: Optional[StreamCallback] = None,
    ) -> AgentExecutionResult:
        """
        Run one agent execution.

        Raises:
            AgentExecutionError: CLI failure, unparseable output or an
                error result (category from the error text).
            AgentTimeoutError: Hard timeout reached.
            Exception: Whatever on_event raised (after terminating the CLI).
        """
        cmd = self._build_command(request)
        timeout_seconds = request.timeout_seconds or self.config.claude.timeout_seconds

        self._log("agent_execution_start", {
            "role": request.role.value,
            "model": request.model,
            "prompt_length": len(request.prompt),
            "allowed_tools": request.allowed_tools,
            "timeout": timeout_seconds,
        })

        timed_out = threading.Event()
        final: Optional[dict[str, Any]] = None
        turn = 0

        with tempfile.TemporaryFile(mode="w+") as stderr_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    cwd=request.workspace_path,
                    env=self._build_env(request),
                )
            except FileNotFoundError:
                raise AgentExecutionError(
                    f"Claude CLI not found: {self.config.claude.binary}",
                    category=ErrorCategory.FATAL,
                )
            stdout = proc.stdout
            if stdout is None:
                self._terminate(proc)
                raise AgentExecutionError("Claude CLI started without a stdout pipe", category=ErrorCategory.FATAL)

            def on_timeout() -> None:
                timed_out.set()
                self._terminate(proc)

            timer = threading.Timer(timeout_seconds, on_timeout)
            timer.daemon = True
            timer.start()
            try:
                for line in stdout:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        message = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    msg_type = message.get("type")
                    if msg_type == "assistant":
                        turn += 1
                    if msg_type == "result":
                        final = message
                        continue
                    if on_event is not None and msg_type in ("assistant", "user"):
                        for event in self._stream_events(message, turn):
                            on_event(event)
                proc.wait()
            except BaseException:
                self._terminate(proc)
                self._log("agent_execution_cancelled", {
                    "role": request.role.value,
                    "turn": turn,
                }, level="warn")
                raise
            finally:
                timer.cancel()

            stderr_file.seek(0)
            stderr = stderr_file.read()

        if timed_out.is_set():
            self._log("agent_execution_timeout", {"timeout_seconds": timeout_seconds}, level="error")
            raise AgentTimeoutError(
                f"Agent execution timed out after {timeout_seconds} seconds",
                elapsed_seconds=float(timeout_seconds),
            )

        if proc.returncode != 0:
            self._log("agent_execution_error", {
                "returncode": proc.returncode,
                "stderr": stderr[:500],
            }, level="error")
            raise AgentExecutionError(
                f"Claude CLI exited with code {proc.returncode}",
                stderr=stderr,
                returncode=proc.returncode,
            )

        if final is None:
            raise AgentExecutionError("Claude CLI produced no result message", stderr=stderr[:500])

        subtype = final.get("subtype", "")
        if final.get("is_error") or subtype.startswith("error_"):
            raise AgentExecutionError(
                f"Claude CLI returned error: {subtype or final.get('result', '')}",
                stderr=f"subtype={subtype}, num_turns={final.get('num_turns', 0)}",
                returncode=0,
            )

        usage = final.get("usage") or {}
        result = AgentExecutionResult(
            output_text=final.get("result", ""),
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
            cost_usd=float(final.get("total_cost_usd", 0.0) or 0.0),
            session_id=final.get("session_id", ""),
            num_turns=int(final.get("num_turns", turn)),
        )

        self._log("agent_execution_complete", {
            "role": request.role.value,
            "cost_usd": result.cost_usd,
            "num_turns": result.num_turns,
            "session_id": result.session_id,
        })
        return result
