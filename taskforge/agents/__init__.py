"""Agent execution boundary: roles, requests, results and executors."""

from taskforge.agents.executor import (
    AgentExecutionResult,
    AgentExecutor,
    AgentRequest,
    AgentRole,
    AgentStreamEvent,
    AgentTimeoutError,
    ClaudeCliExecutor,
    ROLE_TOOLS,
)
from taskforge.agents.parsing import extract_json_block

__all__ = [
    "AgentExecutionResult",
    "AgentExecutor",
    "AgentRequest",
    "AgentRole",
    "AgentStreamEvent",
    "AgentTimeoutError",
    "ClaudeCliExecutor",
    "ROLE_TOOLS",
    "extract_json_block",
]
