"""Tests for the Claude CLI executor and JSON extraction from agent output."""

import io
import json
from unittest.mock import patch

import pytest

from taskforge.agents import (
    AgentRequest,
    AgentRole,
    ClaudeCliExecutor,
    ROLE_TOOLS,
    extract_json_block,
)
from taskforge.errors import AgentExecutionError, ErrorCategory


class FakeProcess:
    """Stands in for subprocess.Popen running the CLI."""

    def __init__(self, lines, returncode=0):
        self.stdout = io.StringIO("".join(json.dumps(line) + "\n" for line in lines))
        self.returncode = None
        self._final_returncode = returncode
        self.terminated = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = self._final_returncode
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9


def assistant(*content):
    return {"type": "assistant", "message": {"content": list(content)}}


def tool_use(name, **inputs):
    return {"type": "tool_use", "name": name, "input": inputs}


def result(text="done", cost=0.25, **extra):
    message = {
        "type": "result",
        "subtype": "success",
        "result": text,
        "total_cost_usd": cost,
        "usage": {"input_tokens": 1200, "output_tokens": 300},
        "session_id": "sess-1",
        "num_turns": 2,
    }
    message.update(extra)
    return message


@pytest.fixture
def cli_executor(config):
    return ClaudeCliExecutor(config)


@pytest.fixture
def request_(tmp_path):
    return AgentRequest(
        role=AgentRole.DEVELOPER,
        prompt="--implement the story",
        workspace_path=str(tmp_path),
        model="claude-sonnet-4-5",
        allowed_tools=ROLE_TOOLS[AgentRole.DEVELOPER],
        credential="task-key",
    )


class TestRoles:
    def test_every_role_has_tools(self):
        assert set(ROLE_TOOLS) == set(AgentRole)

    def test_only_developer_and_fixer_write(self):
        writers = {role for role in AgentRole if role.writes_code}
        assert writers == {AgentRole.DEVELOPER, AgentRole.FIXER}
        assert "Write" not in AgentRole.REVIEWER.default_tools


class TestClaudeCliExecutor:
    def test_successful_execution(self, cli_executor, request_):
        process = FakeProcess([
            assistant(tool_use("Read", file_path="a.py")),
            assistant(tool_use("Write", file_path="a.py"), {"type": "text", "text": "ok"}),
            result(),
        ])
        events = []
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process) as popen:
            outcome = cli_executor.execute(request_, on_event=events.append)

        assert outcome.output_text == "done"
        assert outcome.cost_usd == 0.25
        assert outcome.usage.total == 1500
        assert outcome.session_id == "sess-1"
        assert [(e.kind, e.turn, e.tool_name) for e in events] == [
            ("tool_use", 1, "Read"), ("tool_use", 2, "Write"), ("text", 2, None),
        ]

        cmd = popen.call_args[0][0]
        kwargs = popen.call_args[1]
        assert cmd[:3] == ["claude", "--print", "--verbose"]
        assert cmd[cmd.index("--model") + 1] == "claude-sonnet-4-5"
        assert cmd[-2:] == ["--", "--implement the story"]
        assert kwargs["cwd"] == request_.workspace_path
        assert kwargs["env"]["ANTHROPIC_API_KEY"] == "task-key"

    def test_per_turn_usage_is_streamed(self, cli_executor, request_):
        turn_usage = {"input_tokens": 800, "output_tokens": 40}
        process = FakeProcess([
            {"type": "assistant", "message": {"content": [tool_use("Read")], "usage": turn_usage}},
            result(),
        ])
        events = []
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            cli_executor.execute(request_, on_event=events.append)

        assert [(e.kind, e.tool_name) for e in events] == [("usage", None), ("tool_use", "Read")]
        assert events[0].usage.total == 840

    def test_missing_stdout_pipe_is_fatal(self, cli_executor, request_):
        process = FakeProcess([])
        process.stdout = None
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            with pytest.raises(AgentExecutionError, match="without a stdout pipe") as exc_info:
                cli_executor.execute(request_)
        assert exc_info.value.category == ErrorCategory.FATAL
        assert process.terminated

    def test_callback_exception_terminates_process(self, cli_executor, request_):
        process = FakeProcess([assistant(tool_use("Read")), assistant(tool_use("Read")), result()])

        def cancel(event):
            raise RuntimeError("stop")

        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            with pytest.raises(RuntimeError, match="stop"):
                cli_executor.execute(request_, on_event=cancel)
        assert process.terminated

    def test_nonzero_exit_is_classified(self, cli_executor, request_):
        process = FakeProcess([], returncode=1)
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            with pytest.raises(AgentExecutionError) as exc_info:
                cli_executor.execute(request_)
        assert exc_info.value.returncode == 1

    def test_error_result_raises(self, cli_executor, request_):
        process = FakeProcess([result(subtype="error_max_turns", is_error=True)])
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            with pytest.raises(AgentExecutionError, match="error_max_turns"):
                cli_executor.execute(request_)

    def test_missing_result_message(self, cli_executor, request_):
        process = FakeProcess([assistant(tool_use("Read"))])
        with patch("taskforge.agents.executor.subprocess.Popen", return_value=process):
            with pytest.raises(AgentExecutionError, match="no result"):
                cli_executor.execute(request_)

    def test_missing_binary_is_fatal(self, cli_executor, request_):
        with patch("taskforge.agents.executor.subprocess.Popen", side_effect=FileNotFoundError):
            with pytest.raises(AgentExecutionError) as exc_info:
                cli_executor.execute(request_)
        assert exc_info.value.category == ErrorCategory.FATAL

    def test_attachments_are_prepended(self, cli_executor, request_, tmp_path):
        notes = tmp_path / "notes.md"
        notes.write_text("use snake_case")
        request_.attachments = [str(notes), str(tmp_path / "missing.md")]

        prompt = cli_executor._build_prompt(request_)

        assert prompt.startswith("Attached files:")
        assert "use snake_case" in prompt
        assert prompt.endswith("--implement the story")


class TestExtractJsonBlock:
    def test_plain_json(self):
        assert extract_json_block('{"verdict": "approved"}') == {"verdict": "approved"}

    def test_last_fenced_block_wins(self):
        text = 'Draft:\n```json\n{"a": 1}\n```\nFinal:\n```json\n{"a": 2}\n```\n'
        assert extract_json_block(text) == {"a": 2}

    def test_embedded_object(self):
        assert extract_json_block('Here you go: {"passed": true} thanks') == {"passed": True}

    def test_empty_and_missing_json(self):
        with pytest.raises(ValueError, match="empty"):
            extract_json_block("   ")
        with pytest.raises(ValueError, match="no JSON"):
            extract_json_block("nothing structured here")

    def test_malformed_json(self):
        with pytest.raises(ValueError, match="malformed"):
            extract_json_block("result: {not: valid}")
