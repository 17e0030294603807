"""Tests for the claude CLI Agent Runner and its stream parser."""

import asyncio
import json
import os
import stat

import pytest

from ralph_loop.loop.agent_runner import AgentRequest, CancellationToken
from ralph_loop.loop.claude_cli import (
    ClaudeCliAgentRunner,
    ClaudeCliError,
    ClaudeStreamParser,
    looks_transient,
)
from ralph_loop.loop.errors import AgentCancelledError, TransientAgentError

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a shell script as the claude executable")


def make_request(**overrides) -> AgentRequest:
    fields = dict(
        role="worker",
        project_id="web",
        task_id="task-1",
        iteration=1,
        model="opus",
        prompt="Add a /health endpoint",
    )
    fields.update(overrides)
    return AgentRequest(**fields)


def fake_claude(tmp_path, body: str) -> str:
    script = tmp_path / "fake-claude"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


def assistant_event(*blocks, usage=None) -> dict:
    message = {"content": list(blocks)}
    if usage:
        message["usage"] = usage
    return {"type": "assistant", "message": message}


class TestClaudeStreamParser:
    def test_collects_text_tools_and_usage(self):
        chunks, tools = [], []
        parser = ClaudeStreamParser(chunks.append, tools.append)

        parser.handle_event(assistant_event({"type": "text", "text": "Working on it. "}))
        parser.handle_event(
            assistant_event(
                {"type": "tool_use", "id": "tu_1", "name": "Edit", "input": {"file_path": "app.py"}},
                {"type": "tool_use", "id": "tu_2", "name": "Read", "input": {"file_path": "README.md"}},
                {"type": "tool_use", "id": "tu_3", "name": "Write", "input": {"file_path": "app.py"}},
                usage={"input_tokens": 100, "output_tokens": 20},
            )
        )
        parser.handle_event({"type": "content_block_delta", "delta": {"text": "Done."}})
        parser.handle_event({"type": "result", "result": "final", "usage": {"input_tokens": 300, "output_tokens": 50}})

        assert parser.text == "Working on it. Done."
        assert chunks == ["Working on it. ", "Done."]
        assert [t.tool_name for t in tools] == ["Edit", "Read", "Write"]
        assert tools[0].tool_id == "tu_1"
        assert parser.files_modified == ["app.py"]
        assert parser.tokens_used == 350
        assert not parser.is_error

    def test_falls_back_to_result_text(self):
        parser = ClaudeStreamParser()

        parser.feed_line(json.dumps({"type": "result", "result": "Only result", "is_error": False}))

        assert parser.text == "Only result"

    def test_notebook_and_content_block_start_tools(self):
        parser = ClaudeStreamParser()

        parser.handle_event(
            {
                "type": "content_block_start",
                "content_block": {"type": "tool_use", "name": "NotebookEdit", "input": {"notebook_path": "a.ipynb"}},
            }
        )

        assert parser.files_modified == ["a.ipynb"]

    def test_ignores_noise(self):
        parser = ClaudeStreamParser()

        parser.feed_line("")
        parser.feed_line("not json")
        parser.feed_line("[1, 2]")
        parser.feed_line(json.dumps({"type": "system", "subtype": "init"}))

        assert parser.text == ""
        assert parser.tool_uses == []

    def test_error_result(self):
        parser = ClaudeStreamParser()

        parser.handle_event({"type": "result", "is_error": True, "result": "API Error: 529 overloaded"})

        assert parser.is_error


class TestLooksTransient:
    @pytest.mark.parametrize(
        "message", ["Overloaded", "rate limit exceeded", "HTTP 503", "read ECONNRESET", "Request timed out"]
    )
    def test_transient(self, message):
        assert looks_transient(message)

    @pytest.mark.parametrize("message", ["Invalid API key", "unknown option --foo", "exit code 1"])
    def test_not_transient(self, message):
        assert not looks_transient(message)


class TestCommandLine:
    def test_build_args(self, tmp_path):
        runner = ClaudeCliAgentRunner(tmp_path, extra_args=["--max-turns", "40"])

        args = runner.build_args(make_request(system_prompt="Be terse"))

        assert args == [
            "--print",
            "--model",
            "opus",
            "--dangerously-skip-permissions",
            "--append-system-prompt",
            "Be terse",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            "40",
        ]

    def test_build_args_without_permissions_skip(self, tmp_path):
        runner = ClaudeCliAgentRunner(tmp_path, skip_permissions=False)

        args = runner.build_args(make_request())

        assert "--dangerously-skip-permissions" not in args
        assert "--append-system-prompt" not in args

    def test_build_input_is_one_user_message_line(self):
        raw = ClaudeCliAgentRunner.build_input(make_request(prompt="line one\nline two"))

        assert raw.endswith(b"\n")
        assert raw.count(b"\n") == 1
        assert json.loads(raw) == {"type": "user", "message": {"role": "user", "content": "line one\nline two"}}


@posix_only
class TestClaudeCliAgentRunner:
    @pytest.mark.asyncio
    async def test_successful_call(self, tmp_path):
        lines = [
            assistant_event({"type": "text", "text": "Added endpoint"}),
            assistant_event({"type": "tool_use", "id": "tu_1", "name": "Write", "input": {"file_path": "health.py"}}),
            {"type": "result", "result": "Added endpoint", "usage": {"input_tokens": 10, "output_tokens": 5}},
        ]
        body = "cat > /dev/null\n" + "\n".join(f"echo '{json.dumps(line)}'" for line in lines)
        runner = ClaudeCliAgentRunner(tmp_path, command=fake_claude(tmp_path, body))
        chunks = []

        response = await runner.run(make_request(), CancellationToken(), on_output=chunks.append)

        assert response.text == "Added endpoint"
        assert response.files_modified == ["health.py"]
        assert response.tokens_used == 15
        assert chunks == ["Added endpoint"]

    @pytest.mark.asyncio
    async def test_transient_failure(self, tmp_path):
        body = "cat > /dev/null\necho 'rate limit exceeded' >&2\nexit 1"
        runner = ClaudeCliAgentRunner(tmp_path, command=fake_claude(tmp_path, body))

        with pytest.raises(TransientAgentError, match="rate limit"):
            await runner.run(make_request(), CancellationToken())

    @pytest.mark.asyncio
    async def test_permanent_failure(self, tmp_path):
        body = "cat > /dev/null\necho 'Invalid API key' >&2\nexit 2"
        runner = ClaudeCliAgentRunner(tmp_path, command=fake_claude(tmp_path, body))

        with pytest.raises(ClaudeCliError, match="Invalid API key"):
            await runner.run(make_request(), CancellationToken())

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        runner = ClaudeCliAgentRunner(tmp_path, command=str(tmp_path / "no-such-claude"))

        with pytest.raises(ClaudeCliError, match="not found"):
            await runner.run(make_request(), CancellationToken())

    @pytest.mark.asyncio
    async def test_cancellation_terminates_process(self, tmp_path):
        runner = ClaudeCliAgentRunner(
            tmp_path, command=fake_claude(tmp_path, "cat > /dev/null\nexec sleep 30"), kill_grace_seconds=1
        )
        token = CancellationToken()

        task = asyncio.create_task(runner.run(make_request(), token))
        await asyncio.sleep(0.2)
        token.cancel()

        with pytest.raises(AgentCancelledError):
            await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, tmp_path):
        runner = ClaudeCliAgentRunner(
            tmp_path,
            command=fake_claude(tmp_path, "cat > /dev/null\nexec sleep 30"),
            timeout_seconds=0.2,
            kill_grace_seconds=1,
        )

        with pytest.raises(TransientAgentError, match="timed out"):
            await asyncio.wait_for(runner.run(make_request(), CancellationToken()), timeout=5)
