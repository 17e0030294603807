"""Agent Runner backed by the ``claude`` command-line agent.

Each call spawns one ``claude --print`` process in the project directory,
feeds the prompt as a single stream-json user message and parses the
stream-json events it prints: assistant text is streamed to ``on_output``,
tool invocations to ``on_tool_use``, and usage is tallied into
``tokens_used``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from ralph_loop.loop.agent_runner import (
    AgentRequest,
    AgentResponse,
    AgentRunner,
    CancellationToken,
    OutputCallback,
    ToolUse,
    ToolUseCallback,
)
from ralph_loop.loop.errors import AgentCancelledError, RalphLoopError, TransientAgentError

logger = logging.getLogger(__name__)

FILE_MODIFYING_TOOLS = {"Write", "Edit", "MultiEdit", "NotebookEdit"}

STREAM_LINE_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_CHARS = 4000

_TRANSIENT_PATTERNS = re.compile(
    r"overloaded|rate.?limit|too many requests|\b(429|500|502|503|504|529)\b|"
    r"econnreset|etimedout|econnrefused|socket hang up|connection (reset|refused|error)|timed? ?out",
    re.IGNORECASE,
)


class ClaudeCliError(RalphLoopError):
    """Raised when the claude process fails for a non-retryable reason."""


def looks_transient(message: str) -> bool:
    return bool(_TRANSIENT_PATTERNS.search(message))


class ClaudeStreamParser:
    """Accumulates one call's results from claude stream-json output lines."""

    def __init__(
        self,
        on_output: Optional[OutputCallback] = None,
        on_tool_use: Optional[ToolUseCallback] = None,
    ):
        self._on_output = on_output
        self._on_tool_use = on_tool_use
        self._text_parts: List[str] = []
        self.result_text: Optional[str] = None
        self.files_modified: List[str] = []
        self.tool_uses: List[ToolUse] = []
        self.tokens_used = 0
        self.is_error = False

    @property
    def text(self) -> str:
        collected = "".join(self._text_parts)
        return collected or self.result_text or ""

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON claude output: {line[:200]}")
            return
        if isinstance(event, dict):
            self.handle_event(event)

    def handle_event(self, event: Dict[str, Any]) -> None:
        self._update_usage(event)
        event_type = event.get("type")

        if event_type == "assistant":
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    self._add_text(block["text"])
                elif block.get("type") == "tool_use" and block.get("name"):
                    self._add_tool_use(block["name"], block.get("input"), block.get("id"))

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("text"):
                self._add_text(delta["text"])

        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use" and block.get("name"):
                self._add_tool_use(block["name"], block.get("input"), block.get("id"))

        elif event_type == "result":
            if isinstance(event.get("result"), str):
                self.result_text = event["result"]
            self.is_error = bool(event.get("is_error"))
            logger.debug(f"claude result event: subtype={event.get('subtype')}, is_error={self.is_error}")

    def _add_text(self, text: str) -> None:
        self._text_parts.append(text)
        if self._on_output is not None:
            self._on_output(text)

    def _add_tool_use(self, name: str, parameters: Any, tool_id: Optional[str]) -> None:
        params = parameters if isinstance(parameters, dict) else {}
        tool = ToolUse(tool_name=name, tool_id=tool_id or "", parameters=params)
        self.tool_uses.append(tool)
        if name in FILE_MODIFYING_TOOLS:
            path = params.get("file_path") or params.get("notebook_path")
            if isinstance(path, str) and path not in self.files_modified:
                self.files_modified.append(path)
        if self._on_tool_use is not None:
            self._on_tool_use(tool)

    def _update_usage(self, event: Dict[str, Any]) -> None:
        usage = event.get("usage") or (event.get("message") or {}).get("usage")
        if isinstance(usage, dict):
            self.tokens_used = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)


class ClaudeCliAgentRunner(AgentRunner):
    """Runs Worker and Reviewer calls through the ``claude`` CLI."""

    def __init__(
        self,
        project_dir: Path,
        command: str = "claude",
        timeout_seconds: float = 1800.0,
        kill_grace_seconds: float = 5.0,
        skip_permissions: bool = True,
        extra_args: Optional[List[str]] = None,
    ):
        """Initialize the runner.

        Args:
            project_dir: Working directory for the agent process
            command: claude executable name or path
            timeout_seconds: Per-call timeout, surfaced as a transient failure
            kill_grace_seconds: Wait between SIGTERM and SIGKILL when stopping
            skip_permissions: Pass --dangerously-skip-permissions for unattended runs
            extra_args: Additional CLI arguments appended verbatim
        """
        self.project_dir = Path(project_dir)
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.skip_permissions = skip_permissions
        self.extra_args = list(extra_args or [])

    def build_args(self, request: AgentRequest) -> List[str]:
        args = ["--print", "--model", request.model]
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if request.system_prompt:
            args.extend(["--append-system-prompt", request.system_prompt])
        args.extend(["--input-format", "stream-json", "--output-format", "stream-json", "--verbose"])
        args.extend(self.extra_args)
        return args

    @staticmethod
    def build_input(request: AgentRequest) -> bytes:
        message = {"type": "user", "message": {"role": "user", "content": request.prompt}}
        return (json.dumps(message) + "\n").encode("utf-8")

    async def run(
        self,
        request: AgentRequest,
        token: CancellationToken,
        on_output: Optional[OutputCallback] = None,
        on_tool_use: Optional[ToolUseCallback] = None,
    ) -> AgentResponse:
        label = f"{request.role} {request.project_id}/{request.task_id} #{request.iteration}"
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.build_args(request),
                cwd=str(self.project_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as e:
            raise ClaudeCliError(f"claude executable not found: {self.command}") from e
        logger.info(f"Spawned claude for {label} (pid {process.pid}, model {request.model})")

        parser = ClaudeStreamParser(on_output, on_tool_use)
        stderr_task = asyncio.create_task(self._read_stderr(process))
        stdout_task = asyncio.create_task(self._read_stdout(process, parser))
        cancel_task = asyncio.create_task(token.wait())
        try:
            await self._send_prompt(process, request)
            done, _ = await asyncio.wait(
                {stdout_task, cancel_task},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stdout_task not in done:
                await self._terminate(process)
                if cancel_task in done:
                    raise AgentCancelledError(f"claude call for {label} cancelled")
                raise TransientAgentError(f"claude call for {label} timed out after {self.timeout_seconds:.0f}s")
            stdout_task.result()
            returncode = await process.wait()
        except BaseException:
            stderr_task.cancel()
            raise
        finally:
            cancel_task.cancel()
            if not stdout_task.done():
                stdout_task.cancel()
            if process.returncode is None:
                await self._terminate(process)
        stderr = await stderr_task

        if returncode != 0 or parser.is_error:
            detail = stderr.strip() or (parser.result_text or "").strip() or f"exit code {returncode}"
            message = f"claude call for {label} failed (exit code {returncode}): {detail[-500:]}"
            if looks_transient(detail):
                raise TransientAgentError(message)
            raise ClaudeCliError(message)

        logger.info(
            f"claude finished {label}: {len(parser.text)} chars, "
            f"{len(parser.files_modified)} file(s) modified, {parser.tokens_used} tokens"
        )
        return AgentResponse(
            text=parser.text,
            files_modified=parser.files_modified,
            tokens_used=parser.tokens_used,
        )

    async def _send_prompt(self, process: asyncio.subprocess.Process, request: AgentRequest) -> None:
        try:
            process.stdin.write(self.build_input(request))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"claude exited before reading its prompt: {e}")

    @staticmethod
    async def _read_stdout(process: asyncio.subprocess.Process, parser: ClaudeStreamParser) -> None:
        async for raw in process.stdout:
            parser.feed_line(raw.decode("utf-8", errors="replace"))

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        tail = ""
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace")
            logger.debug(f"claude stderr: {line.rstrip()[:500]}")
            tail = (tail + line)[-STDERR_TAIL_CHARS:]
        return tail

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"claude (pid {process.pid}) ignored SIGTERM, killing")
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass
