"""Shared pytest fixtures for ralph-loop tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from ralph_loop.loop.agent_runner import (
    AgentRequest,
    AgentResponse,
    AgentRunner,
    CancellationToken,
    ToolUse,
)
from ralph_loop.loop.errors import AgentCancelledError
from ralph_loop.loop.phases import RetryPolicy
from ralph_loop.loop.registry import TaskRegistry
from ralph_loop.loop.streaming import LoopEvent, LoopEventBroadcaster
from ralph_loop.loop.utils.config import LoopSettings
from ralph_loop.loop.utils.governor import SessionGovernor
from ralph_loop.loop.utils.state_store import FileStateStore


def review_json(decision: str, feedback: str = "Looks incomplete", issues: Optional[List[str]] = None) -> str:
    payload = {
        "decision": decision,
        "feedback": feedback,
        "specificIssues": issues or [],
        "suggestedImprovements": [],
    }
    return f"Here is my review.\n```json\n{json.dumps(payload)}\n```"


class ScriptedAgentRunner(AgentRunner):
    """Fake Agent Runner replaying scripted Worker and Reviewer responses.

    Script items may be a str (response text), an AgentResponse, an
    exception instance (raised) or a callable taking the request. Once a
    script runs out, its last item repeats; an empty worker script answers
    with a default output, an empty reviewer script always rejects.

    ``hold(role)`` makes subsequent calls for that role block until
    ``release(role)``; ``entered[role]`` is set whenever a call blocks.
    """

    def __init__(self) -> None:
        self.scripts: Dict[str, List[Any]] = {"worker": [], "reviewer": []}
        self.requests: List[AgentRequest] = []
        self.calls: Dict[str, int] = {"worker": 0, "reviewer": 0}
        self.entered: Dict[str, asyncio.Event] = {"worker": asyncio.Event(), "reviewer": asyncio.Event()}
        self.honor_cancellation = True
        self.tool_uses: List[ToolUse] = []
        self._gates: Dict[str, asyncio.Event] = {}

    def script(self, role: str, *items: Any) -> "ScriptedAgentRunner":
        self.scripts[role].extend(items)
        return self

    def hold(self, role: str) -> None:
        self.entered[role].clear()
        self._gates[role] = asyncio.Event()

    def release(self, role: str) -> None:
        gate = self._gates.pop(role, None)
        if gate is not None:
            gate.set()

    def requests_for(self, role: str) -> List[AgentRequest]:
        return [r for r in self.requests if r.role == role]

    async def run(self, request, token: CancellationToken, on_output=None, on_tool_use=None) -> AgentResponse:
        self.requests.append(request)
        self.calls[request.role] += 1

        gate = self._gates.get(request.role)
        if gate is not None:
            self.entered[request.role].set()
            await self._wait_gate(gate, token)

        item = self._next_item(request)
        if callable(item) and not isinstance(item, (str, AgentResponse)):
            item = item(request)
        if isinstance(item, BaseException):
            raise item
        response = item if isinstance(item, AgentResponse) else AgentResponse(text=item)

        if on_output is not None:
            on_output(response.text[:20])
        if on_tool_use is not None and response.files_modified:
            tool = ToolUse(tool_name="Write", parameters={"file_path": response.files_modified[0]})
            self.tool_uses.append(tool)
            on_tool_use(tool)
        return response

    async def _wait_gate(self, gate: asyncio.Event, token: CancellationToken) -> None:
        if not self.honor_cancellation:
            await gate.wait()
            return
        gate_wait = asyncio.create_task(gate.wait())
        cancel_wait = asyncio.create_task(token.wait())
        done, pending = await asyncio.wait({gate_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if gate_wait not in done:
            raise AgentCancelledError("scripted call cancelled")

    def _next_item(self, request: AgentRequest) -> Any:
        script = self.scripts[request.role]
        if not script:
            if request.role == "worker":
                return AgentResponse(
                    text=f"Worker attempt {request.iteration}",
                    files_modified=[f"src/module_{request.iteration}.py"],
                    tokens_used=100,
                )
            return review_json("reject")
        return script.pop(0) if len(script) > 1 else script[0]


@pytest.fixture
def make_review() -> Callable[..., str]:
    return review_json


@pytest.fixture
def runner() -> ScriptedAgentRunner:
    return ScriptedAgentRunner()


@pytest.fixture
def store(tmp_path) -> FileStateStore:
    return FileStateStore(tmp_path / "loops")


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.001, max_delay_seconds=0.005)


@pytest.fixture
def settings() -> LoopSettings:
    return LoopSettings(history_limit=50)


@pytest.fixture
def broadcaster() -> LoopEventBroadcaster:
    return LoopEventBroadcaster()


@pytest.fixture
def events(broadcaster: LoopEventBroadcaster) -> List[LoopEvent]:
    received: List[LoopEvent] = []
    broadcaster.add_listener(received.append)
    return received


@pytest.fixture
def registry(store, runner, broadcaster, settings, fast_retry) -> TaskRegistry:
    return TaskRegistry(
        store,
        runner,
        broadcaster=broadcaster,
        settings=settings,
        governor=SessionGovernor(settings.max_concurrent_sessions),
        retry_policy=fast_retry,
    )
