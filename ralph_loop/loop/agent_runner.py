"""Agent Runner seam: the contract every Worker/Reviewer backend implements.

The loop never looks inside an agent call. It hands a runner a prompt, a
cancellation token and optional streaming callbacks, and gets back the
agent's final text plus whatever file/tool metadata the runner can observe.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

import pydantic as pd

from ralph_loop.loop.contracts import CamelModel, utcnow

AgentRole = Literal["worker", "reviewer"]


class CancellationToken:
    """Cooperative cancellation signal shared by a loop and its agent calls.

    Runners that can preempt a call should watch ``cancelled`` or await
    ``wait()`` and raise AgentCancelledError; runners that cannot simply
    return normally and the loop honors the stop at the next boundary.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or *timeout* elapses. Returns True if cancelled."""
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class AgentRequest(CamelModel):
    """One prompt-and-context call into an agent."""

    role: AgentRole
    project_id: str
    task_id: str
    iteration: int
    model: str
    prompt: str
    system_prompt: Optional[str] = None

    model_config = pd.ConfigDict(extra="forbid")


class ToolUse(CamelModel):
    """A tool invocation observed while an agent was running."""

    tool_name: str
    tool_id: str = ""
    parameters: Dict[str, Any] = pd.Field(default_factory=dict)
    timestamp: datetime = pd.Field(default_factory=utcnow)


class AgentResponse(CamelModel):
    """Final output of one agent call."""

    text: str
    files_modified: List[str] = pd.Field(default_factory=list)
    tokens_used: int = 0


OutputCallback = Callable[[str], None]
ToolUseCallback = Callable[[ToolUse], None]


class AgentRunner(ABC):
    """Executes a single agent call.

    Implementations raise TransientAgentError (or TimeoutError /
    ConnectionError) for retryable failures, AgentCancelledError when they
    honored ``token`` mid-call, and anything else for fatal failures.
    """

    @abstractmethod
    async def run(
        self,
        request: AgentRequest,
        token: CancellationToken,
        on_output: Optional[OutputCallback] = None,
        on_tool_use: Optional[ToolUseCallback] = None,
    ) -> AgentResponse:
        """Run the agent to completion.

        Args:
            request: Prompt, model and identifying context
            token: Cancellation signal for this loop
            on_output: Called with incremental text chunks, if streaming is supported
            on_tool_use: Called for each tool invocation the agent makes

        Returns:
            AgentResponse with the agent's final text
        """
        pass
