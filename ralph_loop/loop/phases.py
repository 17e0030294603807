"""Worker and Reviewer phase executors.

Each executor wraps exactly one logical Agent Runner call: it renders the
prompt, holds a governor slot around every attempt, retries transient
failures with exponential backoff and turns the raw response into a
structured phase result.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ralph_loop.fsm.loop_state import Decision
from ralph_loop.loop.agent_runner import (
    AgentRequest,
    AgentResponse,
    AgentRole,
    AgentRunner,
    CancellationToken,
)
from ralph_loop.loop.constants import UNPARSEABLE_REVIEW_FEEDBACK
from ralph_loop.loop.context_builder import ContextBuilder, DefaultContextBuilder
from ralph_loop.loop.contracts import LoopState, ReviewerFeedback, WorkerOutput
from ralph_loop.loop.errors import (
    AgentCancelledError,
    MalformedReviewerResponseError,
    PhaseFailedError,
    TransientAgentError,
)
from ralph_loop.loop.streaming import TaskEventEmitter
from ralph_loop.loop.utils.governor import SessionGovernor

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (TransientAgentError, TimeoutError, ConnectionError)

_DECISION_ALIASES: Dict[str, Decision] = {
    "approve": Decision.APPROVE,
    "approved": Decision.APPROVE,
    "reject": Decision.REJECT,
    "rejected": Decision.REJECT,
    "needs_changes": Decision.REJECT,
    "changes_needed": Decision.REJECT,
    "revise": Decision.REJECT,
    "critical_failure": Decision.CRITICAL_FAILURE,
    "critical": Decision.CRITICAL_FAILURE,
    "abort": Decision.CRITICAL_FAILURE,
}

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for transient Agent Runner failures."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.base_delay_seconds * self.multiplier ** (attempt - 1), self.max_delay_seconds)


@dataclass
class WorkerPhaseResult:
    output: Optional[WorkerOutput] = None
    cancelled: bool = False


@dataclass
class ReviewerPhaseResult:
    feedback: Optional[ReviewerFeedback] = None
    cancelled: bool = False
    malformed: bool = False


def normalize_decision(raw: Any) -> Decision:
    """Map the Reviewer's decision wording onto a Decision.

    Raises:
        MalformedReviewerResponseError: If the value is not a known decision.
    """
    if not isinstance(raw, str):
        raise MalformedReviewerResponseError(f"decision must be a string, got {raw!r}")
    key = re.sub(r"[\s-]+", "_", raw.strip().lower())
    try:
        return _DECISION_ALIASES[key]
    except KeyError:
        raise MalformedReviewerResponseError(f"Unknown reviewer decision: {raw!r}") from None


def _json_objects(text: str):
    """Yield JSON objects found in fenced code blocks first, then anywhere in *text*."""
    for block in _FENCED_BLOCK.findall(text):
        try:
            value = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            yield value

    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            yield value
        index = text.find("{", index + 1)


def _string_list(data: Dict[str, Any], *keys: str) -> List[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
    return []


def parse_reviewer_response(text: str) -> ReviewerFeedback:
    """Extract a structured verdict from free-form Reviewer output.

    Raises:
        MalformedReviewerResponseError: If no JSON object with a recognizable
            ``decision`` can be found.
    """
    data = next((obj for obj in _json_objects(text) if "decision" in obj), None)
    if data is None:
        raise MalformedReviewerResponseError("No JSON object with a decision found in reviewer response")

    feedback = data.get("feedback")
    return ReviewerFeedback(
        decision=normalize_decision(data["decision"]),
        feedback=feedback if isinstance(feedback, str) else "",
        specific_issues=_string_list(data, "specificIssues", "specific_issues"),
        suggested_improvements=_string_list(data, "suggestedImprovements", "suggested_improvements"),
    )


class BasePhaseExecutor:
    """Shared call/retry machinery for both phases."""

    role: AgentRole

    def __init__(
        self,
        runner: AgentRunner,
        governor: SessionGovernor,
        context_builder: Optional[ContextBuilder] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.runner = runner
        self.governor = governor
        self.context_builder = context_builder or DefaultContextBuilder()
        self.retry_policy = retry_policy or RetryPolicy()

    async def _call_agent(
        self,
        request: AgentRequest,
        token: CancellationToken,
        emitter: Optional[TaskEventEmitter],
    ) -> Optional[AgentResponse]:
        """Run the agent with retries. Returns None if cancelled.

        Raises:
            PhaseFailedError: On a non-transient failure or once retries are exhausted.
        """
        on_output = (lambda chunk: emitter.output(self.role, chunk)) if emitter else None
        on_tool_use = (lambda tool: emitter.tool_use(self.role, tool)) if emitter else None
        label = f"{self.role.capitalize()} phase ({request.project_id}/{request.task_id} #{request.iteration})"

        attempt = 0
        while True:
            if token.cancelled:
                return None
            attempt += 1
            try:
                async with self.governor.slot():
                    if token.cancelled:
                        return None
                    logger.debug(f"{label}: calling {request.model}, attempt {attempt}")
                    return await self.runner.run(
                        request, token, on_output=on_output, on_tool_use=on_tool_use
                    )
            except AgentCancelledError:
                logger.info(f"{label}: agent call cancelled")
                return None
            except TRANSIENT_ERRORS as e:
                if attempt >= self.retry_policy.max_attempts:
                    raise PhaseFailedError(
                        self.role,
                        f"{self.role.capitalize()} agent failed after {attempt} attempts: {e}",
                        attempt,
                    ) from e
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    f"{label}: transient failure on attempt {attempt}/"
                    f"{self.retry_policy.max_attempts}, retrying in {delay:.1f}s: {e}"
                )
                if await token.wait(delay):
                    return None
            except Exception as e:
                raise PhaseFailedError(
                    self.role, f"{self.role.capitalize()} agent failed: {e}", attempt
                ) from e


class WorkerPhaseExecutor(BasePhaseExecutor):
    """Runs the Worker agent for the loop's current iteration."""

    role: AgentRole = "worker"

    async def run(
        self,
        state: LoopState,
        token: CancellationToken,
        emitter: Optional[TaskEventEmitter] = None,
    ) -> WorkerPhaseResult:
        request = AgentRequest(
            role=self.role,
            project_id=state.project_id,
            task_id=state.task_id,
            iteration=state.current_iteration,
            model=state.worker_model,
            prompt=self.context_builder.build_worker_prompt(state),
            system_prompt=state.worker_system_prompt,
        )
        started = time.monotonic()
        response = await self._call_agent(request, token, emitter)
        if response is None:
            return WorkerPhaseResult(cancelled=True)

        output = WorkerOutput(
            summary=response.text,
            files_modified=list(dict.fromkeys(response.files_modified)),
            tokens_used=response.tokens_used,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return WorkerPhaseResult(output=output)


class ReviewerPhaseExecutor(BasePhaseExecutor):
    """Runs the Reviewer agent against the Worker's latest output."""

    role: AgentRole = "reviewer"

    async def run(
        self,
        state: LoopState,
        worker_output: WorkerOutput,
        token: CancellationToken,
        emitter: Optional[TaskEventEmitter] = None,
    ) -> ReviewerPhaseResult:
        request = AgentRequest(
            role=self.role,
            project_id=state.project_id,
            task_id=state.task_id,
            iteration=state.current_iteration,
            model=state.reviewer_model,
            prompt=self.context_builder.build_reviewer_prompt(state, worker_output),
            system_prompt=state.reviewer_system_prompt,
        )
        response = await self._call_agent(request, token, emitter)
        if response is None:
            return ReviewerPhaseResult(cancelled=True)

        try:
            return ReviewerPhaseResult(feedback=parse_reviewer_response(response.text))
        except MalformedReviewerResponseError as e:
            logger.warning(
                f"Reviewer response for {state.project_id}/{state.task_id} "
                f"#{state.current_iteration} could not be parsed, treating as reject: {e}"
            )
            return ReviewerPhaseResult(
                feedback=ReviewerFeedback(decision=Decision.REJECT, feedback=UNPARSEABLE_REVIEW_FEEDBACK),
                malformed=True,
            )
