"""Tests for Worker/Reviewer phase executors and reviewer response parsing."""

import asyncio
import logging

import pytest

from ralph_loop.fsm.loop_state import Decision
from ralph_loop.loop.agent_runner import AgentResponse, CancellationToken
from ralph_loop.loop.constants import UNPARSEABLE_REVIEW_FEEDBACK
from ralph_loop.loop.contracts import LoopState, WorkerOutput
from ralph_loop.loop.errors import (
    MalformedReviewerResponseError,
    PhaseFailedError,
    TransientAgentError,
)
from ralph_loop.loop.phases import (
    RetryPolicy,
    ReviewerPhaseExecutor,
    WorkerPhaseExecutor,
    normalize_decision,
    parse_reviewer_response,
)
from ralph_loop.loop.utils.governor import SessionGovernor


@pytest.fixture
def loop_state() -> LoopState:
    return LoopState(
        task_id="task-1",
        project_id="web",
        task_description="Add input validation",
        current_iteration=1,
        max_turns=3,
        worker_model="opus",
        reviewer_model="sonnet",
        worker_system_prompt="Be careful",
    )


class TestParseReviewerResponse:
    def test_fenced_json_block(self, make_review):
        feedback = parse_reviewer_response(make_review("reject", "Missing tests", ["No unit tests"]))

        assert feedback.decision == Decision.REJECT
        assert feedback.feedback == "Missing tests"
        assert feedback.specific_issues == ["No unit tests"]
        assert feedback.suggested_improvements == []

    def test_bare_json_surrounded_by_prose(self):
        text = 'I checked everything. {"decision": "approve", "feedback": "Done"} Thanks!'

        feedback = parse_reviewer_response(text)

        assert feedback.decision == Decision.APPROVE
        assert feedback.feedback == "Done"

    def test_snake_case_lists_are_accepted(self):
        text = (
            '{"decision": "reject", "feedback": "x", "specific_issues": ["a"], '
            '"suggested_improvements": ["b", 3]}'
        )

        feedback = parse_reviewer_response(text)

        assert feedback.specific_issues == ["a"]
        assert feedback.suggested_improvements == ["b"]

    def test_skips_objects_without_decision(self):
        text = '```json\n{"note": "context"}\n```\n```json\n{"decision": "critical_failure"}\n```'

        feedback = parse_reviewer_response(text)

        assert feedback.decision == Decision.CRITICAL_FAILURE
        assert feedback.feedback == ""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "Looks good to me, approve.",
            '{"decision": "maybe"}',
            '{"decision": 1}',
            "```json\n{not json}\n```",
        ],
    )
    def test_malformed_responses_raise(self, text):
        with pytest.raises(MalformedReviewerResponseError):
            parse_reviewer_response(text)


class TestNormalizeDecision:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("APPROVE", Decision.APPROVE),
            (" approved ", Decision.APPROVE),
            ("Needs Changes", Decision.REJECT),
            ("changes-needed", Decision.REJECT),
            ("Critical Failure", Decision.CRITICAL_FAILURE),
            ("critical-failure", Decision.CRITICAL_FAILURE),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_decision(raw) == expected

    def test_unknown_decision(self):
        with pytest.raises(MalformedReviewerResponseError):
            normalize_decision("lgtm")


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=5.0)

        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


class TestWorkerPhaseExecutor:
    @pytest.mark.asyncio
    async def test_builds_request_and_output(self, runner, loop_state, fast_retry):
        runner.script(
            "worker",
            AgentResponse(text="Added checks", files_modified=["a.py", "b.py", "a.py"], tokens_used=42),
        )
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        result = await executor.run(loop_state, CancellationToken())

        assert not result.cancelled
        assert result.output.summary == "Added checks"
        assert result.output.files_modified == ["a.py", "b.py"]
        assert result.output.tokens_used == 42
        assert result.output.duration_ms >= 0

        request = runner.requests_for("worker")[0]
        assert request.model == "opus"
        assert request.iteration == 1
        assert request.system_prompt == "Be careful"
        assert "Add input validation" in request.prompt

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, runner, loop_state, fast_retry, caplog):
        runner.script("worker", TransientAgentError("rate limited"), ConnectionError("reset"), "ok")
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        with caplog.at_level(logging.WARNING, logger="ralph_loop"):
            result = await executor.run(loop_state, CancellationToken())

        assert result.output.summary == "ok"
        assert runner.calls["worker"] == 3
        assert "transient failure" in caplog.text

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise_phase_failed(self, runner, loop_state, fast_retry):
        runner.script("worker", TransientAgentError("overloaded"))
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        with pytest.raises(PhaseFailedError) as exc_info:
            await executor.run(loop_state, CancellationToken())

        assert exc_info.value.phase == "worker"
        assert exc_info.value.attempts == 3
        assert "after 3 attempts" in str(exc_info.value)
        assert runner.calls["worker"] == 3

    @pytest.mark.asyncio
    async def test_non_transient_failure_is_not_retried(self, runner, loop_state, fast_retry):
        runner.script("worker", RuntimeError("bad credentials"))
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        with pytest.raises(PhaseFailedError, match="bad credentials"):
            await executor.run(loop_state, CancellationToken())

        assert runner.calls["worker"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_call(self, runner, loop_state, fast_retry):
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)
        token = CancellationToken()
        token.cancel()

        result = await executor.run(loop_state, token)

        assert result.cancelled
        assert runner.calls["worker"] == 0

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self, runner, loop_state):
        runner.script("worker", TransientAgentError("overloaded"))
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=10.0, max_delay_seconds=10.0)
        executor = WorkerPhaseExecutor(runner, SessionGovernor(1), retry_policy=policy)
        token = CancellationToken()

        task = asyncio.create_task(executor.run(loop_state, token))
        while runner.calls["worker"] == 0:
            await asyncio.sleep(0)
        token.cancel()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.cancelled
        assert runner.calls["worker"] == 1

    @pytest.mark.asyncio
    async def test_governor_slot_is_released_after_call(self, runner, loop_state, fast_retry):
        governor = SessionGovernor(1)
        executor = WorkerPhaseExecutor(runner, governor, retry_policy=fast_retry)

        await executor.run(loop_state, CancellationToken())
        await executor.run(loop_state, CancellationToken())

        assert governor.active == 0
        assert runner.calls["worker"] == 2


class TestReviewerPhaseExecutor:
    @pytest.mark.asyncio
    async def test_parses_decision(self, runner, loop_state, fast_retry, make_review):
        runner.script("reviewer", make_review("approve", "All good"))
        executor = ReviewerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        result = await executor.run(loop_state, WorkerOutput(summary="Added checks"), CancellationToken())

        assert result.feedback.decision == Decision.APPROVE
        assert not result.malformed
        request = runner.requests_for("reviewer")[0]
        assert request.model == "sonnet"
        assert "Added checks" in request.prompt

    @pytest.mark.asyncio
    async def test_malformed_response_becomes_reject(self, runner, loop_state, fast_retry, caplog):
        runner.script("reviewer", "I think it is fine")
        executor = ReviewerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)

        with caplog.at_level(logging.WARNING, logger="ralph_loop"):
            result = await executor.run(loop_state, WorkerOutput(summary="x"), CancellationToken())

        assert result.malformed
        assert result.feedback.decision == Decision.REJECT
        assert result.feedback.feedback == UNPARSEABLE_REVIEW_FEEDBACK
        assert "could not be parsed" in caplog.text

    @pytest.mark.asyncio
    async def test_output_is_streamed_through_emitter(self, runner, loop_state, fast_retry, broadcaster, events, make_review):
        runner.script("reviewer", make_review("reject"))
        executor = ReviewerPhaseExecutor(runner, SessionGovernor(1), retry_policy=fast_retry)
        emitter = broadcaster.emitter_for("web", "task-1")

        await executor.run(loop_state, WorkerOutput(summary="x"), CancellationToken(), emitter)

        assert [e.event_type.value for e in events] == ["output"]
        assert events[0].data["source"] == "reviewer"
