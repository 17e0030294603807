"""LoopController: drives one loop through its Worker/Reviewer iterations.

The controller is the only writer of its LoopState. Every status change is
validated by LoopFSM, persisted through the state store and only then
published on the task's event channel. Pause is honored at phase
boundaries; stop cancels the in-flight agent call through the shared
CancellationToken and finalizes once the phase unwinds.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ralph_loop.fsm.loop_fsm import LoopFSM
from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus
from ralph_loop.loop.agent_runner import CancellationToken
from ralph_loop.loop.constants import STOPPED_BY_USER_ERROR
from ralph_loop.loop.contracts import Iteration, LoopState, utcnow
from ralph_loop.loop.errors import InvalidStateError, PersistenceError, PhaseFailedError
from ralph_loop.loop.phases import ReviewerPhaseExecutor, WorkerPhaseExecutor
from ralph_loop.loop.streaming import TaskEventEmitter
from ralph_loop.loop.utils.state_store import FileStateStore

logger = logging.getLogger(__name__)


class LoopController:
    """State machine owning a single loop's lifecycle.

    Runs as one asyncio task. Phases of the same loop never overlap, so the
    controller can persist without extra locking.

    Example:
        controller = LoopController(state, store, worker, reviewer, emitter)
        await controller.start()
        final = await controller.wait()
    """

    def __init__(
        self,
        state: LoopState,
        store: FileStateStore,
        worker: WorkerPhaseExecutor,
        reviewer: ReviewerPhaseExecutor,
        emitter: TaskEventEmitter,
        on_finished: Optional[Callable[["LoopController"], None]] = None,
    ):
        self._state = state
        self._store = store
        self._worker = worker
        self._reviewer = reviewer
        self._emitter = emitter
        self._on_finished = on_finished
        self._fsm = LoopFSM(initial=state.status)
        self._token = CancellationToken()
        self._resumed = asyncio.Event()
        self._pause_requested = False
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def project_id(self) -> str:
        return self._state.project_id

    @property
    def task_id(self) -> str:
        return self._state.task_id

    @property
    def status(self) -> LoopStatus:
        return self._fsm.current_status

    @property
    def is_terminal(self) -> bool:
        return self._fsm.is_terminal

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def state(self) -> LoopState:
        """Deep copy of the live in-memory state."""
        return self._state.snapshot()

    def _label(self) -> str:
        return f"{self.project_id}/{self.task_id}"

    async def start(self) -> LoopState:
        """Enter the first Worker phase and launch the loop task.

        Returns:
            Snapshot of the state right after the first transition.
        """
        if self._fsm.current_status != LoopStatus.IDLE:
            raise InvalidStateError(f"Loop {self._label()} already started")

        self._state.start_time = utcnow()
        self._state.current_iteration = 1
        await self._set_status(LoopStatus.WORKER_RUNNING)
        self._emitter.iteration(1)

        self._task = asyncio.create_task(self._run(), name=f"ralph-loop:{self._label()}")
        return self.state

    def pause(self) -> None:
        """Request a pause at the next phase boundary."""
        status = self._fsm.current_status
        if status.is_terminal:
            raise InvalidStateError(f"Loop {self._label()} is {status.value}; cannot pause")
        if status == LoopStatus.PAUSED:
            raise InvalidStateError(f"Loop {self._label()} is already paused")
        if self._stop_requested:
            raise InvalidStateError(f"Loop {self._label()} is stopping; cannot pause")
        if not self._pause_requested:
            logger.info(f"Loop {self._label()}: pause requested during {status.value}")
        self._pause_requested = True

    def resume(self) -> None:
        """Resume a paused loop, or withdraw a pause that has not taken effect yet."""
        status = self._fsm.current_status
        if status.is_terminal:
            raise InvalidStateError(f"Loop {self._label()} is {status.value}; cannot resume")
        if status == LoopStatus.PAUSED:
            self._pause_requested = False
            self._resumed.set()
            logger.info(f"Loop {self._label()}: resume requested")
        elif self._pause_requested:
            self._pause_requested = False
            logger.info(f"Loop {self._label()}: pending pause withdrawn")
        else:
            raise InvalidStateError(f"Loop {self._label()} is {status.value}; not paused")

    def stop(self) -> None:
        """Cancel the in-flight agent call and finalize once it unwinds."""
        status = self._fsm.current_status
        if status.is_terminal:
            raise InvalidStateError(f"Loop {self._label()} is already {status.value}")
        if self._stop_requested:
            return
        logger.info(f"Loop {self._label()}: stop requested during {status.value}")
        self._stop_requested = True
        self._token.cancel()
        self._resumed.set()

    async def wait(self) -> LoopState:
        """Wait for the loop task to finish and return the final state."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.state

    async def _run(self) -> None:
        try:
            while not self._fsm.is_terminal:
                if self._stop_requested:
                    await self._finalize(LoopStatus.FAILED, None, STOPPED_BY_USER_ERROR, emit_error=False)
                elif self._pause_requested:
                    await self._wait_while_paused()
                elif self._reviewer_pending():
                    await self._run_reviewer_phase()
                else:
                    await self._run_worker_phase()
        except Exception as e:
            logger.exception(f"Loop {self._label()} crashed")
            if not self._fsm.is_terminal:
                await self._finalize(LoopStatus.FAILED, None, f"Unexpected loop failure: {e}")
        finally:
            if self._on_finished is not None:
                try:
                    self._on_finished(self)
                except Exception as e:
                    logger.warning(f"on_finished callback failed for {self._label()}: {e}")

    def _reviewer_pending(self) -> bool:
        last = self._state.last_iteration
        return (
            last is not None
            and last.number == self._state.current_iteration
            and not last.is_reviewed
        )

    async def _wait_while_paused(self) -> None:
        self._resumed.clear()
        await self._set_status(LoopStatus.PAUSED)
        await self._resumed.wait()

    async def _run_worker_phase(self) -> None:
        state = self._state
        last = state.last_iteration
        advancing = last is not None and last.number == state.current_iteration
        if advancing:
            state.current_iteration += 1
        if self._fsm.current_status != LoopStatus.WORKER_RUNNING:
            await self._set_status(LoopStatus.WORKER_RUNNING)
        if advancing:
            self._emitter.iteration(state.current_iteration)

        number = state.current_iteration
        try:
            result = await self._worker.run(state, self._token, self._emitter)
        except PhaseFailedError as e:
            await self._finalize(LoopStatus.FAILED, None, str(e))
            return

        if result.cancelled:
            self._stop_requested = True
            return

        state.iterations.append(Iteration(number=number, worker_output=result.output))
        await self._persist()
        self._emitter.worker_complete(number, result.output.files_modified)
        logger.info(
            f"Loop {self._label()}: worker finished iteration {number}/{state.max_turns} "
            f"({len(result.output.files_modified)} file(s) modified)"
        )

        if not (self._stop_requested or self._pause_requested):
            await self._set_status(LoopStatus.REVIEWER_RUNNING)

    async def _run_reviewer_phase(self) -> None:
        state = self._state
        if self._fsm.current_status != LoopStatus.REVIEWER_RUNNING:
            await self._set_status(LoopStatus.REVIEWER_RUNNING)

        iteration = state.last_iteration
        try:
            result = await self._reviewer.run(state, iteration.worker_output, self._token, self._emitter)
        except PhaseFailedError as e:
            await self._finalize(LoopStatus.FAILED, FinalResult.CRITICAL_FAILURE, str(e))
            return

        if result.cancelled:
            self._stop_requested = True
            return

        feedback = result.feedback
        iteration.reviewer_feedback = feedback
        iteration.decision = feedback.decision
        await self._persist()
        self._emitter.reviewer_complete(iteration.number, feedback.decision, feedback.feedback)
        logger.info(
            f"Loop {self._label()}: reviewer decided {feedback.decision.value} "
            f"on iteration {iteration.number}/{state.max_turns}"
        )

        # A decision that ends the loop wins over a pending pause or stop.
        if feedback.decision == Decision.APPROVE:
            await self._finalize(LoopStatus.COMPLETED, FinalResult.APPROVED)
        elif feedback.decision == Decision.CRITICAL_FAILURE:
            message = "Reviewer reported a critical failure"
            if feedback.feedback:
                message = f"{message}: {feedback.feedback}"
            await self._finalize(LoopStatus.FAILED, FinalResult.CRITICAL_FAILURE, message)
        elif state.current_iteration >= state.max_turns:
            await self._finalize(LoopStatus.COMPLETED, FinalResult.MAX_TURNS_REACHED)

    async def _set_status(self, status: LoopStatus) -> None:
        previous = self._fsm.current_status
        self._fsm.transition_to(status)
        self._state.status = status
        await self._persist()
        self._emitter.status(status, self._state.current_iteration, self._state.max_turns)
        logger.info(f"Loop {self._label()}: {previous.value} -> {status.value}")

    async def _finalize(
        self,
        status: LoopStatus,
        final_result: Optional[FinalResult],
        error: Optional[str] = None,
        emit_error: bool = True,
    ) -> None:
        previous = self._fsm.current_status
        self._fsm.transition_to(status)
        self._state.status = status
        self._state.final_result = final_result
        self._state.error = error
        self._state.end_time = utcnow()
        await self._persist()

        if error and emit_error:
            self._emitter.error(error)
        self._emitter.status(status, self._state.current_iteration, self._state.max_turns)
        self._emitter.complete(final_result, error)

        outcome = final_result.value if final_result else "no final result"
        if status == LoopStatus.FAILED:
            logger.warning(f"Loop {self._label()}: {previous.value} -> failed ({outcome}): {error}")
        else:
            logger.info(f"Loop {self._label()}: {previous.value} -> {status.value} ({outcome})")

    async def _persist(self) -> None:
        self._state.updated_at = utcnow()
        try:
            await self._store.save(self._state)
        except PersistenceError as e:
            logger.error(f"Loop {self._label()}: could not persist state, continuing in memory: {e}")
            self._state.stale = True
            return
        if self._state.stale:
            logger.info(f"Loop {self._label()}: persisted state caught up")
            self._state.stale = False
