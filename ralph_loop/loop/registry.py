"""Task Registry: the directory of live Loop Controllers.

Constructed once and injected wherever loops are controlled. Guards its
(project_id, task_id) -> controller map with an asyncio.Lock and enforces
one active loop per project.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pydantic as pd

from ralph_loop.loop.agent_runner import AgentRunner
from ralph_loop.loop.context_builder import ContextBuilder
from ralph_loop.loop.contracts import LoopConfig, LoopState
from ralph_loop.loop.controller import LoopController
from ralph_loop.loop.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    LoopNotFoundError,
    LoopValidationError,
    PersistenceError,
    RalphLoopError,
)
from ralph_loop.loop.phases import ReviewerPhaseExecutor, RetryPolicy, WorkerPhaseExecutor
from ralph_loop.loop.streaming import LoopEventBroadcaster
from ralph_loop.loop.utils.config import LoopSettings
from ralph_loop.loop.utils.governor import SessionGovernor
from ralph_loop.loop.utils.state_store import FileStateStore, is_safe_identifier

logger = logging.getLogger(__name__)

LoopKey = Tuple[str, str]


class TaskRegistry:
    """Starts loops and routes control calls to the right controller.

    Live controllers answer get/list with their in-memory view; once a loop
    is terminal and deregistered, reads go to the state store.
    """

    def __init__(
        self,
        store: FileStateStore,
        runner: AgentRunner,
        broadcaster: Optional[LoopEventBroadcaster] = None,
        settings: Optional[LoopSettings] = None,
        governor: Optional[SessionGovernor] = None,
        context_builder: Optional[ContextBuilder] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize the registry.

        Args:
            store: Persistence for loop records
            runner: Agent Runner used by both phases
            broadcaster: Event fan-out (default: a new LoopEventBroadcaster)
            settings: Defaults and limits (default: LoopSettings())
            governor: Shared agent session cap (default: sized from settings)
            context_builder: Prompt renderer (default: DefaultContextBuilder)
            retry_policy: Transient failure backoff (default: from settings)
        """
        self.settings = settings or LoopSettings()
        self.store = store
        self.broadcaster = broadcaster or LoopEventBroadcaster(self.settings.event_buffer_size)
        self.governor = governor or SessionGovernor(self.settings.max_concurrent_sessions)
        retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.retry_attempts,
            base_delay_seconds=self.settings.retry_base_delay_seconds,
            max_delay_seconds=self.settings.retry_max_delay_seconds,
        )
        self._worker = WorkerPhaseExecutor(runner, self.governor, context_builder, retry_policy)
        self._reviewer = ReviewerPhaseExecutor(runner, self.governor, context_builder, retry_policy)
        self._controllers: Dict[LoopKey, LoopController] = {}
        # Final states of finished loops whose terminal save failed.
        self._unsaved: Dict[LoopKey, LoopState] = {}
        self._lock = asyncio.Lock()

    def _validate(self, project_id: str, config: Union[LoopConfig, Mapping[str, Any]]) -> LoopConfig:
        if not isinstance(project_id, str) or not is_safe_identifier(project_id):
            raise LoopValidationError(
                f"Invalid project id {project_id!r}: use 1-128 letters, digits, '.', '_' or '-'"
            )
        if not isinstance(config, LoopConfig):
            try:
                config = LoopConfig.model_validate(config)
            except pd.ValidationError as e:
                raise LoopValidationError(f"Invalid loop config: {e}") from e

        if not config.task_description.strip():
            raise LoopValidationError("taskDescription must be non-empty")
        if config.max_turns is not None and not 0 < config.max_turns <= self.settings.max_turns_limit:
            raise LoopValidationError(
                f"maxTurns must be between 1 and {self.settings.max_turns_limit}, got {config.max_turns}"
            )
        return config

    def _active_for_project(self, project_id: str) -> Optional[LoopController]:
        for (pid, _), controller in self._controllers.items():
            if pid == project_id and not controller.is_terminal:
                return controller
        return None

    async def start(self, project_id: str, config: Union[LoopConfig, Mapping[str, Any]]) -> LoopState:
        """Create, register and start a loop.

        Raises:
            LoopValidationError: On a bad project id or config. Nothing is created.
            ConcurrencyConflictError: If the project already has an active loop.
        """
        config = self._validate(project_id, config)
        settings = self.settings

        async with self._lock:
            active = self._active_for_project(project_id)
            if active is not None:
                raise ConcurrencyConflictError(
                    f"Project {project_id} already has an active loop ({active.task_id}, {active.status.value})"
                )

            task_id = str(uuid.uuid4())
            state = LoopState(
                task_id=task_id,
                project_id=project_id,
                task_description=config.task_description.strip(),
                max_turns=config.max_turns or settings.default_max_turns,
                worker_model=(config.worker_model or "").strip() or settings.default_worker_model,
                reviewer_model=(config.reviewer_model or "").strip() or settings.default_reviewer_model,
                worker_system_prompt=config.worker_system_prompt,
                reviewer_system_prompt=config.reviewer_system_prompt,
            )
            controller = LoopController(
                state,
                self.store,
                self._worker,
                self._reviewer,
                self.broadcaster.emitter_for(project_id, task_id),
                on_finished=self._on_finished,
            )
            key = (project_id, task_id)
            self._controllers[key] = controller
            try:
                initial = await controller.start()
            except Exception:
                self._controllers.pop(key, None)
                raise

        logger.info(
            f"Started loop {project_id}/{task_id}: maxTurns={state.max_turns}, "
            f"worker={state.worker_model}, reviewer={state.reviewer_model}"
        )
        await self._prune_history(project_id)
        return initial

    async def _prune_history(self, project_id: str) -> None:
        try:
            await self.store.prune(project_id, self.settings.history_limit)
        except RalphLoopError as e:
            logger.warning(f"Could not prune loop history for {project_id}: {e}")

    def _on_finished(self, controller: LoopController) -> None:
        key = (controller.project_id, controller.task_id)
        if self._controllers.get(key) is not controller:
            return
        state = controller.state
        if state.stale:
            self._unsaved[key] = state
            logger.warning(
                f"Loop {key[0]}/{key[1]} finished as {state.status.value} but its final state "
                f"is not persisted; keeping it in memory until a save succeeds"
            )
        del self._controllers[key]
        logger.debug(f"Deregistered loop {key[0]}/{key[1]}")

    async def _flush_unsaved(self, key: LoopKey) -> Optional[LoopState]:
        """Retry the final save of a finished loop.

        Returns:
            A copy of the in-memory final state if it is still unsaved, else None.
        """
        state = self._unsaved.get(key)
        if state is None:
            return None
        try:
            await self.store.save(state)
        except PersistenceError as e:
            logger.warning(
                f"Loop {key[0]}/{key[1]}: persisted record is stale, returning in-memory state: {e}"
            )
            return state.snapshot()
        if self._unsaved.get(key) is state:
            del self._unsaved[key]
        logger.info(f"Loop {key[0]}/{key[1]}: persisted final state caught up")
        return None

    @staticmethod
    def _check_key(project_id: str, task_id: str) -> None:
        # No record can exist under an id the store would refuse as a path.
        if not (
            isinstance(project_id, str)
            and isinstance(task_id, str)
            and is_safe_identifier(project_id)
            and is_safe_identifier(task_id)
        ):
            raise LoopNotFoundError(f"Loop {project_id}/{task_id} not found")

    async def _require_live(self, project_id: str, task_id: str) -> LoopController:
        self._check_key(project_id, task_id)
        async with self._lock:
            controller = self._controllers.get((project_id, task_id))
        if controller is not None:
            return controller
        unsaved = self._unsaved.get((project_id, task_id))
        if unsaved is not None:
            raise InvalidStateError(f"Loop {project_id}/{task_id} is {unsaved.status.value} and no longer running")
        stored = await self.store.get(project_id, task_id)
        if stored is None:
            raise LoopNotFoundError(f"Loop {project_id}/{task_id} not found")
        raise InvalidStateError(f"Loop {project_id}/{task_id} is {stored.status.value} and no longer running")

    async def stop(self, project_id: str, task_id: str) -> None:
        controller = await self._require_live(project_id, task_id)
        controller.stop()

    async def pause(self, project_id: str, task_id: str) -> None:
        controller = await self._require_live(project_id, task_id)
        controller.pause()

    async def resume(self, project_id: str, task_id: str) -> None:
        controller = await self._require_live(project_id, task_id)
        controller.resume()

    def _live_view(self, controller: LoopController) -> LoopState:
        state = controller.state
        if state.stale:
            logger.warning(
                f"Loop {state.project_id}/{state.task_id}: persisted record is stale, "
                f"returning in-memory state"
            )
        return state

    async def get(self, project_id: str, task_id: str) -> LoopState:
        """Live view if the loop is registered, otherwise the stored record.

        Raises:
            LoopNotFoundError: If neither exists.
        """
        self._check_key(project_id, task_id)
        controller = self._controllers.get((project_id, task_id))
        if controller is not None:
            return self._live_view(controller)
        unsaved = await self._flush_unsaved((project_id, task_id))
        if unsaved is not None:
            return unsaved
        state = await self.store.get(project_id, task_id)
        if state is None:
            raise LoopNotFoundError(f"Loop {project_id}/{task_id} not found")
        return state

    async def list(self, project_id: str) -> List[LoopState]:
        """All loops of a project, newest first, with live and unsaved views overlaid."""
        if not isinstance(project_id, str) or not is_safe_identifier(project_id):
            return []
        unsaved: Dict[str, LoopState] = {}
        for key in [k for k in self._unsaved if k[0] == project_id]:
            state = await self._flush_unsaved(key)
            if state is not None:
                unsaved[key[1]] = state
        stored = await self.store.list(project_id)
        live = {
            task_id: controller
            for (pid, task_id), controller in self._controllers.items()
            if pid == project_id
        }
        states = [
            self._live_view(live.pop(state.task_id))
            if state.task_id in live
            else unsaved.pop(state.task_id, state)
            for state in stored
        ]
        states.extend(unsaved.values())
        states.extend(self._live_view(controller) for controller in live.values())
        states.sort(key=lambda s: s.created_at, reverse=True)
        return states

    async def delete(self, project_id: str, task_id: str) -> None:
        """Delete a finished loop's record.

        Raises:
            InvalidStateError: If the loop is still registered, or its record is not terminal.
            LoopNotFoundError: If no record exists.
            PersistenceError: If the loop's final state still cannot be saved.
        """
        self._check_key(project_id, task_id)
        async with self._lock:
            if (project_id, task_id) in self._controllers:
                raise InvalidStateError(f"Loop {project_id}/{task_id} is still running; stop it first")
        if await self._flush_unsaved((project_id, task_id)) is not None:
            raise PersistenceError(
                f"Loop {project_id}/{task_id} has an unsaved final state; cannot delete it until it is persisted"
            )
        await self.store.delete(project_id, task_id)
        self.broadcaster.emitter_for(project_id, task_id).deleted()

    async def wait(self, project_id: str, task_id: str) -> LoopState:
        """Wait for a live loop to finish; returns the stored state if it already has."""
        self._check_key(project_id, task_id)
        controller = self._controllers.get((project_id, task_id))
        if controller is not None:
            return await controller.wait()
        return await self.get(project_id, task_id)

    def active_task_id(self, project_id: str) -> Optional[str]:
        controller = self._active_for_project(project_id)
        return controller.task_id if controller else None

    async def shutdown(self) -> None:
        """Stop every live loop and wait for all of them to finalize."""
        controllers = list(self._controllers.values())
        for controller in controllers:
            if not controller.is_terminal:
                controller.stop()
        if controllers:
            logger.info(f"Waiting for {len(controllers)} loop(s) to stop")
            await asyncio.gather(*(c.wait() for c in controllers), return_exceptions=True)
        for key in list(self._unsaved):
            if await self._flush_unsaved(key) is not None:
                logger.error(f"Loop {key[0]}/{key[1]}: final state lost at shutdown, store still failing")
