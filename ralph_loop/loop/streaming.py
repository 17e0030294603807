"""Live event stream for loop progress.

Each loop gets a TaskEventEmitter that stamps events with a per-task
sequence number and hands them synchronously to a shared
LoopEventBroadcaster, so events for one task reach every observer in the
order the controller produced them.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Deque, Dict, List, Optional

import pydantic as pd

from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus
from ralph_loop.loop.agent_runner import AgentRole, ToolUse
from ralph_loop.loop.contracts import CamelModel, utcnow

logger = logging.getLogger(__name__)


class LoopEventType(str, Enum):
    """Types of loop events."""

    STATUS = "status"
    ITERATION = "iteration"
    OUTPUT = "output"
    TOOL_USE = "tool_use"
    WORKER_COMPLETE = "worker_complete"
    REVIEWER_COMPLETE = "reviewer_complete"
    COMPLETE = "complete"
    ERROR = "error"
    DELETED = "deleted"


class LoopEvent(CamelModel):
    """One event on a task's stream."""

    event_type: LoopEventType
    project_id: str
    task_id: str
    sequence: int = 0
    timestamp: datetime = pd.Field(default_factory=utcnow)
    data: Dict[str, Any] = pd.Field(default_factory=dict)

    model_config = pd.ConfigDict(extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        """Flat JSON-ready payload: ``{"type", "projectId", "taskId", "sequence", ...data}``."""
        return {
            "type": self.event_type.value,
            "projectId": self.project_id,
            "taskId": self.task_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }


EventListener = Callable[[LoopEvent], None]


class LoopEventBroadcaster:
    """Fans loop events out to listeners and async subscribers.

    Listeners are plain callables invoked inline. Subscribers each get a
    bounded queue; a full queue drops the event with a warning rather than
    blocking the loop. Events no listener or matching subscriber took are
    kept in a bounded backlog and handed to the first matching subscriber.
    """

    def __init__(self, buffer_size: int = 1000) -> None:
        """Initialize broadcaster.

        Args:
            buffer_size: Per-subscriber queue size and backlog length
        """
        self._buffer_size = buffer_size
        self._backlog: Deque[LoopEvent] = deque(maxlen=buffer_size)
        self._listeners: List[EventListener] = []
        self._subscribers: List[tuple[asyncio.Queue[LoopEvent], Optional[str], Optional[str]]] = []

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emitter_for(self, project_id: str, task_id: str) -> "TaskEventEmitter":
        return TaskEventEmitter(project_id, task_id, self.publish)

    def publish(self, event: LoopEvent) -> None:
        """Deliver an event. Never raises."""
        delivered = False
        for listener in list(self._listeners):
            try:
                listener(event)
                delivered = True
            except Exception as e:
                logger.warning(
                    f"Event listener {listener!r} failed on {event.event_type.value} "
                    f"for {event.project_id}/{event.task_id}: {e}"
                )

        for queue, project_id, task_id in self._subscribers:
            if not _matches(event, project_id, task_id):
                continue
            delivered = True
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscriber queue full, dropped event: {event.event_type.value} "
                    f"from {event.project_id}/{event.task_id}"
                )

        if delivered:
            return
        if len(self._backlog) == self._backlog.maxlen:
            oldest = self._backlog[0]
            logger.debug(
                f"Backlog full, dropped oldest event: {oldest.event_type.value} "
                f"from {oldest.project_id}/{oldest.task_id}"
            )
        self._backlog.append(event)

    async def subscribe(
        self,
        project_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> AsyncGenerator[LoopEvent, None]:
        """Subscribe to events as an async generator, optionally filtered.

        Example:
            async for event in broadcaster.subscribe(project_id="web"):
                print(event.event_type, event.data)
        """
        queue: asyncio.Queue[LoopEvent] = asyncio.Queue(maxsize=self._buffer_size)
        entry = (queue, project_id, task_id)
        self._subscribers.append(entry)

        kept: Deque[LoopEvent] = deque(maxlen=self._buffer_size)
        while self._backlog:
            event = self._backlog.popleft()
            if _matches(event, project_id, task_id) and not queue.full():
                queue.put_nowait(event)
            else:
                kept.append(event)
        self._backlog = kept

        try:
            while True:
                yield await queue.get()
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def _matches(event: LoopEvent, project_id: Optional[str], task_id: Optional[str]) -> bool:
    if project_id is not None and event.project_id != project_id:
        return False
    return task_id is None or event.task_id == task_id


class TaskEventEmitter:
    """Ordered event channel for one (project_id, task_id).

    Fire-and-forget from the controller's point of view: publishing never
    raises and never blocks.
    """

    def __init__(self, project_id: str, task_id: str, publish: Callable[[LoopEvent], None]):
        self.project_id = project_id
        self.task_id = task_id
        self._publish = publish
        self._sequence = 0

    def emit(self, event_type: LoopEventType, **data: Any) -> LoopEvent:
        self._sequence += 1
        event = LoopEvent(
            event_type=event_type,
            project_id=self.project_id,
            task_id=self.task_id,
            sequence=self._sequence,
            data=data,
        )
        try:
            self._publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type.value} for {self.project_id}/{self.task_id}: {e}")
        return event

    def status(self, status: LoopStatus, current_iteration: int, max_turns: int) -> LoopEvent:
        return self.emit(
            LoopEventType.STATUS,
            status=status.value,
            currentIteration=current_iteration,
            maxTurns=max_turns,
        )

    def iteration(self, iteration: int) -> LoopEvent:
        return self.emit(LoopEventType.ITERATION, iteration=iteration)

    def output(self, source: AgentRole, content: str) -> LoopEvent:
        return self.emit(LoopEventType.OUTPUT, source=source, content=content)

    def tool_use(self, source: AgentRole, tool: ToolUse) -> LoopEvent:
        return self.emit(
            LoopEventType.TOOL_USE,
            source=source,
            tool=tool.model_dump(by_alias=True, mode="json"),
        )

    def worker_complete(self, iteration_number: int, files_modified: List[str]) -> LoopEvent:
        return self.emit(
            LoopEventType.WORKER_COMPLETE,
            summary={"iterationNumber": iteration_number, "filesModified": list(files_modified)},
        )

    def reviewer_complete(self, iteration_number: int, decision: Decision, feedback: str) -> LoopEvent:
        return self.emit(
            LoopEventType.REVIEWER_COMPLETE,
            feedback={
                "iterationNumber": iteration_number,
                "decision": decision.value,
                "feedback": feedback,
            },
        )

    def complete(self, final_result: Optional[FinalResult], error: Optional[str] = None) -> LoopEvent:
        return self.emit(
            LoopEventType.COMPLETE,
            finalStatus=final_result.value if final_result else None,
            error=error,
        )

    def error(self, message: str) -> LoopEvent:
        return self.emit(LoopEventType.ERROR, error=message)

    def deleted(self) -> LoopEvent:
        return self.emit(LoopEventType.DELETED)
