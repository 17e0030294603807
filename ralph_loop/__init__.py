"""Ralph Loop: a self-correcting Worker/Reviewer task loop."""

from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus
from ralph_loop.loop.contracts import (
    Iteration,
    LoopConfig,
    LoopState,
    ReviewerFeedback,
    WorkerOutput,
)
from ralph_loop.loop.registry import TaskRegistry

__all__ = [
    "Decision",
    "FinalResult",
    "LoopStatus",
    "Iteration",
    "LoopConfig",
    "LoopState",
    "ReviewerFeedback",
    "WorkerOutput",
    "TaskRegistry",
]
