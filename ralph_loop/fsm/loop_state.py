"""Loop status enumerations for the Worker/Reviewer loop.

This module provides LoopStatus for tracking where a loop is in its
lifecycle, plus the Reviewer decision and final result vocabularies that
are persisted alongside it.
"""

from enum import Enum


class LoopStatus(str, Enum):
    """Loop lifecycle states.

    States represent the phases of a loop execution:
    - IDLE: Created, not yet started
    - WORKER_RUNNING: Worker agent is attempting the task
    - REVIEWER_RUNNING: Reviewer agent is critiquing the latest attempt
    - PAUSED: Suspended at a phase boundary until resumed
    - COMPLETED: Loop ended through approval or by exhausting its turns
    - FAILED: Loop ended through a critical failure, an error or a stop

    Enum values are lowercase strings so they serialize unchanged into the
    persisted record and event payloads.
    """

    IDLE = "idle"
    WORKER_RUNNING = "worker_running"
    REVIEWER_RUNNING = "reviewer_running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({LoopStatus.COMPLETED, LoopStatus.FAILED})


class Decision(str, Enum):
    """Reviewer verdict for one iteration."""

    APPROVE = "approve"
    REJECT = "reject"
    CRITICAL_FAILURE = "critical_failure"


class FinalResult(str, Enum):
    """Terminal outcome of a loop that ended through a Reviewer decision."""

    APPROVED = "approved"
    MAX_TURNS_REACHED = "max_turns_reached"
    CRITICAL_FAILURE = "critical_failure"
