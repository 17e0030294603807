"""LoopFSM: transition validation for the Worker/Reviewer loop.

The controller owns the loop's data; this class only owns the current
status and refuses status changes that the transition map does not allow.
"""

from typing import Dict, Optional

from ralph_loop.fsm.loop_state import LoopStatus
from ralph_loop.loop.errors import InvalidStateError


# Default transition map: defines valid status transitions for a loop
LOOP_TRANSITIONS: Dict[LoopStatus, set[LoopStatus]] = {
    LoopStatus.IDLE: {LoopStatus.WORKER_RUNNING, LoopStatus.FAILED},
    LoopStatus.WORKER_RUNNING: {
        LoopStatus.REVIEWER_RUNNING,
        LoopStatus.PAUSED,
        LoopStatus.FAILED,
    },
    LoopStatus.REVIEWER_RUNNING: {
        LoopStatus.WORKER_RUNNING,
        LoopStatus.COMPLETED,
        LoopStatus.PAUSED,
        LoopStatus.FAILED,
    },
    LoopStatus.PAUSED: {
        LoopStatus.WORKER_RUNNING,
        LoopStatus.REVIEWER_RUNNING,
        LoopStatus.FAILED,
    },
    LoopStatus.COMPLETED: set(),  # Terminal state
    LoopStatus.FAILED: set(),  # Terminal state
}


class LoopFSM:
    """Finite state machine guarding a single loop's status.

    All mutations happen on the event loop thread of the owning controller,
    so no lock is held here.

    Example:
        >>> fsm = LoopFSM()
        >>> fsm.current_status
        <LoopStatus.IDLE: 'idle'>
        >>> fsm.transition_to(LoopStatus.WORKER_RUNNING)
        <LoopStatus.WORKER_RUNNING: 'worker_running'>
        >>> fsm.can_transition_to(LoopStatus.IDLE)
        False
    """

    def __init__(
        self,
        initial: LoopStatus = LoopStatus.IDLE,
        transitions: Optional[Dict[LoopStatus, set[LoopStatus]]] = None,
    ):
        """Initialize loop state machine.

        Args:
            initial: Starting status (default: IDLE).
            transitions: Optional custom transition map. Defaults to LOOP_TRANSITIONS.
        """
        self._current_status = initial
        self._transitions = transitions if transitions is not None else LOOP_TRANSITIONS

    @property
    def current_status(self) -> LoopStatus:
        """Get the current status (read-only)."""
        return self._current_status

    @property
    def transitions(self) -> Dict[LoopStatus, set[LoopStatus]]:
        """Get the transition map (read-only)."""
        return self._transitions

    @property
    def is_terminal(self) -> bool:
        return not self._transitions.get(self._current_status)

    def transition_to(self, next_status: LoopStatus) -> LoopStatus:
        """Move to a new status.

        Args:
            next_status: The target status.

        Returns:
            The new current status.

        Raises:
            InvalidStateError: If the transition map forbids the move. The
                current status is left unchanged.
        """
        if not self.can_transition_to(next_status):
            allowed = sorted(s.value for s in self._transitions.get(self._current_status, set()))
            raise InvalidStateError(
                f"Invalid transition: {self._current_status.value} -> {next_status.value}. "
                f"Valid transitions from {self._current_status.value}: {allowed}"
            )
        self._current_status = next_status
        return next_status

    def can_transition_to(self, next_status: LoopStatus) -> bool:
        """Check if a transition would be valid without changing status."""
        return next_status in self._transitions.get(self._current_status, set())
