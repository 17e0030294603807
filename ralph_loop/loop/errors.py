"""Exception taxonomy for loop control and execution."""


class RalphLoopError(Exception):
    """Base class for all loop errors."""


class LoopValidationError(RalphLoopError):
    """Raised when a start configuration is rejected. No state is created."""


class ConcurrencyConflictError(RalphLoopError):
    """Raised when a project already has an active loop."""


class LoopNotFoundError(RalphLoopError):
    """Raised when no loop exists for a (project_id, task_id) key."""


class InvalidStateError(RalphLoopError):
    """Raised when an operation does not fit the loop's lifecycle stage."""


class TransientAgentError(RalphLoopError):
    """Raised by an Agent Runner for retryable failures (timeouts, dropped connections)."""


class AgentCancelledError(RalphLoopError):
    """Raised by an Agent Runner that honored a cancellation request mid-call."""


class MalformedReviewerResponseError(RalphLoopError):
    """Raised when a Reviewer response cannot be parsed into a decision."""


class PersistenceError(RalphLoopError):
    """Raised when the state store cannot read or write a record."""


class PhaseFailedError(RalphLoopError):
    """Raised when a phase fails unrecoverably, after any retries."""

    def __init__(self, phase: str, message: str, attempts: int = 1):
        self.phase = phase
        self.attempts = attempts
        super().__init__(message)
