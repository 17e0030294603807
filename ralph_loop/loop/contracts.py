"""Pydantic contracts for loop configuration, persisted state and iterations.

Python attributes are snake_case. Serialized names are camelCase so that the
persisted record and event payloads keep the field names dashboards and API
consumers already expect (``taskId``, ``currentIteration``, ``finalResult``...).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import pydantic as pd
from pydantic.alias_generators import to_camel

from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(pd.BaseModel):
    """Base model serializing field names as camelCase."""

    model_config = pd.ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkerOutput(CamelModel):
    """What one Worker phase produced."""

    summary: str = ""
    files_modified: List[str] = pd.Field(default_factory=list)
    tokens_used: int = 0
    duration_ms: int = 0

    model_config = pd.ConfigDict(extra="ignore")


class ReviewerFeedback(CamelModel):
    """Structured critique returned by the Reviewer."""

    decision: Decision
    feedback: str = ""
    specific_issues: List[str] = pd.Field(default_factory=list)
    suggested_improvements: List[str] = pd.Field(default_factory=list)

    model_config = pd.ConfigDict(extra="ignore")


class Iteration(CamelModel):
    """One Worker-then-Reviewer cycle.

    Appended when the Worker phase returns; ``decision`` and
    ``reviewer_feedback`` stay unset until the Reviewer phase for the same
    iteration returns.
    """

    number: int = pd.Field(ge=1)
    worker_output: WorkerOutput
    reviewer_feedback: Optional[ReviewerFeedback] = None
    decision: Optional[Decision] = None
    timestamp: datetime = pd.Field(default_factory=utcnow)

    model_config = pd.ConfigDict(extra="ignore")

    @property
    def is_reviewed(self) -> bool:
        return self.decision is not None


class LoopConfig(CamelModel):
    """Caller-supplied start configuration. Unset fields take configured defaults."""

    task_description: str
    max_turns: Optional[int] = None
    worker_model: Optional[str] = None
    reviewer_model: Optional[str] = None
    worker_system_prompt: Optional[str] = None
    reviewer_system_prompt: Optional[str] = None

    model_config = pd.ConfigDict(extra="forbid")


class LoopState(CamelModel):
    """The full persisted record of one loop.

    Mutated only by the loop's own controller. Callers receive deep copies.
    """

    task_id: str
    project_id: str
    task_description: str
    status: LoopStatus = LoopStatus.IDLE
    current_iteration: int = pd.Field(default=0, ge=0)
    max_turns: int = pd.Field(ge=1)
    worker_model: str
    reviewer_model: str
    worker_system_prompt: Optional[str] = None
    reviewer_system_prompt: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    final_result: Optional[FinalResult] = None
    error: Optional[str] = None
    iterations: List[Iteration] = pd.Field(default_factory=list)
    created_at: datetime = pd.Field(default_factory=utcnow)
    updated_at: datetime = pd.Field(default_factory=utcnow)

    # Set on live views while the latest save is known to have failed.
    stale: bool = pd.Field(default=False, exclude=True)

    model_config = pd.ConfigDict(extra="ignore")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def last_iteration(self) -> Optional[Iteration]:
        return self.iterations[-1] if self.iterations else None

    def snapshot(self) -> "LoopState":
        """Deep copy safe to hand to code outside the controller."""
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "LoopState":
        return cls.model_validate_json(raw)
