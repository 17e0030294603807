"""Finite state machine package for ralph-loop.

This package provides the loop status enumeration and the transition table
that every Loop Controller validates its status changes against.
"""

from ralph_loop.fsm.loop_fsm import LOOP_TRANSITIONS, LoopFSM
from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus

__all__ = ["LOOP_TRANSITIONS", "LoopFSM", "Decision", "FinalResult", "LoopStatus"]
