"""Context builder interface and default implementation for loop prompts.

This module provides the seam for turning a loop's history into Worker and
Reviewer prompts, so prompt wording can change without touching the
controller or the phase executors.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from string import Template
from typing import List, Optional

from ralph_loop.loop.contracts import Iteration, LoopState, WorkerOutput

logger = logging.getLogger(__name__)

DEFAULT_WORKER_TEMPLATE = """You are a worker agent implementing a task iteratively. Your goal is to make progress on the task while building upon previous work.

This is iteration ${iterationNumber} of at most ${maxTurns}.

## Task Description
${taskDescription}

## Previous Iterations Summary
${previousSummaries}

## Previous Reviewer Feedback
${previousFeedback}

## Your Instructions
1. Review the previous work and feedback carefully
2. Address any specific issues raised by the reviewer
3. Make incremental progress on the task
4. When done, provide a summary of:
   - What changes you made
   - Files you modified
   - Any blockers or questions

Focus on quality over speed. Solid progress on one aspect beats rushing through several."""

DEFAULT_REVIEWER_TEMPLATE = """You are a code reviewer evaluating work done by a worker agent. Your job is to provide constructive feedback and decide whether the work meets quality standards.

This is iteration ${iterationNumber} of at most ${maxTurns}.

## Original Task
${taskDescription}

## Worker Output This Iteration
${workerOutput}

## Previous Feedback History
${previousFeedback}

## Review Criteria
1. Does the implementation match the requirements?
2. Is the code correct and well-tested?
3. Are there any bugs or edge cases missed?
4. Is the code maintainable?

## Your Response
Provide your decision as JSON:
```json
{
  "decision": "approve" | "reject" | "critical_failure",
  "feedback": "Overall assessment...",
  "specificIssues": ["Issue 1", "Issue 2"],
  "suggestedImprovements": ["Improvement 1", "Improvement 2"]
}
```

Use "reject" when the work needs another iteration and "critical_failure" only when the task cannot be completed at all. Be specific and actionable in your feedback. If approving, explain why the work is sufficient."""

NO_SUMMARIES = "No previous iterations yet. This is the first iteration."
NO_FEEDBACK = "No previous feedback yet. This is the first iteration."
SEPARATOR = "\n\n---\n\n"


def format_worker_output(output: WorkerOutput) -> str:
    lines = []
    if output.files_modified:
        lines.append(f"**Files Modified:** {', '.join(output.files_modified)}")
        lines.append("")
    lines.append(output.summary or "(no output)")
    return "\n".join(lines)


def format_summary(iteration: Iteration) -> str:
    output = iteration.worker_output
    lines = [
        f"### Iteration {iteration.number}",
        f"**Timestamp:** {iteration.timestamp.isoformat()}",
        f"**Duration:** {round(output.duration_ms / 1000)}s",
        f"**Tokens Used:** {output.tokens_used}",
    ]
    if output.files_modified:
        lines.append(f"**Files Modified:** {', '.join(output.files_modified)}")
    lines.extend(["", "**Output:**", output.summary])
    return "\n".join(lines)


def format_feedback(iteration: Iteration) -> str:
    review = iteration.reviewer_feedback
    decision = iteration.decision.value if iteration.decision else "pending"
    lines = [
        f"### Iteration {iteration.number} Review",
        f"**Decision:** {decision.upper()}",
        "",
        "**Feedback:**",
        review.feedback if review else "",
    ]
    if review and review.specific_issues:
        lines.extend(["", "**Specific Issues:**"])
        lines.extend(f"- {issue}" for issue in review.specific_issues)
    if review and review.suggested_improvements:
        lines.extend(["", "**Suggested Improvements:**"])
        lines.extend(f"- {item}" for item in review.suggested_improvements)
    return "\n".join(lines)


def _reviewed(iterations: List[Iteration]) -> List[Iteration]:
    return [it for it in iterations if it.is_reviewed]


class ContextBuilder(ABC):
    """Abstract interface for rendering Worker and Reviewer prompts."""

    @abstractmethod
    def build_worker_prompt(self, state: LoopState) -> str:
        """Prompt for the Worker phase of ``state.current_iteration``."""
        pass

    @abstractmethod
    def build_reviewer_prompt(self, state: LoopState, worker_output: WorkerOutput) -> str:
        """Prompt for the Reviewer phase judging ``worker_output``."""
        pass


class DefaultContextBuilder(ContextBuilder):
    """Renders prompts from ``string.Template`` templates.

    The Worker sees every earlier attempt and every Reviewer verdict. From
    the second iteration on, the latest verdict is repeated at the top of
    the feedback section so it is addressed first.
    """

    def __init__(
        self,
        worker_template: Optional[str] = None,
        reviewer_template: Optional[str] = None,
    ):
        self.worker_template = Template(worker_template or DEFAULT_WORKER_TEMPLATE)
        self.reviewer_template = Template(reviewer_template or DEFAULT_REVIEWER_TEMPLATE)

    def build_worker_prompt(self, state: LoopState) -> str:
        prior = [it for it in state.iterations if it.number < state.current_iteration]
        summaries = SEPARATOR.join(format_summary(it) for it in prior) or NO_SUMMARIES

        reviewed = _reviewed(prior)
        feedback = SEPARATOR.join(format_feedback(it) for it in reviewed) or NO_FEEDBACK
        if reviewed and state.current_iteration > 1:
            feedback = self._emphasize_latest(reviewed[-1], feedback)

        return self.worker_template.safe_substitute(
            taskDescription=state.task_description,
            iterationNumber=state.current_iteration,
            maxTurns=state.max_turns,
            previousSummaries=summaries,
            previousFeedback=feedback,
        )

    def build_reviewer_prompt(self, state: LoopState, worker_output: WorkerOutput) -> str:
        earlier = [it for it in _reviewed(state.iterations) if it.number < state.current_iteration]
        feedback = SEPARATOR.join(format_feedback(it) for it in earlier) or NO_FEEDBACK

        return self.reviewer_template.safe_substitute(
            taskDescription=state.task_description,
            iterationNumber=state.current_iteration,
            maxTurns=state.max_turns,
            workerOutput=format_worker_output(worker_output),
            previousFeedback=feedback,
        )

    def _emphasize_latest(self, latest: Iteration, full_feedback: str) -> str:
        review = latest.reviewer_feedback
        lines = [
            "## IMPORTANT: Address This Feedback First",
            "",
            f"The reviewer's decision was: **{latest.decision.value.upper()}**",
            "",
            review.feedback if review else "",
        ]
        if review and review.specific_issues:
            lines.extend(["", "**You MUST address these issues:**"])
            lines.extend(f"{i}. {issue}" for i, issue in enumerate(review.specific_issues, 1))
        lines.extend(["", "---", "", "## Full Feedback History", "", full_feedback])
        return "\n".join(lines)
