"""Label-driven issue lifecycle.

This module tracks each issue through the states:
draft, waiting_answers, ready_work, in_progress, completed

State is inferred from labels on every event; plans describe the label
and comment mutations, and IssueStateMachine applies them.
"""

from src.conductor.state.machine import (
    InvalidTransitionError,
    IssueStateMachine,
    LabelMutationError,
    TransitionPlan,
    is_held,
    plan_comment_changed,
    plan_completion,
    plan_issue_changed,
    plan_work_started,
)
from src.conductor.state.models import (
    COMPLETED_LABEL,
    IN_PROGRESS_LABEL,
    READY_WORK_LABEL,
    STATE_LABELS,
    VALID_TRANSITIONS,
    WAITING_ANSWERS_LABEL,
    IssueState,
    LabelConflict,
    infer_state,
    is_terminal_state,
    is_valid_transition,
)

__all__ = [
    "COMPLETED_LABEL",
    "IN_PROGRESS_LABEL",
    "READY_WORK_LABEL",
    "STATE_LABELS",
    "VALID_TRANSITIONS",
    "WAITING_ANSWERS_LABEL",
    "InvalidTransitionError",
    "IssueState",
    "IssueStateMachine",
    "LabelConflict",
    "LabelMutationError",
    "TransitionPlan",
    "infer_state",
    "is_held",
    "is_terminal_state",
    "is_valid_transition",
    "plan_comment_changed",
    "plan_completion",
    "plan_issue_changed",
    "plan_work_started",
]
