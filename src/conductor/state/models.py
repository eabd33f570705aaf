"""Issue lifecycle models.

This module defines the data models for the label-driven issue lifecycle:
- IssueState: Enum of lifecycle states
- Label vocabulary: state labels and read-only priority labels
- LabelConflict: Record of an inconsistent external label set
- VALID_TRANSITIONS: Map defining allowed state transitions

IssueState is never stored. It is inferred from the issue's current label
set at the start of every event, and the engine computes the target label
set from it.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field


class IssueState(str, Enum):
    """Lifecycle states an issue moves through.

    State Flow:
        draft → waiting_answers ↔ ready_work → in_progress → completed

    Attributes:
        DRAFT: No state label; not yet triaged (or held by a draft label).
        WAITING_ANSWERS: Clarifying questions remain unanswered.
        READY_WORK: All questions answered; an agent may pick it up.
        IN_PROGRESS: An agent has started work.
        COMPLETED: A merged pull request finished the work.
    """

    DRAFT = "draft"
    WAITING_ANSWERS = "waiting_answers"
    READY_WORK = "ready_work"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


WAITING_ANSWERS_LABEL = "waiting:answers"
READY_WORK_LABEL = "ready:work"
IN_PROGRESS_LABEL = "status:in-progress"
COMPLETED_LABEL = "status:completed"

STATE_LABELS: Dict[IssueState, str] = {
    IssueState.WAITING_ANSWERS: WAITING_ANSWERS_LABEL,
    IssueState.READY_WORK: READY_WORK_LABEL,
    IssueState.IN_PROGRESS: IN_PROGRESS_LABEL,
    IssueState.COMPLETED: COMPLETED_LABEL,
}

LABEL_STATES: Dict[str, IssueState] = {label: state for state, label in STATE_LABELS.items()}

ALL_STATE_LABELS: FrozenSet[str] = frozenset(STATE_LABELS.values())

PRIORITY_CRITICAL_LABEL = "priority:critical"
PRIORITY_HIGH_LABEL = "priority:high"
PRIORITY_MEDIUM_LABEL = "priority:medium"

PRE_WORK_STATES: FrozenSet[IssueState] = frozenset(
    {IssueState.DRAFT, IssueState.WAITING_ANSWERS, IssueState.READY_WORK}
)

# Most advanced first; used to resolve conflicting label sets.
_ADVANCEMENT: List[IssueState] = [
    IssueState.COMPLETED,
    IssueState.IN_PROGRESS,
    IssueState.READY_WORK,
    IssueState.WAITING_ANSWERS,
]


class LabelConflict(BaseModel):
    """Record of an external label set that violates the one-state-label rule.

    Not an exception: the engine resolves the conflict, repairs the labels
    on the same event and logs this record as a warning.

    Attributes:
        labels: The conflicting state labels found on the issue.
        resolved_state: The state the engine decided on.
        reason: How the conflict was resolved.
    """

    labels: List[str] = Field(
        ...,
        description="Conflicting state labels present on the issue",
    )

    resolved_state: IssueState = Field(
        ...,
        description="State chosen by the tie-break policy",
    )

    reason: str = Field(
        default="",
        description="Which tie-break rule resolved the conflict",
    )


def state_labels_present(labels: Iterable[str]) -> List[str]:
    """Return the state labels among labels, sorted for stable output."""
    return sorted(set(labels) & ALL_STATE_LABELS)


def infer_state(
    labels: Iterable[str],
    ready: Optional[bool] = None,
) -> Tuple[IssueState, Optional[LabelConflict]]:
    """Infer the lifecycle state from a label set.

    When exactly waiting:answers and ready:work are both present, the
    readiness verdict decides: unanswered questions mean WaitingAnswers,
    otherwise ReadyWork. Without a verdict (ready=None) the conservative
    answer is WaitingAnswers. Any other combination resolves to the most
    advanced state present.

    Args:
        labels: Current label names on the issue.
        ready: Readiness verdict, if the caller has one.

    Returns:
        The inferred state and, when the labels conflicted, a LabelConflict.
    """
    present = state_labels_present(labels)
    if not present:
        return IssueState.DRAFT, None
    if len(present) == 1:
        return LABEL_STATES[present[0]], None

    if set(present) == {WAITING_ANSWERS_LABEL, READY_WORK_LABEL}:
        resolved = IssueState.READY_WORK if ready else IssueState.WAITING_ANSWERS
        return resolved, LabelConflict(
            labels=present,
            resolved_state=resolved,
            reason="readiness" if ready is not None else "readiness_unknown",
        )

    states = {LABEL_STATES[label] for label in present}
    resolved = next(state for state in _ADVANCEMENT if state in states)
    return resolved, LabelConflict(
        labels=present,
        resolved_state=resolved,
        reason="most_advanced",
    )


# Valid state transitions map
#
# Edits and comments only move issues among the pre-work states. The work
# started signal is the only way into IN_PROGRESS from READY_WORK; the
# other pre-work states reach IN_PROGRESS only on the completion path, where
# a merged pull request is driven through IN_PROGRESS to COMPLETED.
VALID_TRANSITIONS: Dict[IssueState, List[IssueState]] = {
    IssueState.DRAFT: [
        IssueState.WAITING_ANSWERS,
        IssueState.READY_WORK,
        IssueState.IN_PROGRESS,
    ],
    IssueState.WAITING_ANSWERS: [
        IssueState.DRAFT,
        IssueState.READY_WORK,
        IssueState.IN_PROGRESS,
    ],
    IssueState.READY_WORK: [
        IssueState.DRAFT,
        IssueState.WAITING_ANSWERS,
        IssueState.IN_PROGRESS,
    ],
    IssueState.IN_PROGRESS: [
        IssueState.COMPLETED,
    ],
    # COMPLETED: Terminal state, no outgoing transitions
    IssueState.COMPLETED: [],
}


def is_valid_transition(from_state: IssueState, to_state: IssueState) -> bool:
    """Check if a state transition is valid.

    Example:
        >>> is_valid_transition(IssueState.WAITING_ANSWERS, IssueState.READY_WORK)
        True
        >>> is_valid_transition(IssueState.COMPLETED, IssueState.READY_WORK)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: IssueState) -> bool:
    """Check if a state has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(state, [])) == 0
