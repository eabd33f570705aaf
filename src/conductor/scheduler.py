"""Priority scheduler: choose the next ready issue when work completes.

Ordering is priority class first (critical, high, medium, then unlabeled),
then oldest creation time, then lowest issue number so the choice is
deterministic.
"""

from enum import IntEnum
from typing import Iterable, Optional

from src.conductor.github.models import Issue
from src.conductor.state.models import (
    PRIORITY_CRITICAL_LABEL,
    PRIORITY_HIGH_LABEL,
    PRIORITY_MEDIUM_LABEL,
    IssueState,
    infer_state,
)


class PriorityClass(IntEnum):
    """Selection priority derived from labels; lower sorts first."""

    CRITICAL = 0
    HIGH = 1
    MEDIUM = 2
    NONE = 3


_PRIORITY_LABELS = [
    (PRIORITY_CRITICAL_LABEL, PriorityClass.CRITICAL),
    (PRIORITY_HIGH_LABEL, PriorityClass.HIGH),
    (PRIORITY_MEDIUM_LABEL, PriorityClass.MEDIUM),
]


def priority_of(labels: Iterable[str]) -> PriorityClass:
    """Highest priority class among labels (an issue may carry several)."""
    present = {label.lower() for label in labels}
    for label, priority in _PRIORITY_LABELS:
        if label in present:
            return priority
    return PriorityClass.NONE


def is_ready_candidate(issue: Issue) -> bool:
    """Open issue whose labels infer ReadyWork without any conflict."""
    if not issue.is_open:
        return False
    state, conflict = infer_state(issue.labels)
    return state == IssueState.READY_WORK and conflict is None


def select_next(candidates: Iterable[Issue]) -> Optional[Issue]:
    """Select the next issue to spawn, or None when idle.

    Example:
        >>> select_next([medium_t1, critical_t2, critical_t3]).number == critical_t2.number
        True
    """
    ready = [issue for issue in candidates if is_ready_candidate(issue)]
    if not ready:
        return None
    return min(
        ready,
        key=lambda issue: (priority_of(issue.labels), issue.created_at, issue.number),
    )
