"""Label state transition engine.

Planning and applying are separate steps. The plan_* functions are pure:
given the issue's current read view (and a readiness report where needed)
they return a TransitionPlan describing the label, comment and close
mutations for one event. IssueStateMachine applies a plan through the
issue tracker, removing stale labels before adding the target label and
re-reading the labels afterwards to verify the pair landed as a unit.

Idempotency falls out of planning against current labels: when the target
label is already present and no stale label remains, the plan is a no-op,
and comments are only attached to plans that actually change state.
"""

import logging
from typing import Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from src.conductor.formatting import (
    extract_issue_code,
    format_completion_comment,
    format_resumption_comment,
)
from src.conductor.github.client import IssueTracker
from src.conductor.github.models import Issue
from src.conductor.readiness.models import ReadinessReport
from src.conductor.state.models import (
    ALL_STATE_LABELS,
    PRE_WORK_STATES,
    STATE_LABELS,
    IssueState,
    LabelConflict,
    infer_state,
    is_terminal_state,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an event asks for a transition the lifecycle forbids.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_state: IssueState,
        to_state: IssueState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Invalid transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


class LabelMutationError(Exception):
    """Raised when labels read back after a mutation do not match the plan.

    The issue is left for the next event to repair; remove-before-add
    ordering means the worst case is an issue with no state label.

    Attributes:
        issue_number: The issue whose mutation failed verification.
        missing: Target labels that are not present.
        lingering: Stale labels that are still present.
    """

    def __init__(self, issue_number: int, missing: List[str], lingering: List[str]):
        self.issue_number = issue_number
        self.missing = missing
        self.lingering = lingering
        super().__init__(
            f"Label mutation on issue #{issue_number} did not verify: "
            f"missing={missing}, lingering={lingering}"
        )


class TransitionPlan(BaseModel):
    """Mutations the engine decided on for one issue and one event.

    Attributes:
        issue_number: Issue the plan applies to.
        from_state: State inferred from labels when the event arrived.
        to_state: State the issue should be in afterwards.
        remove_labels: Stale state labels to remove (applied first).
        add_labels: Target state label to add (applied second).
        comments: Comment bodies to post after labels verify.
        close_issue: Whether to close the issue last.
        spawn: Whether the spawn coordinator should be consulted.
        entering_ready: Whether this event moves the issue into ReadyWork,
            which starts a new spawn generation.
        conflict: Conflicting label set repaired by this plan, if any.
        reason: Short machine-readable reason for the decision.
    """

    issue_number: int = Field(..., gt=0)

    from_state: IssueState

    to_state: IssueState

    remove_labels: List[str] = Field(default_factory=list)

    add_labels: List[str] = Field(default_factory=list)

    comments: List[str] = Field(default_factory=list)

    close_issue: bool = False

    spawn: bool = False

    entering_ready: bool = False

    conflict: Optional[LabelConflict] = None

    reason: str = ""

    @property
    def changes_labels(self) -> bool:
        return bool(self.remove_labels or self.add_labels)

    @property
    def is_noop(self) -> bool:
        return not (self.changes_labels or self.comments or self.close_issue)

    def resulting_labels(self, labels: Iterable[str]) -> Set[str]:
        """Labels after this plan is applied to labels."""
        result = set(labels) - set(self.remove_labels)
        result.update(self.add_labels)
        return result


def is_held(labels: Iterable[str], hold_labels: Iterable[str]) -> bool:
    """Check whether a draft hold label keeps the issue in Draft."""
    holds = {label.lower() for label in hold_labels}
    return any(label.lower() in holds for label in labels)


def _noop(
    issue: Issue,
    state: IssueState,
    reason: str,
    spawn: bool = False,
) -> TransitionPlan:
    return TransitionPlan(
        issue_number=issue.number,
        from_state=state,
        to_state=state,
        spawn=spawn,
        reason=reason,
    )


def _plan_to(
    issue: Issue,
    from_state: IssueState,
    to_state: IssueState,
    reason: str,
    conflict: Optional[LabelConflict] = None,
    labels: Optional[Set[str]] = None,
) -> TransitionPlan:
    """Plan the label pair that moves an issue to to_state.

    Every state label other than the target is removed, which also repairs
    conflicting label sets.
    """
    if from_state != to_state and not is_valid_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)

    current = set(issue.labels if labels is None else labels)
    target_label = STATE_LABELS.get(to_state)
    stale = (current & ALL_STATE_LABELS) - {target_label}
    add = [target_label] if target_label and target_label not in current else []

    return TransitionPlan(
        issue_number=issue.number,
        from_state=from_state,
        to_state=to_state,
        remove_labels=sorted(stale),
        add_labels=add,
        conflict=conflict,
        reason=reason,
    )


def plan_issue_changed(
    issue: Issue,
    report: ReadinessReport,
    hold_labels: Iterable[str] = (),
) -> TransitionPlan:
    """Plan for issue opened/edited/labeled/unlabeled/reopened.

    Pre-work issues are moved to WaitingAnswers or ReadyWork according to
    the readiness report. Issues already in progress or completed are only
    repaired when their labels conflict.
    """
    state, conflict = infer_state(issue.labels, report.ready)

    if not issue.is_open:
        return _noop(issue, state, "issue_closed")

    if state not in PRE_WORK_STATES:
        if conflict is not None:
            return _plan_to(issue, state, state, "label_repair", conflict)
        return _noop(issue, state, "work_owned")

    if is_held(issue.labels, hold_labels):
        return _plan_to(issue, state, IssueState.DRAFT, "draft_hold", conflict)

    if report.ready:
        plan = _plan_to(issue, state, IssueState.READY_WORK, "questions_answered", conflict)
        plan.spawn = True
        plan.entering_ready = state != IssueState.READY_WORK
        return plan

    reason = "questions_malformed" if report.malformed else "questions_unanswered"
    return _plan_to(issue, state, IssueState.WAITING_ANSWERS, reason, conflict)


def plan_comment_changed(
    issue: Issue,
    report: ReadinessReport,
    hold_labels: Iterable[str] = (),
) -> TransitionPlan:
    """Plan for comment created/edited.

    Only WaitingAnswers issues react: once the re-run analysis reports all
    questions answered the issue moves to ReadyWork with a resumption
    comment. Anything else is a no-op apart from conflict repair.
    """
    state, conflict = infer_state(issue.labels, report.ready)

    if not issue.is_open:
        return _noop(issue, state, "issue_closed")

    if is_held(issue.labels, hold_labels):
        return _noop(issue, state, "draft_hold")

    if conflict is not None:
        plan = _plan_to(issue, state, state, "label_repair", conflict)
        plan.spawn = state == IssueState.READY_WORK
        return plan

    if state != IssueState.WAITING_ANSWERS:
        return _noop(issue, state, "not_waiting")

    if not report.ready:
        return _noop(issue, state, "questions_unanswered")

    plan = _plan_to(issue, state, IssueState.READY_WORK, "answers_complete")
    plan.comments = [
        format_resumption_comment(
            extract_issue_code(issue.title, issue.number),
            report.total_questions,
        )
    ]
    plan.spawn = True
    plan.entering_ready = True
    return plan


def plan_work_started(issue: Issue) -> TransitionPlan:
    """Plan for the external "agent began work" signal.

    Raises:
        InvalidTransitionError: If the issue is not in ReadyWork.
    """
    state, conflict = infer_state(issue.labels)

    if state == IssueState.IN_PROGRESS:
        if conflict is not None:
            return _plan_to(issue, state, state, "label_repair", conflict)
        return _noop(issue, state, "already_in_progress")

    if state != IssueState.READY_WORK:
        raise InvalidTransitionError(
            state,
            IssueState.IN_PROGRESS,
            f"Issue #{issue.number} is {state.value}; work can only start from ready_work",
        )

    return _plan_to(issue, state, IssueState.IN_PROGRESS, "work_started", conflict)


def plan_completion(issue: Issue, pr_number: int) -> List[TransitionPlan]:
    """Plan for a merged pull request that references the issue.

    The issue is driven through InProgress (when it is not there yet) and
    then to Completed: completed label, completion comment, issue closed.

    Returns:
        The ordered plans; empty when the issue is already completed and
        closed.
    """
    state, conflict = infer_state(issue.labels)

    if is_terminal_state(state):
        plan = _plan_to(issue, state, state, "already_completed", conflict)
        plan.close_issue = issue.is_open
        return [] if plan.is_noop else [plan]

    plans: List[TransitionPlan] = []
    labels = set(issue.labels)
    if state != IssueState.IN_PROGRESS:
        step = _plan_to(issue, state, IssueState.IN_PROGRESS, "completion_via_in_progress", conflict)
        plans.append(step)
        labels = step.resulting_labels(labels)
        conflict = None

    final = _plan_to(
        issue,
        IssueState.IN_PROGRESS,
        IssueState.COMPLETED,
        "pull_request_merged",
        conflict,
        labels=labels,
    )
    final.comments = [format_completion_comment(pr_number)]
    final.close_issue = issue.is_open
    plans.append(final)
    return plans


class IssueStateMachine:
    """Applies TransitionPlans through the issue tracker.

    Application order per plan: remove stale labels, add the target label,
    re-read and verify labels, post comments, close the issue. Any tracker
    failure propagates; a verification mismatch raises LabelMutationError.

    Attributes:
        tracker: Issue tracker read/write surface.
        owner: Repository owner.
        repo: Repository name.

    Example:
        >>> machine = IssueStateMachine(client, "owner", "repo")
        >>> plan = plan_issue_changed(issue, analyze(issue.body, issue.comments))
        >>> await machine.apply(plan)
    """

    def __init__(self, tracker: IssueTracker, owner: str, repo: str):
        self.tracker = tracker
        self.owner = owner
        self.repo = repo

    async def apply(self, plan: TransitionPlan, dry_run: bool = False) -> TransitionPlan:
        """Apply a plan, or only log it when dry_run is set.

        Returns:
            The plan that was applied (or would have been).

        Raises:
            LabelMutationError: If the labels do not verify after mutation.
            GitHubAPIError: If a tracker write fails after retries.
        """
        log_extra = {
            "issue_number": plan.issue_number,
            "from_state": plan.from_state.value,
            "to_state": plan.to_state.value,
            "reason": plan.reason,
            "add_labels": plan.add_labels,
            "remove_labels": plan.remove_labels,
            "dry_run": dry_run,
        }

        if plan.conflict is not None:
            logger.warning(
                "Label conflict detected; repairing",
                extra={
                    **log_extra,
                    "conflicting_labels": plan.conflict.labels,
                    "resolved_state": plan.conflict.resolved_state.value,
                },
            )

        if plan.is_noop:
            logger.debug("No mutation needed", extra=log_extra)
            return plan

        if dry_run:
            logger.info("Dry run: mutation not applied", extra=log_extra)
            return plan

        logger.info("Applying state transition", extra=log_extra)

        for label in plan.remove_labels:
            await self.tracker.remove_label(self.owner, self.repo, plan.issue_number, label)
        for label in plan.add_labels:
            await self.tracker.add_label(self.owner, self.repo, plan.issue_number, label)

        if plan.changes_labels:
            await self._verify(plan)

        for body in plan.comments:
            await self.tracker.create_comment(self.owner, self.repo, plan.issue_number, body)

        if plan.close_issue:
            await self.tracker.close_issue(self.owner, self.repo, plan.issue_number)

        return plan

    async def apply_all(
        self,
        plans: List[TransitionPlan],
        dry_run: bool = False,
    ) -> List[TransitionPlan]:
        """Apply plans in order, stopping at the first failure."""
        applied = []
        for plan in plans:
            applied.append(await self.apply(plan, dry_run=dry_run))
        return applied

    async def _verify(self, plan: TransitionPlan) -> None:
        labels = await self.tracker.get_labels(self.owner, self.repo, plan.issue_number)
        missing = [label for label in plan.add_labels if label not in labels]
        lingering = [label for label in plan.remove_labels if label in labels]
        if missing or lingering:
            logger.error(
                "Label mutation failed verification",
                extra={
                    "issue_number": plan.issue_number,
                    "missing": missing,
                    "lingering": lingering,
                },
            )
            raise LabelMutationError(plan.issue_number, missing, lingering)
