"""Orchestrator facade wiring ingestion, readiness, labels and spawning.

Every entry point (webhook event, CLI command, periodic sweep) runs its
per-issue work under that issue's lock and starts from a fresh read of the
issue. Per issue the sequence is:

    fetch issue -> analyze readiness -> plan transition
    -> reserve spawn (ledger claim) -> apply labels/comments
    -> post spawn trigger -> emit events

Claiming before the label change and posting the trigger last means a crash
anywhere in between is repaired by the next event for the issue.

Failures are logged, emitted as ERROR events for the operator channel and
re-raised to the caller; the sweep records them per issue and continues.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.conductor.completion import LinkResolutionError, resolve_issue_reference
from src.conductor.config import ConductorSettings
from src.conductor.events.emitter import EventEmitter
from src.conductor.events.models import ConductorEvent, EventType
from src.conductor.github.client import IssueTracker
from src.conductor.github.models import Issue, PullRequest
from src.conductor.locks import IssueLocks
from src.conductor.readiness.analyzer import analyze
from src.conductor.readiness.models import ReadinessReport
from src.conductor.scheduler import select_next
from src.conductor.spawn.coordinator import SpawnCoordinator
from src.conductor.spawn.models import SpawnOutcome, SpawnRecord, SpawnResult
from src.conductor.spawn.repository import SpawnRepository
from src.conductor.state.machine import (
    IssueStateMachine,
    TransitionPlan,
    plan_comment_changed,
    plan_completion,
    plan_issue_changed,
    plan_work_started,
)
from src.conductor.state.models import (
    READY_WORK_LABEL,
    IssueState,
    infer_state,
)
from src.conductor.webhook.models import EventKind, IngestedEvent


logger = logging.getLogger(__name__)


class OrchestrationResult(BaseModel):
    """What the orchestrator did (or, in dry-run mode, would do) for one issue.

    Attributes:
        kind: Event kind that was handled.
        issue_number: Issue handled, if one was resolved.
        report: Readiness report, for issue and comment events.
        plans: Transition plans applied in order.
        spawn: Spawn decision for this issue.
        next_issue_number: Issue picked by the scheduler after completion.
        next_spawn: Spawn decision for the picked issue.
        skipped: Reason nothing was done, if so.
        error: Error message when handling failed (sweep only).
        dry_run: Whether writes were suppressed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EventKind

    issue_number: Optional[int] = None

    report: Optional[ReadinessReport] = None

    plans: List[TransitionPlan] = Field(default_factory=list)

    spawn: Optional[SpawnResult] = None

    next_issue_number: Optional[int] = None

    next_spawn: Optional[SpawnResult] = None

    skipped: str = ""

    error: Optional[str] = None

    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return any(not plan.is_noop for plan in self.plans)


class Orchestrator:
    """Entry point wiring the engine, coordinator and scheduler together.

    Attributes:
        tracker: Issue tracker read/write surface.
        state_machine: Applies label/comment transition plans.
        coordinator: Spawn coordinator with the durable ledger.
        event_emitter: Emits orchestration events for observability.
        owner: Repository owner.
        repo: Repository name.
        hold_labels: Labels that keep an issue in Draft.
        branch_prefix: Agent branch prefix for pull request linking.
        locks: Per-issue lock registry.
    """

    def __init__(
        self,
        tracker: IssueTracker,
        state_machine: IssueStateMachine,
        coordinator: SpawnCoordinator,
        event_emitter: EventEmitter,
        owner: str,
        repo: str,
        hold_labels: Optional[List[str]] = None,
        branch_prefix: str = "agent",
        locks: Optional[IssueLocks] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.tracker = tracker
        self.state_machine = state_machine
        self.coordinator = coordinator
        self.event_emitter = event_emitter
        self.owner = owner
        self.repo = repo
        self.hold_labels = hold_labels if hold_labels is not None else ["draft", "status:draft"]
        self.branch_prefix = branch_prefix
        self.locks = locks or IssueLocks()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _issue_id(self, issue_number: int) -> str:
        return f"{self.full_repository}#{issue_number}"

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: IngestedEvent, dry_run: bool = False) -> OrchestrationResult:
        """Handle one normalized event.

        Raises:
            LinkResolutionError: A merged pull request references no issue.
            GitHubAPIError: Tracker failures after retries.
            LabelMutationError: Labels did not verify after a mutation.
        """
        logger.info(
            "Handling event",
            extra={
                "kind": event.kind.value,
                "issue_id": event.issue_id,
                "action": event.action,
                "delivery_id": event.delivery_id,
            },
        )

        if event.kind in (EventKind.ISSUE_CHANGED, EventKind.COMMENT_CHANGED):
            return await self.evaluate_issue(event.issue_number, event.kind, dry_run=dry_run)

        if event.kind == EventKind.WORK_STARTED:
            return await self.start_work(event.issue_number, dry_run=dry_run)

        if event.kind == EventKind.PR_MERGED:
            return await self.complete(event.pull_request, dry_run=dry_run)

        logger.info(
            "Pull request closed without merge; no mutation",
            extra={"issue_id": event.issue_id},
        )
        return OrchestrationResult(
            kind=event.kind,
            skipped="pull_request_not_merged",
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    # Readiness (issue and comment events, CLI trigger)
    # ------------------------------------------------------------------

    async def analyze_issue(self, issue_number: int) -> Dict[str, object]:
        """Read-only readiness view of an issue, for the CLI."""
        issue = await self.tracker.fetch_issue(self.owner, self.repo, issue_number)
        report = analyze(issue.body, issue.comments)
        state, conflict = infer_state(issue.labels, report.ready)
        return {"issue": issue, "report": report, "state": state, "conflict": conflict}

    async def evaluate_issue(
        self,
        issue_number: int,
        kind: EventKind = EventKind.ISSUE_CHANGED,
        dry_run: bool = False,
    ) -> OrchestrationResult:
        """Re-evaluate an issue's readiness and apply the resulting transition."""
        async with self.locks.hold(self.full_repository, issue_number):
            try:
                issue = await self.tracker.fetch_issue(self.owner, self.repo, issue_number)
                report = analyze(issue.body, issue.comments)

                if kind == EventKind.COMMENT_CHANGED:
                    plan = plan_comment_changed(issue, report, self.hold_labels)
                else:
                    plan = plan_issue_changed(issue, report, self.hold_labels)

                if report.malformed:
                    logger.warning(
                        "Clarifying Questions section could not be parsed; treating as not ready",
                        extra={"issue_id": self._issue_id(issue_number)},
                    )

                spawn = await self._transition_and_spawn(issue, plan, dry_run)
            except Exception as exc:
                await self._report_failure(issue_number, "readiness", exc)
                raise

        return OrchestrationResult(
            kind=kind,
            issue_number=issue_number,
            report=report,
            plans=[plan],
            spawn=spawn,
            dry_run=dry_run,
        )

    async def trigger(self, issue_number: int, dry_run: bool = False) -> OrchestrationResult:
        """Manual re-evaluation of one issue (CLI trigger)."""
        return await self.evaluate_issue(issue_number, EventKind.ISSUE_CHANGED, dry_run=dry_run)

    async def scan(
        self,
        dry_run: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[OrchestrationResult]:
        """Sweep every open issue.

        The cancel event is checked between issues only, so an interrupted
        sweep never leaves one issue's mutation half-applied. Issues owned
        by the work signals (in progress, completed) are skipped unless
        their labels conflict.
        """
        issues = await self.tracker.list_issues(self.owner, self.repo, state="open")
        results: List[OrchestrationResult] = []

        logger.info(
            "Starting sweep",
            extra={"repository": self.full_repository, "open_issues": len(issues), "dry_run": dry_run},
        )

        for listed in sorted(issues, key=lambda i: i.number):
            if cancel is not None and cancel.is_set():
                logger.info(
                    "Sweep cancelled",
                    extra={"processed": len(results), "remaining": len(issues) - len(results)},
                )
                break

            state, conflict = infer_state(listed.labels)
            if state in (IssueState.IN_PROGRESS, IssueState.COMPLETED) and conflict is None:
                results.append(
                    OrchestrationResult(
                        kind=EventKind.ISSUE_CHANGED,
                        issue_number=listed.number,
                        skipped="work_owned",
                        dry_run=dry_run,
                    )
                )
                continue

            try:
                results.append(await self.evaluate_issue(listed.number, dry_run=dry_run))
            except Exception as exc:
                results.append(
                    OrchestrationResult(
                        kind=EventKind.ISSUE_CHANGED,
                        issue_number=listed.number,
                        error=str(exc),
                        dry_run=dry_run,
                    )
                )

        return results

    async def watch(self, interval_seconds: float, cancel: asyncio.Event) -> int:
        """Sweep repeatedly until cancel is set.

        Returns:
            Number of completed sweeps.
        """
        sweeps = 0
        while not cancel.is_set():
            await self.scan(cancel=cancel)
            sweeps += 1
            try:
                await asyncio.wait_for(cancel.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
        return sweeps

    # ------------------------------------------------------------------
    # Work started
    # ------------------------------------------------------------------

    async def start_work(self, issue_number: int, dry_run: bool = False) -> OrchestrationResult:
        """Move a ReadyWork issue to InProgress.

        Raises:
            InvalidTransitionError: If the issue is not ReadyWork.
        """
        async with self.locks.hold(self.full_repository, issue_number):
            try:
                issue = await self.tracker.fetch_issue(self.owner, self.repo, issue_number)
                plan = plan_work_started(issue)
                await self.state_machine.apply(plan, dry_run=dry_run)
                await self._emit_transition(plan, dry_run)
            except Exception as exc:
                await self._report_failure(issue_number, "work_started", exc)
                raise

        return OrchestrationResult(
            kind=EventKind.WORK_STARTED,
            issue_number=issue_number,
            plans=[plan],
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_pull_request(self, pr_number: int, dry_run: bool = False) -> OrchestrationResult:
        """Run the completion handler for a pull request by number (CLI)."""
        pull_request = await self.tracker.get_pull_request(self.owner, self.repo, pr_number)
        if not pull_request.merged:
            logger.info(
                "Pull request is not merged; no mutation",
                extra={"pr_number": pr_number},
            )
            return OrchestrationResult(
                kind=EventKind.PR_CLOSED_UNMERGED,
                skipped="pull_request_not_merged",
                dry_run=dry_run,
            )
        return await self.complete(pull_request, dry_run=dry_run)

    async def complete(self, pull_request: PullRequest, dry_run: bool = False) -> OrchestrationResult:
        """Complete the issue a merged pull request references, then assign next.

        Raises:
            LinkResolutionError: If the pull request references no issue.
                Reported as an ERROR event; not retried.
        """
        try:
            issue_number = resolve_issue_reference(pull_request, self.branch_prefix)
        except LinkResolutionError as exc:
            logger.error(
                "Cannot link merged pull request to an issue",
                extra={
                    "pr_number": pull_request.number,
                    "head_branch": pull_request.head_branch,
                },
            )
            await self._emit_error(
                f"{self.full_repository}#{pull_request.number}",
                "link_resolution",
                exc,
            )
            raise

        async with self.locks.hold(self.full_repository, issue_number):
            try:
                issue = await self.tracker.fetch_issue(self.owner, self.repo, issue_number)
                plans = plan_completion(issue, pull_request.number)
                await self.state_machine.apply_all(plans, dry_run=dry_run)
                for plan in plans:
                    await self._emit_transition(plan, dry_run)
            except Exception as exc:
                await self._report_failure(issue_number, "completion", exc)
                raise

        completed_now = any(
            plan.to_state == IssueState.COMPLETED and plan.from_state != IssueState.COMPLETED
            for plan in plans
        )
        if completed_now and not dry_run:
            duration = (self._clock() - issue.created_at).total_seconds()
            await self._safe_emit(
                ConductorEvent(
                    event_type=EventType.COMPLETION,
                    issue_id=self._issue_id(issue_number),
                    repository=self.full_repository,
                    details={
                        "pr_number": pull_request.number,
                        "duration_seconds": max(0.0, duration),
                    },
                )
            )

        next_issue, next_spawn = await self.assign_next(dry_run=dry_run)

        return OrchestrationResult(
            kind=EventKind.PR_MERGED,
            issue_number=issue_number,
            plans=plans,
            next_issue_number=next_issue.number if next_issue else None,
            next_spawn=next_spawn,
            skipped="" if plans else "already_completed",
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def assign_next(self, dry_run: bool = False):
        """Select the next ReadyWork issue and spawn an agent for it.

        Returns:
            (selected issue or None, spawn result or None). No selection
            means idle, not an error.
        """
        candidates = await self.tracker.list_issues(
            self.owner, self.repo, state="open", labels=[READY_WORK_LABEL]
        )
        selected = select_next(candidates)
        if selected is None:
            logger.info("No ready issues; idle", extra={"repository": self.full_repository})
            return None, None

        logger.info(
            "Selected next issue",
            extra={"issue_id": self._issue_id(selected.number), "candidates": len(candidates)},
        )

        async with self.locks.hold(self.full_repository, selected.number):
            try:
                issue = await self.tracker.fetch_issue(self.owner, self.repo, selected.number)
                state, conflict = infer_state(issue.labels)
                if state != IssueState.READY_WORK or conflict is not None or not issue.is_open:
                    logger.info(
                        "Selected issue changed state before spawn; skipping",
                        extra={"issue_id": self._issue_id(issue.number), "state": state.value},
                    )
                    return issue, None
                spawn = await self.coordinator.try_spawn(issue, entering_ready=False, dry_run=dry_run)
                await self._emit_spawn(issue.number, spawn)
            except Exception as exc:
                await self._report_failure(selected.number, "scheduling", exc)
                raise

        return issue, spawn

    # ------------------------------------------------------------------
    # Ledger maintenance
    # ------------------------------------------------------------------

    async def reset(self, issue_number: int) -> bool:
        """Manually delete an issue's spawn record."""
        async with self.locks.hold(self.full_repository, issue_number):
            return await self.coordinator.reset(issue_number)

    async def records(self) -> List[SpawnRecord]:
        return await self.coordinator.repository.list_all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transition_and_spawn(
        self,
        issue: Issue,
        plan: TransitionPlan,
        dry_run: bool,
    ) -> Optional[SpawnResult]:
        spawn: Optional[SpawnResult] = None
        if plan.spawn:
            spawn = await self.coordinator.reserve(issue, plan.entering_ready, dry_run=dry_run)

        await self.state_machine.apply(plan, dry_run=dry_run)
        await self._emit_transition(plan, dry_run)

        if spawn is not None:
            spawn = await self.coordinator.emit(issue, spawn)
            await self._emit_spawn(issue.number, spawn)
        return spawn

    async def _emit_transition(self, plan: TransitionPlan, dry_run: bool) -> None:
        if dry_run or not plan.changes_labels:
            return
        await self._safe_emit(
            ConductorEvent(
                event_type=EventType.STATE_TRANSITION,
                issue_id=self._issue_id(plan.issue_number),
                repository=self.full_repository,
                details={
                    "from_state": plan.from_state.value,
                    "to_state": plan.to_state.value,
                    "reason": plan.reason,
                    "add_labels": plan.add_labels,
                    "remove_labels": plan.remove_labels,
                },
            )
        )

    async def _emit_spawn(self, issue_number: int, spawn: SpawnResult) -> None:
        if spawn.spawned:
            event_type = EventType.SPAWN_TRIGGERED
        elif spawn.outcome == SpawnOutcome.DUPLICATE_SUPPRESSED:
            event_type = EventType.SPAWN_SUPPRESSED
        else:
            return
        await self._safe_emit(
            ConductorEvent(
                event_type=event_type,
                issue_id=self._issue_id(issue_number),
                repository=self.full_repository,
                details={
                    "generation": spawn.generation,
                    "agent_type": spawn.agent_type,
                    "issue_code": spawn.issue_code,
                    "outcome": spawn.outcome.value,
                    "reason": spawn.reason,
                },
            )
        )

    async def _report_failure(self, issue_number: int, stage: str, exc: Exception) -> None:
        logger.exception(
            "Orchestration step failed",
            extra={"issue_id": self._issue_id(issue_number), "stage": stage},
        )
        await self._emit_error(self._issue_id(issue_number), stage, exc)

    async def _emit_error(self, issue_id: str, stage: str, exc: Exception) -> None:
        await self._safe_emit(
            ConductorEvent(
                event_type=EventType.ERROR,
                issue_id=issue_id,
                repository=self.full_repository,
                details={
                    "stage": stage,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
        )

    async def _safe_emit(self, event: ConductorEvent) -> None:
        """Emit an event, swallowing exceptions so handling is not disrupted."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit conductor event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )


def build_orchestrator(
    settings: ConductorSettings,
    tracker: IssueTracker,
    spawn_repository: SpawnRepository,
    event_emitter: EventEmitter,
) -> Orchestrator:
    """Wire an Orchestrator from settings and injected collaborators."""
    owner, repo = settings.owner_and_repo
    state_machine = IssueStateMachine(tracker, owner, repo)
    coordinator = SpawnCoordinator(
        repository=spawn_repository,
        tracker=tracker,
        owner=owner,
        repo=repo,
        default_agent_type=settings.default_agent_type,
        agent_type_labels=dict(settings.agent_type_labels),
        agent_type_keywords=dict(settings.agent_type_keywords),
    )
    return Orchestrator(
        tracker=tracker,
        state_machine=state_machine,
        coordinator=coordinator,
        event_emitter=event_emitter,
        owner=owner,
        repo=repo,
        hold_labels=list(settings.hold_labels),
        branch_prefix=settings.branch_prefix,
    )
