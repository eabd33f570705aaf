"""Spawn coordinator: at most one spawn trigger per (issue, generation).

A generation distinguishes successive readiness transitions of the same
issue. Moving an issue into ReadyWork starts generation previous + 1; any
later event seen while the issue is already ReadyWork evaluates against the
stored generation (or 1 if there is none).

The ledger record is claimed before the trigger comment is posted. A crash
between the two is repaired on the next event: the generation is already
claimed, no trigger comment for it exists on the issue, so the trigger is
posted again without a new claim. A post whose outcome is unknown (read
timeout, 5xx) is never blindly repeated; the comments are re-read first.

Callers must serialize calls per issue (see IssueLocks); the ledger's claim
is still a check-and-set, so a lost race is reported as suppressed rather
than producing a second trigger.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Mapping, Optional

from src.conductor.formatting import (
    extract_issue_code,
    find_spawn_triggers,
    format_spawn_trigger,
)
from src.conductor.github.client import GitHubAPIError, IssueTracker, TransientExternalError
from src.conductor.github.models import Issue
from src.conductor.spawn.models import SpawnOutcome, SpawnRecord, SpawnResult
from src.conductor.spawn.repository import SpawnRepository


logger = logging.getLogger(__name__)


def classify_agent_type(
    title: str,
    labels: Iterable[str],
    label_map: Mapping[str, str],
    keyword_map: Mapping[str, str],
    default: str,
) -> str:
    """Pick the agent type for an issue.

    Labels are checked first (exact, case-insensitive), then title keywords
    (substring, case-insensitive), in the mappings' insertion order.
    """
    lowered = {label.lower() for label in labels}
    for label, agent_type in label_map.items():
        if label.lower() in lowered:
            return agent_type

    title_lower = (title or "").lower()
    for keyword, agent_type in keyword_map.items():
        if keyword.lower() in title_lower:
            return agent_type

    return default


def next_generation(record: Optional[SpawnRecord], entering_ready: bool) -> int:
    """Generation an event should be evaluated against."""
    previous = record.generation if record is not None else 0
    if entering_ready:
        return previous + 1
    return previous or 1


def trigger_posted(issue: Issue, generation: int) -> bool:
    """Check whether a trigger comment for generation exists on the issue."""
    for trigger in find_spawn_triggers(c.body for c in issue.comments):
        if trigger.issue_number == issue.number and trigger.generation == generation:
            return True
    return False


class SpawnCoordinator:
    """Emits spawn triggers exactly once per (issue, generation).

    Attributes:
        repository: Durable spawn ledger.
        tracker: Issue tracker used to post trigger comments.
        owner: Repository owner.
        repo: Repository name.
        default_agent_type: Agent type when nothing matches.
        agent_type_labels: Label -> agent type mapping.
        agent_type_keywords: Title keyword -> agent type mapping.

    Example:
        >>> coordinator = SpawnCoordinator(ledger, client, "owner", "repo")
        >>> result = await coordinator.try_spawn(issue, entering_ready=True)
        >>> result.spawned
        True
    """

    def __init__(
        self,
        repository: SpawnRepository,
        tracker: IssueTracker,
        owner: str,
        repo: str,
        default_agent_type: str = "general-purpose",
        agent_type_labels: Optional[Dict[str, str]] = None,
        agent_type_keywords: Optional[Dict[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.tracker = tracker
        self.owner = owner
        self.repo = repo
        self.default_agent_type = default_agent_type
        self.agent_type_labels = agent_type_labels or {}
        self.agent_type_keywords = agent_type_keywords or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def agent_type_for(self, issue: Issue) -> str:
        return classify_agent_type(
            issue.title,
            issue.labels,
            self.agent_type_labels,
            self.agent_type_keywords,
            self.default_agent_type,
        )

    async def reserve(
        self,
        issue: Issue,
        entering_ready: bool = False,
        dry_run: bool = False,
    ) -> SpawnResult:
        """Decide on a spawn and claim the ledger record if one is due.

        Nothing is posted here; emit() posts the trigger. Splitting the two
        lets the caller apply the ReadyWork labels in between while still
        persisting the record first.
        """
        record = await self.repository.get(issue.number)
        generation = next_generation(record, entering_ready)
        agent_type = self.agent_type_for(issue)
        issue_code = extract_issue_code(issue.title, issue.number)

        result = SpawnResult(
            issue_number=issue.number,
            generation=generation,
            outcome=SpawnOutcome.DUPLICATE_SUPPRESSED,
            agent_type=agent_type,
            issue_code=issue_code,
        )
        log_extra = {
            "issue_number": issue.number,
            "generation": generation,
            "agent_type": agent_type,
            "dry_run": dry_run,
        }

        if record is not None and record.generation >= generation:
            if trigger_posted(issue, generation):
                logger.info("Duplicate spawn suppressed", extra=log_extra)
                result.reason = "generation_already_spawned"
                return result
            logger.warning(
                "Claimed generation has no trigger comment; re-emitting",
                extra=log_extra,
            )
            result.outcome = SpawnOutcome.DRY_RUN if dry_run else SpawnOutcome.REEMITTED
            result.reason = "trigger_missing"
            return result

        if dry_run:
            logger.info("Dry run: spawn not claimed", extra=log_extra)
            result.outcome = SpawnOutcome.DRY_RUN
            return result

        claimed = await self.repository.claim(
            SpawnRecord(
                issue_number=issue.number,
                spawned_at=self._clock(),
                generation=generation,
                agent_type=agent_type,
                issue_code=issue_code,
            )
        )
        if not claimed:
            logger.info("Spawn claim lost to a concurrent writer", extra=log_extra)
            result.reason = "claim_lost"
            return result

        result.outcome = SpawnOutcome.SPAWNED
        return result

    async def emit(self, issue: Issue, result: SpawnResult) -> SpawnResult:
        """Post the trigger comment for a reserved spawn, if one is due.

        If the post fails in a way that leaves its outcome unknown, the
        issue's comments are re-read; a trigger for this generation found
        there counts as emitted, otherwise the original error propagates
        and the next event re-emits.
        """
        if not result.needs_emit:
            return result

        body = format_spawn_trigger(
            issue_number=issue.number,
            issue_code=result.issue_code,
            agent_type=result.agent_type,
            timestamp=self._clock(),
            generation=result.generation,
        )
        log_extra = {
            "issue_number": issue.number,
            "issue_code": result.issue_code,
            "generation": result.generation,
            "agent_type": result.agent_type,
            "outcome": result.outcome.value,
        }
        try:
            await self.tracker.create_comment(self.owner, self.repo, issue.number, body)
        except TransientExternalError as e:
            if not await self._trigger_landed(issue.number, result.generation, e):
                raise
            logger.warning(
                "Trigger post failed but the comment was stored",
                extra={**log_extra, "error": str(e)},
            )

        result.emitted = True
        logger.info("Spawn trigger emitted", extra=log_extra)
        return result

    async def _trigger_landed(
        self,
        issue_number: int,
        generation: int,
        error: TransientExternalError,
    ) -> bool:
        try:
            fresh = await self.tracker.fetch_issue(self.owner, self.repo, issue_number)
        except GitHubAPIError as fetch_error:
            logger.error(
                "Could not verify trigger after failed post",
                extra={
                    "issue_number": issue_number,
                    "generation": generation,
                    "error": str(error),
                    "fetch_error": str(fetch_error),
                },
            )
            return False
        return trigger_posted(fresh, generation)

    async def try_spawn(
        self,
        issue: Issue,
        entering_ready: bool = False,
        dry_run: bool = False,
    ) -> SpawnResult:
        """Reserve and emit in one step."""
        result = await self.reserve(issue, entering_ready=entering_ready, dry_run=dry_run)
        return await self.emit(issue, result)

    async def reset(self, issue_number: int) -> bool:
        """Manually delete an issue's ledger record."""
        deleted = await self.repository.delete(issue_number)
        logger.info(
            "Spawn record reset",
            extra={"issue_number": issue_number, "deleted": deleted},
        )
        return deleted
