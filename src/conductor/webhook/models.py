"""Normalized orchestration events.

GitHub delivers issues, issue_comment and pull_request webhooks with
different payload shapes. The ingestor reduces them to one IngestedEvent
type that the orchestrator dispatches on.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.conductor.github.models import PullRequest


class EventKind(str, Enum):
    """Kinds of events the orchestrator reacts to.

    Attributes:
        ISSUE_CHANGED: Issue opened, edited, labeled, unlabeled or reopened.
        COMMENT_CHANGED: Issue comment created or edited.
        WORK_STARTED: An agent began work (pull request opened/reopened
            that references the issue, or the CLI start command).
        PR_MERGED: Pull request closed and merged.
        PR_CLOSED_UNMERGED: Pull request closed without merging.
    """

    ISSUE_CHANGED = "issue_changed"
    COMMENT_CHANGED = "comment_changed"
    WORK_STARTED = "work_started"
    PR_MERGED = "pr_merged"
    PR_CLOSED_UNMERGED = "pr_closed_unmerged"


class IssueAction(str, Enum):
    """issues webhook actions that count as ISSUE_CHANGED."""

    OPENED = "opened"
    EDITED = "edited"
    LABELED = "labeled"
    UNLABELED = "unlabeled"
    REOPENED = "reopened"


class CommentAction(str, Enum):
    """issue_comment webhook actions that count as COMMENT_CHANGED."""

    CREATED = "created"
    EDITED = "edited"


class IngestedEvent(BaseModel):
    """A webhook (or CLI) event reduced to what the orchestrator needs.

    Issue content is deliberately absent: the orchestrator re-fetches the
    issue from the tracker for every event rather than trusting payload
    snapshots, which may be stale for redelivered or out-of-order events.

    Attributes:
        kind: Normalized event kind.
        owner: Repository owner.
        repository: Repository name without owner prefix.
        issue_number: Issue the event concerns; None for PR_MERGED and
            PR_CLOSED_UNMERGED until the completion handler resolves it.
        pull_request: Pull request fields for pull_request events.
        action: Raw webhook action, for logging.
        delivery_id: X-GitHub-Delivery header, for log correlation.
    """

    kind: EventKind = Field(..., description="Normalized event kind")

    owner: str = Field(..., min_length=1)

    repository: str = Field(..., min_length=1)

    issue_number: Optional[int] = Field(default=None, gt=0)

    pull_request: Optional[PullRequest] = None

    action: str = ""

    delivery_id: Optional[str] = None

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repository}"

    @property
    def issue_id(self) -> str:
        """Canonical "{owner}/{repo}#{number}" (PR number when unresolved)."""
        number = self.issue_number
        if number is None and self.pull_request is not None:
            number = self.pull_request.number
        return f"{self.full_repository}#{number}"
