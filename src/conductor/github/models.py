"""Tracker-side data models built from GitHub REST responses.

These models are the read view the orchestrator works from. They are
rebuilt from the GitHub API at the start of every event; nothing here is
cached or treated as authoritative between events.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def _parse_timestamp(value: Any) -> datetime:
    """Parse a GitHub ISO-8601 timestamp, defaulting to now when missing."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


def _label_names(labels_data: Any) -> Set[str]:
    names: Set[str] = set()
    if not isinstance(labels_data, list):
        return names
    for label in labels_data:
        if isinstance(label, dict):
            name = label.get("name")
            if isinstance(name, str) and name.strip():
                names.add(name.strip())
        elif isinstance(label, str) and label.strip():
            names.add(label.strip())
    return names


class IssueComment(BaseModel):
    """A single issue comment, in tracker order."""

    body: str = Field(default="", description="Comment markdown body")

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the comment was created (UTC)",
    )

    author: Optional[str] = Field(
        default=None,
        description="Login of the comment author",
    )

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "IssueComment":
        user = data.get("user") or {}
        return cls(
            body=data.get("body") or "",
            created_at=_parse_timestamp(data.get("created_at")),
            author=user.get("login") if isinstance(user, dict) else None,
        )


class Issue(BaseModel):
    """Read view of a GitHub issue at the time of an event.

    Attributes:
        number: Issue number within the repository.
        title: Issue title.
        body: Issue body markdown (empty string when GitHub sends null).
        comments: Comments in chronological order.
        labels: Current label names (unique, unordered).
        created_at: Issue creation timestamp (UTC).
        state: "open" or "closed".
    """

    number: int = Field(..., gt=0, description="Issue number")

    title: str = Field(default="", description="Issue title")

    body: str = Field(default="", description="Issue body markdown")

    comments: List[IssueComment] = Field(
        default_factory=list,
        description="Comments in chronological order",
    )

    labels: Set[str] = Field(
        default_factory=set,
        description="Label names currently applied to the issue",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the issue was created (UTC)",
    )

    state: str = Field(default="open", description='"open" or "closed"')

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    @classmethod
    def from_github_response(
        cls,
        data: Dict[str, Any],
        comments: Optional[List[Dict[str, Any]]] = None,
    ) -> "Issue":
        """Build an Issue from the REST issue payload and its comments."""
        parsed_comments = [
            IssueComment.from_github_response(c) for c in (comments or [])
        ]
        parsed_comments.sort(key=lambda c: c.created_at)
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            comments=parsed_comments,
            labels=_label_names(data.get("labels", [])),
            created_at=_parse_timestamp(data.get("created_at")),
            state=data.get("state") or "open",
        )


class PullRequest(BaseModel):
    """Fields of a pull request the completion handler needs."""

    number: int = Field(..., gt=0)

    merged: bool = Field(default=False)

    body: str = Field(default="")

    head_branch: str = Field(default="")

    title: str = Field(default="")

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequest":
        head = data.get("head") or {}
        return cls(
            number=data["number"],
            merged=bool(data.get("merged") or data.get("merged_at")),
            body=data.get("body") or "",
            head_branch=head.get("ref", "") if isinstance(head, dict) else "",
            title=data.get("title") or "",
        )
