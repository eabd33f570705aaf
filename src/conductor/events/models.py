"""Orchestration event models for observability.

This module defines the data models for orchestration events:
- EventType: Enum of all event types the orchestrator emits
- ConductorEvent: Structured event with the common metadata

Events are emitted for monitoring, alerting, and the operator channel
(LinkResolutionError and retry exhaustion surface as ERROR events).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Attributes:
        STATE_TRANSITION: An issue's state labels changed.
        SPAWN_TRIGGERED: A spawn trigger comment was posted (new or re-emitted).
        SPAWN_SUPPRESSED: A duplicate spawn was suppressed.
        COMPLETION: A merged pull request completed an issue.
        ERROR: Processing failed and needs operator attention.
    """

    STATE_TRANSITION = "state_transition"
    SPAWN_TRIGGERED = "spawn_triggered"
    SPAWN_SUPPRESSED = "spawn_suppressed"
    COMPLETION = "completion"
    ERROR = "error"


class ConductorEvent(BaseModel):
    """Structured event emitted by the orchestrator.

    Attributes:
        event_type: The category of event.
        issue_id: Canonical identifier in format "{owner}/{repo}#{number}".
        repository: Full repository path in format "{owner}/{repo}".
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STATE_TRANSITION: from_state, to_state, reason, add_labels, remove_labels
        SPAWN_TRIGGERED / SPAWN_SUPPRESSED: generation, agent_type, outcome, reason
        COMPLETION: pr_number, duration_seconds (issue created to completed)
        ERROR: error_type, error_message, stage
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_id: str = Field(
        ...,
        min_length=1,
        description='Canonical issue identifier in format "{owner}/{repo}#{number}"',
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> event = ConductorEvent(
            ...     event_type=EventType.ERROR,
            ...     issue_id="org/repo#123",
            ...     repository="org/repo",
            ...     details={"error_message": "rate limited"}
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
