"""Spawn ledger models.

This module defines:
- SpawnRecord: The persisted de-duplication entry for an issue
- SpawnOutcome: What try_spawn decided (duplicate suppression included)
- SpawnResult: The coordinator's answer for one spawn attempt
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class SpawnRecord(BaseModel):
    """De-duplication ledger entry: one per issue, latest generation only.

    Created before the spawn trigger comment is posted and never deleted
    automatically; the CLI reset command is the only way to remove one.

    Attributes:
        issue_number: Issue the record belongs to.
        spawned_at: When the generation was claimed (UTC).
        generation: Readiness generation that was claimed.
        agent_type: Agent type named in the trigger.
        issue_code: Issue code named in the trigger.
    """

    issue_number: int = Field(..., gt=0, description="Issue number")

    spawned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When this generation was claimed (UTC)",
    )

    generation: int = Field(
        default=1,
        ge=1,
        description="Monotonic readiness generation",
    )

    agent_type: str = Field(default="", description="Agent type in the trigger")

    issue_code: str = Field(default="", description="Issue code in the trigger")

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "spawned_at": self.spawned_at.isoformat(),
            "generation": self.generation,
            "agent_type": self.agent_type,
            "issue_code": self.issue_code,
        }


class SpawnOutcome(str, Enum):
    """Outcome of a spawn attempt.

    Attributes:
        SPAWNED: A new generation was claimed and its trigger emitted.
        REEMITTED: The generation was already claimed but its trigger
            comment was missing, so the trigger was posted again.
        DUPLICATE_SUPPRESSED: The generation was already claimed and
            triggered (or another worker won the claim). Expected, not an
            error.
        DRY_RUN: A spawn would have happened; nothing was written.
    """

    SPAWNED = "spawned"
    REEMITTED = "reemitted"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    DRY_RUN = "dry_run"


class SpawnResult(BaseModel):
    """Result of SpawnCoordinator.reserve / emit / try_spawn.

    Attributes:
        issue_number: Issue the attempt was for.
        generation: Generation the attempt was evaluated against.
        outcome: Decision taken.
        agent_type: Classified agent type.
        issue_code: Extracted issue code.
        emitted: Whether the trigger comment has been posted.
        reason: Short explanation for suppression.
    """

    issue_number: int = Field(..., gt=0)

    generation: int = Field(..., ge=1)

    outcome: SpawnOutcome

    agent_type: str = ""

    issue_code: str = ""

    emitted: bool = False

    reason: str = ""

    @property
    def needs_emit(self) -> bool:
        return (
            self.outcome in (SpawnOutcome.SPAWNED, SpawnOutcome.REEMITTED)
            and not self.emitted
        )

    @property
    def spawned(self) -> bool:
        return (
            self.outcome in (SpawnOutcome.SPAWNED, SpawnOutcome.REEMITTED)
            and self.emitted
        )
