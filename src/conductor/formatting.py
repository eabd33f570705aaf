"""Comment formatting for orchestrator-authored GitHub comments.

Every comment the orchestrator posts carries ORCHESTRATOR_SIGNATURE so that
readiness analysis can skip it; numbered lines in our own comments must never
count as answers to clarifying questions.

Comment kinds:
- Spawn trigger: machine-parseable block read by agent spawners
- Resumption: posted when answered questions unblock an issue
- Completion: posted when a merged pull request finishes an issue
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)


ORCHESTRATOR_SIGNATURE = "<!-- conductor:orchestrator -->"

SPAWN_MARKER = "ORCHESTRATOR-SPAWN-AGENT"

STATE_BLOB_RE = re.compile(
    r"<!--\s*ORCHESTRATOR-STATE\s*(?P<blob>\{.*?\})\s*-->",
    re.DOTALL,
)

_FIELD_RE = {
    "issue": re.compile(r"^Issue:\s*#(?P<value>\d+)\s*$", re.MULTILINE),
    "issue_id": re.compile(r"^Issue ID:\s*(?P<value>\S+)\s*$", re.MULTILINE),
    "agent_type": re.compile(r"^Type:\s*(?P<value>\S+)\s*$", re.MULTILINE),
    "status": re.compile(r"^Status:\s*(?P<value>\S+)\s*$", re.MULTILINE),
    "timestamp": re.compile(r"^Timestamp:\s*(?P<value>\S+)\s*$", re.MULTILINE),
}


class SpawnTrigger(BaseModel):
    """Parsed contents of a spawn trigger comment.

    Attributes:
        issue_number: Issue the agent should work on.
        issue_code: Human identifier such as "CLI-001" (or "ISSUE-<n>").
        agent_type: Agent/work-type classification.
        status: Status token; "ready" for fresh triggers.
        timestamp: When the trigger was emitted (ISO-8601, UTC).
        generation: Readiness generation the trigger belongs to.
        state: The opaque state blob as a dictionary.
    """

    issue_number: int = Field(..., gt=0)
    issue_code: str = Field(..., min_length=1)
    agent_type: str = Field(..., min_length=1)
    status: str = Field(default="ready")
    timestamp: datetime
    generation: int = Field(default=1, ge=1)
    state: Dict[str, Any] = Field(default_factory=dict)


def is_orchestrator_comment(body: str) -> bool:
    """Check whether a comment was authored by the orchestrator."""
    return ORCHESTRATOR_SIGNATURE in body or SPAWN_MARKER in body


def format_spawn_trigger(
    issue_number: int,
    issue_code: str,
    agent_type: str,
    timestamp: datetime,
    generation: int,
) -> str:
    """Format the machine-parseable spawn trigger comment.

    The first six lines are the stable key/value header; the trailing HTML
    comment carries the state blob for replay and audit.
    """
    spawned_at = _iso(timestamp)
    state = {
        "issue": issue_number,
        "issue_id": issue_code,
        "agent_type": agent_type,
        "status": "ready",
        "spawned_at": spawned_at,
        "generation": generation,
    }
    return (
        f"{SPAWN_MARKER}\n"
        f"Issue: #{issue_number}\n"
        f"Issue ID: {issue_code}\n"
        f"Type: {agent_type}\n"
        f"Status: ready\n"
        f"Timestamp: {spawned_at}\n"
        f"<!-- ORCHESTRATOR-STATE {json.dumps(state, sort_keys=True)} -->\n"
        f"{ORCHESTRATOR_SIGNATURE}"
    )


def parse_spawn_trigger(body: str) -> Optional[SpawnTrigger]:
    """Parse a spawn trigger comment.

    Returns:
        The parsed trigger, or None if the body is not a well-formed
        trigger comment.
    """
    if SPAWN_MARKER not in body:
        return None

    fields: Dict[str, str] = {}
    for name, pattern in _FIELD_RE.items():
        match = pattern.search(body)
        if match is None:
            logger.debug("Spawn trigger missing field", extra={"field": name})
            return None
        fields[name] = match.group("value")

    state: Dict[str, Any] = {}
    blob = STATE_BLOB_RE.search(body)
    if blob is not None:
        try:
            loaded = json.loads(blob.group("blob"))
            if isinstance(loaded, dict):
                state = loaded
        except json.JSONDecodeError:
            logger.warning("Spawn trigger state blob is not valid JSON")

    try:
        return SpawnTrigger(
            issue_number=int(fields["issue"]),
            issue_code=fields["issue_id"],
            agent_type=fields["agent_type"],
            status=fields["status"],
            timestamp=datetime.fromisoformat(fields["timestamp"].replace("Z", "+00:00")),
            generation=int(state.get("generation", 1)),
            state=state,
        )
    except (ValueError, ValidationError):
        logger.warning("Malformed spawn trigger comment")
        return None


def find_spawn_triggers(bodies: Iterable[str]) -> List[SpawnTrigger]:
    """Return every parseable spawn trigger among comment bodies, in order."""
    triggers: List[SpawnTrigger] = []
    for body in bodies:
        trigger = parse_spawn_trigger(body)
        if trigger is not None:
            triggers.append(trigger)
    return triggers


def format_resumption_comment(issue_code: str, total_questions: int) -> str:
    """Comment posted when answers move an issue out of waiting:answers."""
    return (
        "**Resumption signal**\n\n"
        f"All {total_questions} clarifying question(s) for {issue_code} have "
        "been answered. The issue is now `ready:work` and an agent will be "
        "assigned.\n\n"
        f"{ORCHESTRATOR_SIGNATURE}"
    )


def format_completion_comment(pr_number: int) -> str:
    """Comment posted when a merged pull request completes an issue."""
    return (
        "**Work completed**\n\n"
        f"Pull request #{pr_number} was merged. Marking this issue "
        "`status:completed` and closing it.\n\n"
        f"{ORCHESTRATOR_SIGNATURE}"
    )


def _iso(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


ISSUE_CODE_RE = re.compile(r"^\s*(?P<code>[A-Z]+-[0-9]+)")


def extract_issue_code(title: str, issue_number: int) -> str:
    """Derive the human issue code from a title such as "CLI-001: Add flag".

    Falls back to "ISSUE-<number>" when the title has no leading code.
    """
    match = ISSUE_CODE_RE.match(title or "")
    if match:
        return match.group("code")
    return f"ISSUE-{issue_number}"
