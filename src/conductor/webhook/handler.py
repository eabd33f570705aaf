"""Event ingestor: GitHub webhook payloads to IngestedEvent.

Supported deliveries (X-GitHub-Event header value, action):
- issues: opened, edited, labeled, unlabeled, reopened -> ISSUE_CHANGED
- issue_comment: created, edited -> COMMENT_CHANGED (comments on pull
  requests are ignored)
- pull_request: opened, reopened -> WORK_STARTED when the PR references an
  issue; closed -> PR_MERGED or PR_CLOSED_UNMERGED

Anything else returns None. Signature validation happens in front of this
service, so payloads are trusted but still shape-checked.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from src.conductor.completion import find_issue_reference
from src.conductor.github.models import PullRequest
from src.conductor.webhook.models import CommentAction, EventKind, IngestedEvent, IssueAction


logger = logging.getLogger(__name__)


class EventIngestor:
    """Parses GitHub webhook payloads into IngestedEvents.

    Attributes:
        branch_prefix: Agent branch prefix used to link opened pull
            requests to issues ("<prefix>/<N>-...").
    """

    def __init__(self, branch_prefix: str = "agent") -> None:
        self.branch_prefix = branch_prefix

    def ingest(
        self,
        event_name: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str] = None,
    ) -> Optional[IngestedEvent]:
        """Normalize one webhook delivery.

        Args:
            event_name: Value of the X-GitHub-Event header.
            payload: Decoded JSON payload.
            delivery_id: Value of the X-GitHub-Delivery header.

        Returns:
            The normalized event, or None for unsupported or malformed
            deliveries.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        repo = self._extract_repository(payload)
        if repo is None:
            return None
        owner, name = repo

        action = payload.get("action")
        if not isinstance(action, str):
            logger.warning("Missing 'action' field in payload")
            return None

        try:
            if event_name == "issues":
                return self._ingest_issue(owner, name, action, payload, delivery_id)
            if event_name == "issue_comment":
                return self._ingest_comment(owner, name, action, payload, delivery_id)
            if event_name == "pull_request":
                return self._ingest_pull_request(owner, name, action, payload, delivery_id)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Malformed %s payload: %s",
                event_name,
                e,
                extra={"delivery_id": delivery_id},
            )
            return None

        logger.debug("Ignoring unsupported event: %s", event_name)
        return None

    def _ingest_issue(
        self,
        owner: str,
        name: str,
        action: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str],
    ) -> Optional[IngestedEvent]:
        if action not in {a.value for a in IssueAction}:
            logger.debug("Ignoring issues action: %s", action)
            return None

        issue = payload["issue"]
        if "pull_request" in issue:
            return None

        event = IngestedEvent(
            kind=EventKind.ISSUE_CHANGED,
            owner=owner,
            repository=name,
            issue_number=issue["number"],
            action=action,
            delivery_id=delivery_id,
        )
        logger.info(
            "Parsed issue event: action=%s, issue=%s",
            action,
            event.issue_id,
        )
        return event

    def _ingest_comment(
        self,
        owner: str,
        name: str,
        action: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str],
    ) -> Optional[IngestedEvent]:
        if action not in {a.value for a in CommentAction}:
            logger.debug("Ignoring issue_comment action: %s", action)
            return None

        issue = payload["issue"]
        if "pull_request" in issue:
            logger.debug("Ignoring comment on pull request #%s", issue.get("number"))
            return None

        event = IngestedEvent(
            kind=EventKind.COMMENT_CHANGED,
            owner=owner,
            repository=name,
            issue_number=issue["number"],
            action=action,
            delivery_id=delivery_id,
        )
        logger.info(
            "Parsed comment event: action=%s, issue=%s",
            action,
            event.issue_id,
        )
        return event

    def _ingest_pull_request(
        self,
        owner: str,
        name: str,
        action: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str],
    ) -> Optional[IngestedEvent]:
        pull_request = PullRequest.from_github_response(payload["pull_request"])

        if action in ("opened", "reopened"):
            issue_number = find_issue_reference(pull_request, self.branch_prefix)
            if issue_number is None:
                logger.debug(
                    "Pull request #%s references no issue; not a work signal",
                    pull_request.number,
                )
                return None
            kind = EventKind.WORK_STARTED
        elif action == "closed":
            issue_number = None
            kind = EventKind.PR_MERGED if pull_request.merged else EventKind.PR_CLOSED_UNMERGED
        else:
            logger.debug("Ignoring pull_request action: %s", action)
            return None

        event = IngestedEvent(
            kind=kind,
            owner=owner,
            repository=name,
            issue_number=issue_number,
            pull_request=pull_request,
            action=action,
            delivery_id=delivery_id,
        )
        logger.info(
            "Parsed pull request event: action=%s, pr=#%s, kind=%s",
            action,
            pull_request.number,
            kind.value,
        )
        return event

    def _extract_repository(self, payload: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        repo_data = payload.get("repository")
        if not isinstance(repo_data, dict):
            logger.warning(
                "Missing or invalid 'repository' field in payload: %s",
                type(repo_data),
            )
            return None

        repo_name = repo_data.get("name")
        owner_data = repo_data.get("owner")
        owner = owner_data.get("login") if isinstance(owner_data, dict) else None
        if not isinstance(repo_name, str) or not repo_name.strip():
            logger.warning("Invalid or empty repository name: %s", repo_name)
            return None
        if not isinstance(owner, str) or not owner.strip():
            logger.warning("Invalid or empty repository owner: %s", owner)
            return None
        return owner.strip(), repo_name.strip()
