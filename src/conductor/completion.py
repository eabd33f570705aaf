"""Map a merged pull request back to the issue it completes.

Resolution order:
1. Closing keywords in the body ("Closes #12", "fixes #12", "Resolved #12")
2. Any other "#N" reference in the body
3. The head branch: "<prefix>/<N>-...", "<N>-..." or "issue-<N>"
"""

import re
from typing import Optional

from src.conductor.github.models import PullRequest


CLOSING_REFERENCE_RE = re.compile(
    r"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s*:?\s+#(?P<number>\d+)\b",
    re.IGNORECASE,
)

ANY_REFERENCE_RE = re.compile(r"(?<![\w/&])#(?P<number>\d+)\b")

ISSUE_BRANCH_RE = re.compile(r"(?:^|/)issue[-_](?P<number>\d+)(?:\b|[-_/])", re.IGNORECASE)


class LinkResolutionError(Exception):
    """Raised when a pull request cannot be mapped to an issue.

    Reported to the operator channel and not retried; the pull request
    body or branch needs a human fix.

    Attributes:
        pr_number: The pull request that could not be resolved.
    """

    def __init__(self, pr_number: int, message: Optional[str] = None):
        self.pr_number = pr_number
        super().__init__(
            message
            or f"Pull request #{pr_number} does not reference an issue in its body or branch"
        )


def _branch_reference(head_branch: str, branch_prefix: str) -> Optional[int]:
    if not head_branch:
        return None

    prefixed = re.match(
        r"^" + re.escape(branch_prefix.strip("/")) + r"/(?P<number>\d+)(?:[-_]|$)",
        head_branch,
    )
    if prefixed:
        return int(prefixed.group("number"))

    bare = re.match(r"^(?P<number>\d+)(?:[-_]|$)", head_branch)
    if bare:
        return int(bare.group("number"))

    named = ISSUE_BRANCH_RE.search(head_branch)
    if named:
        return int(named.group("number"))
    return None


def find_issue_reference(pull_request: PullRequest, branch_prefix: str = "agent") -> Optional[int]:
    """Return the referenced issue number, or None."""
    body = pull_request.body or ""

    closing = CLOSING_REFERENCE_RE.search(body)
    if closing:
        return int(closing.group("number"))

    for match in ANY_REFERENCE_RE.finditer(body):
        number = int(match.group("number"))
        if number != pull_request.number:
            return number

    return _branch_reference(pull_request.head_branch, branch_prefix)


def resolve_issue_reference(pull_request: PullRequest, branch_prefix: str = "agent") -> int:
    """Resolve the issue a pull request completes.

    Raises:
        LinkResolutionError: If neither body nor branch references an issue.
    """
    number = find_issue_reference(pull_request, branch_prefix)
    if number is None or number <= 0:
        raise LinkResolutionError(pull_request.number)
    return number
