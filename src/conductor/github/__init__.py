"""GitHub API client for the issue-tracker read and write surfaces.

Includes rate limiting and retry logic for API resilience.
"""

from src.conductor.github.client import (
    GitHubAPIError,
    GitHubClient,
    IssueTracker,
    RateLimitError,
    TransientExternalError,
)
from src.conductor.github.models import Issue, IssueComment, PullRequest

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "Issue",
    "IssueComment",
    "IssueTracker",
    "PullRequest",
    "RateLimitError",
    "TransientExternalError",
]
