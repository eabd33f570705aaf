"""GitHub API client for the issue-tracker read and write surfaces.

This module provides an async wrapper around the GitHub REST API for:
- Reading issues (with paginated comments) and pull requests
- Listing open issues by label
- Managing labels (add/remove)
- Creating comments and closing issues

Every call has a bounded timeout and a bounded number of retries with
exponential backoff and jitter. Transient failures (timeouts, network
errors, 5xx, 408, rate limiting) that outlive the retry budget surface as
TransientExternalError; they are never dropped silently.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable
from urllib.parse import quote

import httpx

from src.conductor.github.models import Issue, PullRequest


logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class TransientExternalError(GitHubAPIError):
    """Raised when a transient failure outlives the retry budget.

    Covers network errors, timeouts, retryable HTTP statuses and rate
    limiting. The operation may succeed if replayed later.
    """


class RateLimitError(TransientExternalError):
    """Raised when GitHub API rate limiting outlives the retry budget.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


@runtime_checkable
class IssueTracker(Protocol):
    """Protocol for the issue-tracker read and write surfaces.

    GitHubClient is the production implementation; the engine, spawn
    coordinator and facade depend only on this interface.
    """

    async def fetch_issue(self, owner: str, repo: str, issue_number: int) -> Issue:
        ...

    async def get_labels(self, owner: str, repo: str, issue_number: int) -> Set[str]:
        ...

    async def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: Optional[Iterable[str]] = None,
    ) -> List[Issue]:
        ...

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequest:
        ...

    async def create_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> Dict[str, Any]:
        ...

    async def add_label(
        self, owner: str, repo: str, issue_number: int, label: str
    ) -> List[Dict[str, Any]]:
        ...

    async def remove_label(
        self, owner: str, repo: str, issue_number: int, label: str
    ) -> None:
        ...

    async def close_issue(
        self, owner: str, repo: str, issue_number: int, reason: str = "completed"
    ) -> Dict[str, Any]:
        ...


class GitHubClient:
    """Async GitHub API client with rate limiting and retry logic.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     issue = await client.fetch_issue("owner", "repo", 123)
        ...     await client.add_label("owner", "repo", 123, "ready:work")
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    # Statuses that may arrive after the server already applied the write
    AMBIGUOUS_STATUS_CODES = {500, 502, 503, 504}

    PAGE_SIZE = 100

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "Conductor-Orchestrator/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff delay with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            remaining = self._parse_int_header(
                response.headers, "x-ratelimit-remaining"
            )
            if remaining == 0:
                return True
            # Secondary rate limits send a Retry-After header on 403
            return response.headers.get("retry-after") is not None
        return False

    def _rate_limit_wait(self, response: httpx.Response) -> Dict[str, Optional[int]]:
        """Work out how long GitHub asks us to wait.

        Returns:
            Dictionary with "reset_at" and "retry_after" (seconds).
        """
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")
        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))
        header_value = self._parse_int_header(response.headers, "retry-after")
        if header_value is not None:
            retry_after = header_value
        return {"reset_at": reset_at, "retry_after": retry_after}

    def _raise_ambiguous(
        self,
        method: str,
        path: str,
        last_error: str,
        status_code: Optional[int] = None,
    ) -> None:
        logger.warning(
            "Non-idempotent request failed ambiguously, not retrying",
            extra={"path": path, "method": method, "last_error": last_error},
        )
        raise TransientExternalError(
            message=f"{method} may or may not have been applied: {last_error}",
            status_code=status_code,
            request_url=f"{self.base_url}{path}",
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        A non-idempotent request is only retried when the server cannot
        have acted on it: connection failures, 408 and rate limiting. A
        read timeout or 5xx may follow a write the server already applied,
        so it is raised straight away and the caller must check before
        sending again.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE).
            path: API path (e.g., /repos/owner/repo/issues/1/comments).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.
            idempotent: Whether repeating the request is harmless.

        Returns:
            The HTTP response from GitHub.

        Raises:
            GitHubAPIError: On a non-retryable error response.
            RateLimitError: If rate limiting outlives the retry budget.
            TransientExternalError: If any other transient failure outlives
                the retry budget, or a non-idempotent request fails
                ambiguously.
        """
        last_error: str = "unknown error"

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = f"connect error: {e}"
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Connection failed, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                if not idempotent:
                    self._raise_ambiguous(method, path, last_error)
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request timeout, retrying",
                        extra={
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue
            except httpx.RequestError as e:
                last_error = f"request error: {e}"
                if not idempotent:
                    self._raise_ambiguous(method, path, last_error)
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if self._is_rate_limited(response):
                wait = self._rate_limit_wait(response)
                logger.warning(
                    "GitHub API rate limit exceeded",
                    extra={
                        "reset_at": wait["reset_at"],
                        "retry_after": wait["retry_after"],
                        "attempt": attempt + 1,
                        "path": path,
                    },
                )
                if attempt >= self.max_retries:
                    raise RateLimitError(
                        message="GitHub API rate limit exceeded",
                        status_code=response.status_code,
                        reset_at=wait["reset_at"],
                        retry_after=wait["retry_after"],
                        request_url=str(response.url),
                    )
                delay = self._calculate_backoff(attempt)
                if wait["retry_after"] is not None:
                    delay = min(float(wait["retry_after"]), self.max_delay)
                await asyncio.sleep(delay)
                continue

            if response.status_code in self.RETRYABLE_STATUS_CODES:
                last_error = f"HTTP {response.status_code}"
                if not idempotent and response.status_code in self.AMBIGUOUS_STATUS_CODES:
                    self._raise_ambiguous(method, path, last_error, response.status_code)
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Retryable error from GitHub API",
                        extra={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": last_error,
            },
        )
        raise TransientExternalError(
            message=f"Request failed after {self.max_retries} retries: {last_error}",
            request_url=f"{self.base_url}{path}",
        )

    async def _paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            page_params = dict(params or {})
            page_params.update({"per_page": self.PAGE_SIZE, "page": page})
            response = await self._request("GET", path, params=page_params)
            batch = response.json()
            if not isinstance(batch, list):
                break
            items.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                break
            page += 1
        return items

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> Dict[str, Any]:
        """Get the raw issue payload."""
        path = f"/repos/{owner}/{repo}/issues/{issue_number}"
        logger.debug(
            "Getting issue details",
            extra={"owner": owner, "repo": repo, "issue_number": issue_number},
        )
        response = await self._request(method="GET", path=path)
        return response.json()

    async def get_labels(self, owner: str, repo: str, issue_number: int) -> Set[str]:
        """Re-read the labels currently on an issue."""
        data = await self.get_issue(owner, repo, issue_number)
        return Issue.from_github_response(data).labels

    async def list_issue_comments(
        self, owner: str, repo: str, issue_number: int
    ) -> List[Dict[str, Any]]:
        """List every comment on an issue, oldest first."""
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/comments"
        return await self._paginate(path)

    async def fetch_issue(self, owner: str, repo: str, issue_number: int) -> Issue:
        """Fetch an issue together with its full comment history.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            issue_number: Issue number to fetch.

        Returns:
            The current read view of the issue.
        """
        data = await self.get_issue(owner, repo, issue_number)
        comments = await self.list_issue_comments(owner, repo, issue_number)
        return Issue.from_github_response(data, comments)

    async def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: Optional[Iterable[str]] = None,
    ) -> List[Issue]:
        """List issues (without comments), skipping pull requests.

        Args:
            owner: Repository owner.
            repo: Repository name.
            state: "open", "closed" or "all".
            labels: Only return issues carrying all of these labels.

        Returns:
            Issues without comment history.
        """
        params: Dict[str, Any] = {"state": state}
        if labels:
            params["labels"] = ",".join(labels)
        raw = await self._paginate(f"/repos/{owner}/{repo}/issues", params)
        return [
            Issue.from_github_response(item)
            for item in raw
            if "pull_request" not in item
        ]

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequest:
        """Get the fields of a pull request the completion handler needs."""
        path = f"/repos/{owner}/{repo}/pulls/{pr_number}"
        response = await self._request(method="GET", path=path)
        return PullRequest.from_github_response(response.json())

    # ------------------------------------------------------------------
    # Write surface
    # ------------------------------------------------------------------

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> Dict[str, Any]:
        """Create a comment on an issue.

        Comment creation is not idempotent, so it is never retried after a
        failure the server may have acted on.

        Returns:
            The created comment data from GitHub API.

        Raises:
            TransientExternalError: If the comment may or may not exist.
        """
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/comments"

        logger.info(
            "Creating comment on issue",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "body_length": len(body),
            },
        )

        response = await self._request(
            method="POST",
            path=path,
            json_data={"body": body},
            idempotent=False,
        )

        result = response.json()
        logger.info(
            "Comment created successfully",
            extra={
                "issue_number": issue_number,
                "comment_id": result.get("id"),
            },
        )
        return result

    async def add_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> List[Dict[str, Any]]:
        """Add a label to an issue.

        Returns:
            List of all labels on the issue after adding.
        """
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/labels"

        logger.info(
            "Adding label to issue",
            extra={"issue_number": issue_number, "label": label},
        )

        response = await self._request(
            method="POST",
            path=path,
            json_data={"labels": [label]},
        )
        return response.json()

    async def remove_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> None:
        """Remove a label from an issue.

        A 404 (label not on the issue) is treated as success so that
        removal is idempotent.
        """
        encoded_label = quote(label, safe="")
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/labels/{encoded_label}"

        logger.info(
            "Removing label from issue",
            extra={"issue_number": issue_number, "label": label},
        )

        try:
            await self._request(method="DELETE", path=path)
        except GitHubAPIError as e:
            if e.status_code == 404:
                logger.debug(
                    "Label not found on issue (already removed)",
                    extra={"issue_number": issue_number, "label": label},
                )
                return
            raise

    async def close_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        reason: str = "completed",
    ) -> Dict[str, Any]:
        """Close an issue with the given state reason."""
        path = f"/repos/{owner}/{repo}/issues/{issue_number}"

        logger.info(
            "Closing issue",
            extra={"issue_number": issue_number, "reason": reason},
        )

        response = await self._request(
            method="PATCH",
            path=path,
            json_data={"state": "closed", "state_reason": reason},
        )
        return response.json()

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible with the configured token."""
        try:
            response = await self.client.get("/user")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
