"""Tests for the GitHub client using httpx.MockTransport.

No network access: every request is answered by an in-process handler.
"""

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from src.conductor.github import (
    GitHubAPIError,
    GitHubClient,
    IssueTracker,
    RateLimitError,
    TransientExternalError,
)


def _client(handler: Callable[[httpx.Request], httpx.Response], max_retries: int = 2) -> GitHubClient:
    return GitHubClient(
        token="ghp_test",
        base_url="https://api.github.test",
        max_retries=max_retries,
        base_delay=0.0,
        transport=httpx.MockTransport(handler),
    )


def _run(client: GitHubClient, coro_factory):
    async def runner():
        async with client:
            return await coro_factory(client)

    return asyncio.run(runner())


ISSUE = {
    "number": 12,
    "title": "CLI-001: Add flag",
    "body": "Clarifying Questions: 1. Which?",
    "labels": [{"name": "waiting:answers"}, {"name": "priority:high"}],
    "state": "open",
    "created_at": "2024-02-01T10:00:00Z",
}


def test_client_satisfies_tracker_protocol():
    assert isinstance(GitHubClient(token="x"), IssueTracker)


def test_fetch_issue_collects_every_comment_page():
    seen_pages: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer ghp_test"
        if request.url.path == "/repos/acme/widgets/issues/12":
            return httpx.Response(200, json=ISSUE)
        page = request.url.params["page"]
        seen_pages.append(page)
        count = 100 if page == "1" else 3
        comments = [
            {
                "body": f"comment {page}-{i}",
                "created_at": f"2024-02-0{page}T00:{i % 60:02d}:00Z",
                "user": {"login": "dev"},
            }
            for i in range(count)
        ]
        return httpx.Response(200, json=comments)

    issue = _run(_client(handler), lambda c: c.fetch_issue("acme", "widgets", 12))

    assert seen_pages == ["1", "2"]
    assert len(issue.comments) == 103
    assert issue.labels == {"waiting:answers", "priority:high"}
    assert issue.comments[0].author == "dev"
    assert issue.is_open


def test_list_issues_skips_pull_requests_and_filters_labels():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["labels"] == "ready:work"
        assert request.url.params["state"] == "open"
        return httpx.Response(200, json=[ISSUE, {**ISSUE, "number": 13, "pull_request": {}}])

    issues = _run(
        _client(handler),
        lambda c: c.list_issues("acme", "widgets", labels=["ready:work"]),
    )
    assert [i.number for i in issues] == [12]


def test_transient_errors_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(502)
        return httpx.Response(200, json=ISSUE)

    data = _run(_client(handler), lambda c: c.get_issue("acme", "widgets", 12))
    assert data["number"] == 12
    assert len(attempts) == 3


def test_timeouts_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectTimeout("slow", request=request)
        return httpx.Response(200, json=ISSUE)

    _run(_client(handler), lambda c: c.get_issue("acme", "widgets", 12))
    assert len(attempts) == 2


def test_retry_exhaustion_raises_transient_error():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(503)

    with pytest.raises(TransientExternalError):
        _run(_client(handler, max_retries=2), lambda c: c.get_issue("acme", "widgets", 12))
    assert len(attempts) == 3


def test_comment_post_is_not_resent_after_read_timeout():
    stored: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        stored.append(json.loads(request.content)["body"])
        raise httpx.ReadTimeout("response lost", request=request)

    with pytest.raises(TransientExternalError):
        _run(_client(handler), lambda c: c.create_comment("acme", "widgets", 12, "hello"))
    assert stored == ["hello"]


def test_comment_post_is_not_resent_after_server_error():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(502)

    with pytest.raises(TransientExternalError) as exc_info:
        _run(_client(handler), lambda c: c.create_comment("acme", "widgets", 12, "hello"))
    assert exc_info.value.status_code == 502
    assert len(attempts) == 1


def test_comment_post_is_retried_when_connection_fails():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(201, json={"id": 9})

    result = _run(_client(handler), lambda c: c.create_comment("acme", "widgets", 12, "hello"))
    assert result == {"id": 9}
    assert len(attempts) == 2


def test_rate_limit_waits_then_succeeds():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"retry-after": "0"})
        return httpx.Response(200, json=ISSUE)

    _run(_client(handler), lambda c: c.get_issue("acme", "widgets", 12))
    assert len(attempts) == 2


def test_rate_limit_exhaustion_raises_rate_limit_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, headers={"x-ratelimit-remaining": "0", "retry-after": "0"})

    with pytest.raises(RateLimitError) as exc_info:
        _run(_client(handler, max_retries=1), lambda c: c.get_issue("acme", "widgets", 12))
    assert isinstance(exc_info.value, TransientExternalError)


def test_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(422, json={"message": "Validation Failed"})

    with pytest.raises(GitHubAPIError) as exc_info:
        _run(_client(handler), lambda c: c.add_label("acme", "widgets", 12, "ready:work"))
    assert exc_info.value.status_code == 422
    assert len(attempts) == 1


def test_remove_missing_label_is_tolerated():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(404, json={"message": "Label does not exist"})

    assert _run(_client(handler), lambda c: c.remove_label("acme", "widgets", 12, "ready:work")) is None


def test_write_surface_request_bodies():
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/comments"):
            return httpx.Response(201, json={"id": 1})
        if request.method == "POST":
            return httpx.Response(200, json=[{"name": "ready:work"}])
        return httpx.Response(200, json={"state": "closed"})

    async def writes(client: GitHubClient):
        await client.create_comment("acme", "widgets", 12, "hello")
        await client.add_label("acme", "widgets", 12, "ready:work")
        await client.close_issue("acme", "widgets", 12)

    _run(_client(handler), writes)

    bodies = [json.loads(r.content) for r in requests]
    assert bodies == [
        {"body": "hello"},
        {"labels": ["ready:work"]},
        {"state": "closed", "state_reason": "completed"},
    ]
    assert requests[2].method == "PATCH"


def test_get_pull_request_maps_head_branch():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "number": 40,
                "merged": True,
                "body": None,
                "head": {"ref": "agent/12-flag"},
                "title": "Flag",
            },
        )

    pull = _run(_client(handler), lambda c: c.get_pull_request("acme", "widgets", 40))
    assert pull.merged is True
    assert pull.body == ""
    assert pull.head_branch == "agent/12-flag"
