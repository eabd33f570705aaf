"""Pytest configuration and in-memory doubles shared by the conductor tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest

from src.conductor.events.emitter import EventEmitter
from src.conductor.events.models import ConductorEvent, EventType
from src.conductor.formatting import find_spawn_triggers
from src.conductor.github.models import Issue, IssueComment, PullRequest
from src.conductor.orchestrator import Orchestrator
from src.conductor.spawn.coordinator import SpawnCoordinator
from src.conductor.spawn.models import SpawnRecord
from src.conductor.state.machine import IssueStateMachine


OWNER = "acme"
REPO = "widgets"

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeTracker:
    """In-memory IssueTracker.

    Keeps one Issue per number, records every write in ``calls`` and hands
    out deep copies so callers never mutate the stored issue directly.
    ``fail_on`` maps a method name to an exception raised on its next call.
    """

    def __init__(self) -> None:
        self.issues: Dict[int, Issue] = {}
        self.pulls: Dict[int, PullRequest] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.fail_on: Dict[str, Exception] = {}
        self._tick = 0

    def _now(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(minutes=self._tick)

    def _maybe_fail(self, method: str) -> None:
        exc = self.fail_on.pop(method, None)
        if exc is not None:
            raise exc

    def add_issue(
        self,
        number: int,
        title: str = "",
        body: str = "",
        labels: Iterable[str] = (),
        comments: Iterable[str] = (),
        created_at: Optional[datetime] = None,
        state: str = "open",
    ) -> Issue:
        issue = Issue(
            number=number,
            title=title or f"Issue {number}",
            body=body,
            labels=set(labels),
            created_at=created_at or BASE_TIME,
            state=state,
        )
        self.issues[number] = issue
        for body_text in comments:
            self.add_comment(number, body_text)
        return issue

    def add_comment(self, number: int, body: str, author: str = "human") -> None:
        self.issues[number].comments.append(
            IssueComment(body=body, created_at=self._now(), author=author)
        )

    def add_pull_request(
        self,
        number: int,
        body: str = "",
        head_branch: str = "",
        merged: bool = True,
    ) -> PullRequest:
        pull = PullRequest(number=number, body=body, head_branch=head_branch, merged=merged)
        self.pulls[number] = pull
        return pull

    def labels_of(self, number: int) -> Set[str]:
        return set(self.issues[number].labels)

    def comment_bodies(self, number: int) -> List[str]:
        return [c.body for c in self.issues[number].comments]

    def triggers(self, number: int):
        return find_spawn_triggers(self.comment_bodies(number))

    def writes(self, method: Optional[str] = None) -> List[Tuple[Any, ...]]:
        if method is None:
            return list(self.calls)
        return [call for call in self.calls if call[0] == method]

    async def fetch_issue(self, owner: str, repo: str, issue_number: int) -> Issue:
        self._maybe_fail("fetch_issue")
        return self.issues[issue_number].model_copy(deep=True)

    async def get_labels(self, owner: str, repo: str, issue_number: int) -> Set[str]:
        self._maybe_fail("get_labels")
        return set(self.issues[issue_number].labels)

    async def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: Optional[Iterable[str]] = None,
    ) -> List[Issue]:
        self._maybe_fail("list_issues")
        wanted = set(labels or [])
        listed = []
        for issue in self.issues.values():
            if state != "all" and issue.state != state:
                continue
            if not wanted.issubset(issue.labels):
                continue
            listed.append(issue.model_copy(update={"comments": []}, deep=True))
        return listed

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequest:
        return self.pulls[pr_number].model_copy()

    async def create_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> Dict[str, Any]:
        self._maybe_fail("create_comment")
        self.calls.append(("create_comment", issue_number, body))
        self.add_comment(issue_number, body, author="conductor")
        return {"id": len(self.calls), "body": body}

    async def add_label(
        self, owner: str, repo: str, issue_number: int, label: str
    ) -> List[Dict[str, Any]]:
        self._maybe_fail("add_label")
        self.calls.append(("add_label", issue_number, label))
        self.issues[issue_number].labels.add(label)
        return [{"name": name} for name in sorted(self.issues[issue_number].labels)]

    async def remove_label(
        self, owner: str, repo: str, issue_number: int, label: str
    ) -> None:
        self._maybe_fail("remove_label")
        self.calls.append(("remove_label", issue_number, label))
        self.issues[issue_number].labels.discard(label)

    async def close_issue(
        self, owner: str, repo: str, issue_number: int, reason: str = "completed"
    ) -> Dict[str, Any]:
        self._maybe_fail("close_issue")
        self.calls.append(("close_issue", issue_number))
        self.issues[issue_number].state = "closed"
        return {"number": issue_number, "state": "closed"}


class InMemorySpawnRepository:
    """SpawnRepository kept in a dict, with the same claim semantics."""

    def __init__(self) -> None:
        self.records: Dict[int, SpawnRecord] = {}

    async def get(self, issue_number: int) -> Optional[SpawnRecord]:
        return self.records.get(issue_number)

    async def claim(self, record: SpawnRecord) -> bool:
        existing = self.records.get(record.issue_number)
        if existing is not None and existing.generation >= record.generation:
            return False
        self.records[record.issue_number] = record
        return True

    async def delete(self, issue_number: int) -> bool:
        return self.records.pop(issue_number, None) is not None

    async def list_all(self) -> List[SpawnRecord]:
        return sorted(self.records.values(), key=lambda r: r.issue_number)

    async def health_check(self) -> bool:
        return True


class RecordingEventEmitter(EventEmitter):
    """Collects emitted events for assertions."""

    def __init__(self) -> None:
        self.events: List[ConductorEvent] = []

    async def emit(self, event: ConductorEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[ConductorEvent]:
        return [e for e in self.events if e.event_type == event_type]


def make_orchestrator(
    tracker: Optional[FakeTracker] = None,
    repository: Optional[InMemorySpawnRepository] = None,
    emitter: Optional[RecordingEventEmitter] = None,
    agent_type_labels: Optional[Dict[str, str]] = None,
    agent_type_keywords: Optional[Dict[str, str]] = None,
) -> Orchestrator:
    tracker = tracker if tracker is not None else FakeTracker()
    repository = repository if repository is not None else InMemorySpawnRepository()
    emitter = emitter if emitter is not None else RecordingEventEmitter()
    coordinator = SpawnCoordinator(
        repository=repository,
        tracker=tracker,
        owner=OWNER,
        repo=REPO,
        default_agent_type="rust-pro",
        agent_type_labels=agent_type_labels,
        agent_type_keywords=agent_type_keywords,
        clock=lambda: BASE_TIME + timedelta(days=2),
    )
    return Orchestrator(
        tracker=tracker,
        state_machine=IssueStateMachine(tracker, OWNER, REPO),
        coordinator=coordinator,
        event_emitter=emitter,
        owner=OWNER,
        repo=REPO,
        clock=lambda: BASE_TIME + timedelta(days=3),
    )


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def spawn_repository() -> InMemorySpawnRepository:
    return InMemorySpawnRepository()


@pytest.fixture
def emitter() -> RecordingEventEmitter:
    return RecordingEventEmitter()


@pytest.fixture
def orchestrator(tracker, spawn_repository, emitter) -> Orchestrator:
    return make_orchestrator(tracker, spawn_repository, emitter)
