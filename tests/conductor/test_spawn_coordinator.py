"""Tests for the spawn coordinator: agent type selection, generations and
at-most-once trigger emission."""

import asyncio
import json

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from conftest import BASE_TIME, OWNER, REPO, FakeTracker, InMemorySpawnRepository
from src.conductor.formatting import parse_spawn_trigger
from src.conductor.github import GitHubClient, TransientExternalError
from src.conductor.spawn import SpawnCoordinator, SpawnOutcome, SpawnRecord, classify_agent_type
from src.conductor.spawn.coordinator import next_generation
from src.conductor.state import READY_WORK_LABEL


LABEL_MAP = {"area:frontend": "frontend-developer", "area:db": "database-admin"}
KEYWORD_MAP = {"cli": "cli-developer", "docs": "technical-writer"}


def _coordinator(tracker, repository):
    return SpawnCoordinator(
        repository=repository,
        tracker=tracker,
        owner=OWNER,
        repo=REPO,
        default_agent_type="rust-pro",
        agent_type_labels=LABEL_MAP,
        agent_type_keywords=KEYWORD_MAP,
    )


class TestClassifyAgentType:
    def test_label_wins_over_title_keyword(self):
        agent = classify_agent_type("CLI-001: docs", {"Area:DB"}, LABEL_MAP, KEYWORD_MAP, "rust-pro")
        assert agent == "database-admin"

    def test_title_keyword_is_case_insensitive(self):
        agent = classify_agent_type("Improve the CLI output", set(), LABEL_MAP, KEYWORD_MAP, "rust-pro")
        assert agent == "cli-developer"

    def test_default_when_nothing_matches(self):
        assert classify_agent_type("Fix crash", {"bug"}, LABEL_MAP, KEYWORD_MAP, "rust-pro") == "rust-pro"


class TestTrySpawn:
    def test_first_spawn_claims_and_posts_trigger(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        issue = tracker.add_issue(7, title="CLI-004: Add flag", labels=[READY_WORK_LABEL])

        result = asyncio.run(_coordinator(tracker, repository).try_spawn(issue, entering_ready=True))

        assert result.outcome == SpawnOutcome.SPAWNED
        assert result.emitted is True
        assert repository.records[7].generation == 1
        trigger = parse_spawn_trigger(tracker.comment_bodies(7)[0])
        assert trigger.issue_number == 7
        assert trigger.issue_code == "CLI-004"
        assert trigger.agent_type == "cli-developer"
        assert trigger.generation == 1

    def test_redelivered_event_is_suppressed(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        tracker.add_issue(7, labels=[READY_WORK_LABEL])
        coordinator = _coordinator(tracker, repository)

        async def spawn_twice():
            first_view = await tracker.fetch_issue(OWNER, REPO, 7)
            first = await coordinator.try_spawn(first_view, entering_ready=True)
            second_view = await tracker.fetch_issue(OWNER, REPO, 7)
            second = await coordinator.try_spawn(second_view, entering_ready=False)
            return first, second

        first, second = asyncio.run(spawn_twice())

        assert first.spawned
        assert second.outcome == SpawnOutcome.DUPLICATE_SUPPRESSED
        assert len(tracker.triggers(7)) == 1

    def test_lost_emission_is_reemitted_once(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        issue = tracker.add_issue(7, labels=[READY_WORK_LABEL])
        coordinator = _coordinator(tracker, repository)

        async def crash_then_recover():
            # Claimed, then the process died before posting the trigger
            await coordinator.reserve(issue, entering_ready=True)
            view = await tracker.fetch_issue(OWNER, REPO, 7)
            repaired = await coordinator.try_spawn(view, entering_ready=False)
            view = await tracker.fetch_issue(OWNER, REPO, 7)
            again = await coordinator.try_spawn(view, entering_ready=False)
            return repaired, again

        repaired, again = asyncio.run(crash_then_recover())

        assert repaired.outcome == SpawnOutcome.REEMITTED
        assert repaired.generation == 1
        assert again.outcome == SpawnOutcome.DUPLICATE_SUPPRESSED
        assert len(tracker.triggers(7)) == 1

    def test_reentering_ready_starts_new_generation(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        tracker.add_issue(7, labels=[READY_WORK_LABEL])
        coordinator = _coordinator(tracker, repository)

        async def two_generations():
            view = await tracker.fetch_issue(OWNER, REPO, 7)
            await coordinator.try_spawn(view, entering_ready=True)
            view = await tracker.fetch_issue(OWNER, REPO, 7)
            return await coordinator.try_spawn(view, entering_ready=True)

        second = asyncio.run(two_generations())

        assert second.spawned
        assert second.generation == 2
        assert [t.generation for t in tracker.triggers(7)] == [1, 2]

    def test_dry_run_neither_claims_nor_posts(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        issue = tracker.add_issue(7, labels=[READY_WORK_LABEL])

        result = asyncio.run(
            _coordinator(tracker, repository).try_spawn(issue, entering_ready=True, dry_run=True)
        )

        assert result.outcome == SpawnOutcome.DRY_RUN
        assert repository.records == {}
        assert tracker.writes() == []

    def test_reset_allows_a_fresh_generation_one(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        tracker.add_issue(7, labels=[READY_WORK_LABEL])
        coordinator = _coordinator(tracker, repository)

        async def spawn_reset_spawn():
            view = await tracker.fetch_issue(OWNER, REPO, 7)
            await coordinator.try_spawn(view, entering_ready=True)
            deleted = await coordinator.reset(7)
            again = await coordinator.reserve(view, entering_ready=True)
            return deleted, again

        deleted, again = asyncio.run(spawn_reset_spawn())
        assert deleted is True
        assert again.generation == 1
        assert again.outcome == SpawnOutcome.SPAWNED


class TestNextGeneration:
    def test_entering_ready_starts_the_next_generation(self):
        record = SpawnRecord(issue_number=7, spawned_at=BASE_TIME, generation=2, agent_type="rust-pro")
        assert next_generation(record, entering_ready=True) == 3
        assert next_generation(None, entering_ready=True) == 1

    def test_other_events_use_the_stored_generation(self):
        record = SpawnRecord(issue_number=7, spawned_at=BASE_TIME, generation=2, agent_type="rust-pro")
        assert next_generation(record, entering_ready=False) == 2
        assert next_generation(None, entering_ready=False) == 1


class TestAmbiguousTriggerPost:
    """The trigger POST is stored by GitHub but the response never arrives."""

    @staticmethod
    def _github(comments, post_failure):
        issue = {
            "number": 4,
            "title": "Add flag",
            "body": "",
            "labels": [{"name": READY_WORK_LABEL}],
            "state": "open",
            "created_at": "2024-01-01T00:00:00Z",
        }

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if request.method == "POST" and path.endswith("/comments"):
                comments.append(
                    {
                        "body": json.loads(request.content)["body"],
                        "created_at": "2024-01-01T00:05:00Z",
                        "user": {"login": "conductor"},
                    }
                )
                if post_failure == "timeout":
                    raise httpx.ReadTimeout("response lost", request=request)
                return httpx.Response(502)
            if path.endswith("/comments"):
                page = int(request.url.params.get("page", "1"))
                return httpx.Response(200, json=comments if page == 1 else [])
            return httpx.Response(200, json=issue)

        return GitHubClient(
            token="ghp_test",
            base_url="https://api.github.test",
            max_retries=3,
            base_delay=0.0,
            transport=httpx.MockTransport(handler),
        )

    def _spawn(self, post_failure):
        comments = []
        repository = InMemorySpawnRepository()
        client = self._github(comments, post_failure)

        async def run():
            async with client:
                view = await client.fetch_issue(OWNER, REPO, 4)
                return await _coordinator(client, repository).try_spawn(view, entering_ready=True)

        return asyncio.run(run()), comments

    def test_stored_trigger_after_read_timeout_is_not_posted_twice(self):
        result, comments = self._spawn("timeout")

        triggers = [parse_spawn_trigger(c["body"]) for c in comments]
        assert [t.generation for t in triggers if t is not None] == [1]
        assert result.outcome == SpawnOutcome.SPAWNED
        assert result.emitted is True

    def test_stored_trigger_after_server_error_is_not_posted_twice(self):
        result, comments = self._spawn("server_error")

        assert len(comments) == 1
        assert result.emitted is True

    def test_unverified_post_propagates_for_later_repair(self):
        tracker = FakeTracker()
        repository = InMemorySpawnRepository()
        tracker.add_issue(4, labels=[READY_WORK_LABEL])
        tracker.fail_on["create_comment"] = TransientExternalError("timeout")
        tracker.fail_on["fetch_issue"] = TransientExternalError("still down")
        coordinator = _coordinator(tracker, repository)

        async def spawn():
            view = tracker.issues[4].model_copy(deep=True)
            return await coordinator.try_spawn(view, entering_ready=True)

        with pytest.raises(TransientExternalError, match="timeout"):
            asyncio.run(spawn())
        assert repository.records[4].generation == 1
        assert tracker.triggers(4) == []


@settings(max_examples=100, deadline=None)
@given(st.lists(st.booleans(), min_size=1, max_size=8))
def test_duplicate_ready_events_emit_exactly_one_trigger(redeliveries):
    """Any mix of redelivered "became ready" events for one generation
    yields a single trigger."""
    tracker = FakeTracker()
    repository = InMemorySpawnRepository()
    tracker.add_issue(3, labels=[READY_WORK_LABEL])
    coordinator = _coordinator(tracker, repository)

    async def deliver():
        view = await tracker.fetch_issue(OWNER, REPO, 3)
        await coordinator.try_spawn(view, entering_ready=True)
        for _ in redeliveries:
            view = await tracker.fetch_issue(OWNER, REPO, 3)
            await coordinator.try_spawn(view, entering_ready=False)

    asyncio.run(deliver())
    assert len(tracker.triggers(3)) == 1
    assert repository.records[3].generation == 1
