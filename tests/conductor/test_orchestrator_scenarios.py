"""End-to-end orchestrator scenarios against the in-memory tracker.

Each test drives the Orchestrator facade the way webhook deliveries or
CLI commands would and asserts on the resulting labels, comments, spawn
ledger and emitted events.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import OWNER, REPO, FakeTracker, InMemorySpawnRepository, RecordingEventEmitter, make_orchestrator
from src.conductor.completion import LinkResolutionError
from src.conductor.events import EventType
from src.conductor.github import TransientExternalError
from src.conductor.spawn import SpawnOutcome
from src.conductor.state import (
    COMPLETED_LABEL,
    IN_PROGRESS_LABEL,
    READY_WORK_LABEL,
    WAITING_ANSWERS_LABEL,
    InvalidTransitionError,
)
from src.conductor.webhook import EventKind, IngestedEvent


QUESTIONS = "Some context.\n\nClarifying Questions: 1. Which DB? 2. Which region?"


def _event(kind: EventKind, issue_number=None, pull_request=None) -> IngestedEvent:
    return IngestedEvent(
        kind=kind,
        owner=OWNER,
        repository=REPO,
        issue_number=issue_number,
        pull_request=pull_request,
        action="test",
    )


class TestReadinessFlow:
    def test_unanswered_questions_add_waiting_label(self, tracker, orchestrator, emitter):
        tracker.add_issue(1, body=QUESTIONS)

        result = asyncio.run(orchestrator.handle_event(_event(EventKind.ISSUE_CHANGED, 1)))

        assert result.report.unanswered_indices == [1, 2]
        assert result.report.ready is False
        assert tracker.labels_of(1) == {WAITING_ANSWERS_LABEL}
        assert result.spawn is None
        assert [e.event_type for e in emitter.events] == [EventType.STATE_TRANSITION]

    def test_answers_move_issue_to_ready_and_spawn_once(
        self, tracker, orchestrator, emitter, spawn_repository
    ):
        tracker.add_issue(1, title="DB-002: Storage", body=QUESTIONS, labels=[WAITING_ANSWERS_LABEL])
        tracker.add_comment(1, "A1: Postgres")
        tracker.add_comment(1, "Answer 2: us-west")

        result = asyncio.run(orchestrator.handle_event(_event(EventKind.COMMENT_CHANGED, 1)))

        assert result.report.ready is True
        assert tracker.labels_of(1) == {READY_WORK_LABEL}
        assert result.spawn.outcome == SpawnOutcome.SPAWNED
        triggers = tracker.triggers(1)
        assert len(triggers) == 1
        assert triggers[0].issue_code == "DB-002"
        assert triggers[0].agent_type == "rust-pro"
        assert spawn_repository.records[1].generation == 1
        assert "Resumption signal" in tracker.comment_bodies(1)[2]
        assert [e.event_type for e in emitter.events] == [
            EventType.STATE_TRANSITION,
            EventType.SPAWN_TRIGGERED,
        ]

    def test_issue_without_questions_spawns_on_open(self, tracker, orchestrator):
        tracker.add_issue(4, title="Fix crash", body="Stack trace attached.")

        result = asyncio.run(orchestrator.trigger(4))

        assert tracker.labels_of(4) == {READY_WORK_LABEL}
        assert result.spawn.spawned
        assert len(tracker.triggers(4)) == 1

    def test_repeated_evaluation_is_idempotent(self, tracker, orchestrator):
        tracker.add_issue(4, body="No questions here.")
        asyncio.run(orchestrator.trigger(4))
        writes = len(tracker.writes())

        second = asyncio.run(orchestrator.trigger(4))

        assert len(tracker.writes()) == writes
        assert not second.changed
        assert second.spawn.outcome == SpawnOutcome.DUPLICATE_SUPPRESSED

    def test_near_simultaneous_comment_events_spawn_once(self, tracker, orchestrator):
        tracker.add_issue(1, body=QUESTIONS, labels=[WAITING_ANSWERS_LABEL])
        tracker.add_comment(1, "A1: Postgres")
        tracker.add_comment(1, "A2: us-west")

        async def both():
            return await asyncio.gather(
                orchestrator.handle_event(_event(EventKind.COMMENT_CHANGED, 1)),
                orchestrator.handle_event(_event(EventKind.COMMENT_CHANGED, 1)),
            )

        first, second = asyncio.run(both())

        assert tracker.writes("add_label") == [("add_label", 1, READY_WORK_LABEL)]
        assert len(tracker.triggers(1)) == 1
        assert first.changed
        assert not second.changed
        assert second.spawn is None

    def test_draft_hold_blocks_readiness(self, tracker, orchestrator):
        tracker.add_issue(2, body="No questions.", labels=["draft"])

        result = asyncio.run(orchestrator.trigger(2))

        assert tracker.labels_of(2) == {"draft"}
        assert result.spawn is None

    def test_tampered_labels_are_repaired(self, tracker, orchestrator, emitter):
        tracker.add_issue(
            3,
            body=QUESTIONS,
            labels=[WAITING_ANSWERS_LABEL, READY_WORK_LABEL],
            comments=["A1: x"],
        )

        result = asyncio.run(orchestrator.trigger(3))

        assert tracker.labels_of(3) == {WAITING_ANSWERS_LABEL}
        assert result.plans[0].conflict is not None
        assert result.spawn is None

    def test_dry_run_reports_without_writing(self, tracker, orchestrator, spawn_repository, emitter):
        tracker.add_issue(4, body="No questions.")

        result = asyncio.run(orchestrator.trigger(4, dry_run=True))

        assert result.dry_run is True
        assert result.plans[0].add_labels == [READY_WORK_LABEL]
        assert result.spawn.outcome == SpawnOutcome.DRY_RUN
        assert tracker.writes() == []
        assert spawn_repository.records == {}
        assert emitter.events == []


class TestCrashRepair:
    def test_lost_trigger_is_reemitted_on_next_event(self, tracker, orchestrator, spawn_repository):
        tracker.add_issue(5, body="No questions.")
        tracker.fail_on["create_comment"] = TransientExternalError("GitHub down")

        with pytest.raises(TransientExternalError):
            asyncio.run(orchestrator.trigger(5))

        assert tracker.labels_of(5) == {READY_WORK_LABEL}
        assert spawn_repository.records[5].generation == 1
        assert tracker.triggers(5) == []

        result = asyncio.run(orchestrator.trigger(5))

        assert result.spawn.outcome == SpawnOutcome.REEMITTED
        assert [t.generation for t in tracker.triggers(5)] == [1]

    def test_failed_label_write_is_reported_and_reraised(self, tracker, orchestrator, emitter):
        tracker.add_issue(5, body=QUESTIONS)
        tracker.fail_on["add_label"] = TransientExternalError("GitHub down")

        with pytest.raises(TransientExternalError):
            asyncio.run(orchestrator.trigger(5))

        errors = emitter.of_type(EventType.ERROR)
        assert len(errors) == 1
        assert errors[0].details["stage"] == "readiness"
        assert errors[0].details["error_type"] == "TransientExternalError"

        asyncio.run(orchestrator.trigger(5))
        assert tracker.labels_of(5) == {WAITING_ANSWERS_LABEL}

    def test_reentering_ready_after_new_question_spawns_next_generation(self, tracker, orchestrator):
        tracker.add_issue(6, body=QUESTIONS, comments=["A1: a", "A2: b"])
        asyncio.run(orchestrator.trigger(6))

        tracker.issues[6].body = QUESTIONS + " 3. Which cloud?"
        asyncio.run(orchestrator.trigger(6))
        assert tracker.labels_of(6) == {WAITING_ANSWERS_LABEL}

        tracker.add_comment(6, "A3: aws")
        result = asyncio.run(orchestrator.handle_event(_event(EventKind.COMMENT_CHANGED, 6)))

        assert result.spawn.generation == 2
        assert [t.generation for t in tracker.triggers(6)] == [1, 2]


class TestWorkAndCompletion:
    def test_work_started_moves_ready_to_in_progress(self, tracker, orchestrator):
        tracker.add_issue(8, labels=[READY_WORK_LABEL])

        asyncio.run(orchestrator.handle_event(_event(EventKind.WORK_STARTED, 8)))

        assert tracker.labels_of(8) == {IN_PROGRESS_LABEL}

    def test_work_started_on_waiting_issue_is_rejected(self, tracker, orchestrator, emitter):
        tracker.add_issue(8, labels=[WAITING_ANSWERS_LABEL])

        with pytest.raises(InvalidTransitionError):
            asyncio.run(orchestrator.start_work(8))

        assert emitter.of_type(EventType.ERROR)[0].details["stage"] == "work_started"
        assert tracker.writes() == []

    def test_merged_pr_completes_issue_with_nothing_next(self, tracker, orchestrator, emitter):
        tracker.add_issue(123, labels=[IN_PROGRESS_LABEL])
        pull = tracker.add_pull_request(77, body="Closes #123")

        result = asyncio.run(orchestrator.handle_event(_event(EventKind.PR_MERGED, pull_request=pull)))

        assert tracker.labels_of(123) == {COMPLETED_LABEL}
        assert tracker.issues[123].state == "closed"
        assert "Pull request #77 was merged" in tracker.comment_bodies(123)[-1]
        assert result.next_issue_number is None
        assert result.next_spawn is None
        assert tracker.triggers(123) == []

        completion = emitter.of_type(EventType.COMPLETION)
        assert len(completion) == 1
        assert completion[0].details["duration_seconds"] == 3 * 86400.0

    def test_completion_assigns_highest_priority_ready_issue(self, tracker, orchestrator):
        tracker.add_issue(10, labels=[IN_PROGRESS_LABEL])
        tracker.add_issue(11, labels=[READY_WORK_LABEL, "priority:medium"])
        tracker.add_issue(12, labels=[READY_WORK_LABEL, "priority:critical"])
        pull = tracker.add_pull_request(90, head_branch="agent/10-thing")

        result = asyncio.run(orchestrator.complete(pull))

        assert result.issue_number == 10
        assert result.next_issue_number == 12
        assert result.next_spawn.outcome == SpawnOutcome.SPAWNED
        assert len(tracker.triggers(12)) == 1
        assert tracker.triggers(11) == []

    def test_redelivered_merge_does_not_respawn_next(self, tracker, orchestrator, emitter):
        tracker.add_issue(10, labels=[IN_PROGRESS_LABEL])
        tracker.add_issue(12, labels=[READY_WORK_LABEL])
        pull = tracker.add_pull_request(90, body="Fixes #10")

        asyncio.run(orchestrator.complete(pull))
        second = asyncio.run(orchestrator.complete(pull))

        assert second.plans == []
        assert second.skipped == "already_completed"
        assert second.next_spawn.outcome == SpawnOutcome.DUPLICATE_SUPPRESSED
        assert len(tracker.triggers(12)) == 1
        assert len(emitter.of_type(EventType.COMPLETION)) == 1

    def test_unlinkable_pr_emits_error_and_raises(self, tracker, orchestrator, emitter):
        pull = tracker.add_pull_request(91, body="Refactor", head_branch="cleanup")

        with pytest.raises(LinkResolutionError):
            asyncio.run(orchestrator.complete(pull))

        errors = emitter.of_type(EventType.ERROR)
        assert errors[0].details["stage"] == "link_resolution"
        assert errors[0].issue_id == f"{OWNER}/{REPO}#91"

    def test_unmerged_pr_is_a_no_op(self, tracker, orchestrator):
        tracker.add_issue(10, labels=[IN_PROGRESS_LABEL])
        tracker.add_pull_request(92, body="Closes #10", merged=False)

        result = asyncio.run(orchestrator.complete_pull_request(92))

        assert result.skipped == "pull_request_not_merged"
        assert tracker.writes() == []


class TestSweep:
    def test_scan_evaluates_pre_work_issues_only(self, tracker, orchestrator):
        tracker.add_issue(1, body=QUESTIONS)
        tracker.add_issue(2, body="No questions.")
        tracker.add_issue(3, labels=[IN_PROGRESS_LABEL])
        tracker.add_issue(4, state="closed")

        results = asyncio.run(orchestrator.scan())

        assert [r.issue_number for r in results] == [1, 2, 3]
        assert results[2].skipped == "work_owned"
        assert tracker.labels_of(1) == {WAITING_ANSWERS_LABEL}
        assert tracker.labels_of(2) == {READY_WORK_LABEL}

    def test_scan_records_failures_and_continues(self, tracker, orchestrator):
        tracker.add_issue(1, body=QUESTIONS)
        tracker.add_issue(2, body=QUESTIONS)
        tracker.fail_on["add_label"] = TransientExternalError("flaky")

        results = asyncio.run(orchestrator.scan())

        assert results[0].error == "flaky"
        assert results[1].error is None
        assert tracker.labels_of(2) == {WAITING_ANSWERS_LABEL}

    def test_scan_stops_when_cancelled(self, tracker, orchestrator):
        tracker.add_issue(1, body=QUESTIONS)
        tracker.add_issue(2, body=QUESTIONS)

        async def cancelled_scan():
            cancel = asyncio.Event()
            cancel.set()
            return await orchestrator.scan(cancel=cancel)

        assert asyncio.run(cancelled_scan()) == []
        assert tracker.writes() == []

    def test_watch_runs_until_cancelled(self, tracker, orchestrator):
        tracker.add_issue(1, body=QUESTIONS)

        async def watch_briefly():
            cancel = asyncio.Event()
            task = asyncio.create_task(orchestrator.watch(0.01, cancel))
            await asyncio.sleep(0.05)
            cancel.set()
            return await task

        assert asyncio.run(watch_briefly()) >= 1
        assert tracker.labels_of(1) == {WAITING_ANSWERS_LABEL}


def test_agent_type_labels_are_used():
    tracker = FakeTracker()
    orchestrator = make_orchestrator(
        tracker,
        InMemorySpawnRepository(),
        RecordingEventEmitter(),
        agent_type_labels={"area:ui": "frontend-developer"},
    )
    tracker.add_issue(20, labels=["area:ui"], body="No questions.")

    result = asyncio.run(orchestrator.trigger(20))

    assert result.spawn.agent_type == "frontend-developer"
    assert tracker.triggers(20)[0].agent_type == "frontend-developer"


def test_failing_event_sink_does_not_disrupt_handling():
    tracker = FakeTracker()
    failing_emitter = AsyncMock()
    failing_emitter.emit.side_effect = RuntimeError("sink down")
    orchestrator = make_orchestrator(tracker, InMemorySpawnRepository(), failing_emitter)
    tracker.add_issue(21, body="No questions.")

    result = asyncio.run(orchestrator.trigger(21))

    assert result.spawn.spawned
    assert failing_emitter.emit.await_count == 2
