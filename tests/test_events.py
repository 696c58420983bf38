"""Tests for the event log."""

import logging
import tempfile
from pathlib import Path

import pytest

from milestone_orchestrator.core.events import EventLog
from milestone_orchestrator.db.router import StorageRouter, open_backend


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmp:
        router = StorageRouter.open(Path(tmp))
        yield router
        router.close()


@pytest.fixture
def log(store):
    return EventLog(store, session_id="s1")


def _task(task_id, status="pending"):
    return {"kind": "task", "id": task_id, "status": status, "milestone_id": "m1"}


class TestAppend:
    def test_sequence_is_monotonic(self, log):
        seqs = [log.append("note", f"e{i}").seq for i in range(5)]
        assert seqs == [1, 2, 3, 4, 5]
        assert log.last_seq == 5

    def test_sequence_survives_reopen(self, store, log):
        log.append("note", "e1")
        log.append("note", "e2")
        again = EventLog(store)
        assert again.append("note", "e3").seq == 3

    def test_events_filtered(self, log):
        log.append("task.created", "m1.a")
        log.append("task.created", "m1.b")
        log.append("task.status_changed", "m1.a")
        assert [e.seq for e in log.events(entity_id="m1.a")] == [1, 3]
        assert [e.seq for e in log.events(event_type="task.created")] == [1, 2]
        assert [e.seq for e in log.events(after_seq=2)] == [3]

    def test_events_carry_session(self, log):
        event = log.append("note", "e1", {"text": "hi"})
        stored = log.events()[0]
        assert stored.session_id == "s1"
        assert stored.payload["text"] == "hi"
        assert stored.timestamp == event.timestamp


class TestCommit:
    def test_commit_writes_records(self, store, log):
        event = log.commit("task.created", "m1.a", [_task("m1.a")])
        assert store.read("task", "m1.a")["status"] == "pending"
        assert event.payload["records"][0]["id"] == "m1.a"

    def test_commit_deletes(self, store, log):
        log.commit("task.created", "m1.a", [_task("m1.a")])
        log.commit("task.removed", "m1.a", [], deleted=[("task", "m1.a")])
        assert not store.exists("task", "m1.a")

    def test_commit_without_notify(self, log):
        seen = []
        log.subscribe("task.created", seen.append)
        event = log.commit("task.created", "m1.a", [_task("m1.a")], notify=False)
        assert seen == []
        log.publish(event)
        assert seen == [event]


class TestSubscriptions:
    def test_typed_and_wildcard(self, log):
        typed, everything = [], []
        log.subscribe("worker.disconnected", typed.append)
        log.subscribe("*", everything.append)
        log.append("worker.registered", "w1")
        log.append("worker.disconnected", "w1")
        assert [e.event_type for e in typed] == ["worker.disconnected"]
        assert len(everything) == 2

    def test_failing_handler_is_logged(self, log, caplog):
        def broken(event):
            raise RuntimeError("boom")

        seen = []
        log.subscribe("note", broken)
        log.subscribe("note", seen.append)
        with caplog.at_level(logging.ERROR):
            log.append("note", "e1")
        assert len(seen) == 1
        assert "Event handler failed" in caplog.text


class TestFailures:
    def test_attempts_kept_apart_from_events(self, log):
        log.record_failure("claim_task", "w1", ValueError("nope"))
        assert log.events() == []
        attempts = log.attempts()
        assert len(attempts) == 1
        assert attempts[0].error == "ValueError"
        assert attempts[0].message == "nope"
        assert log.attempts("other") == []


class TestReplay:
    def test_replay_rebuilds_state(self, log):
        log.commit("task.created", "m1.a", [_task("m1.a")])
        log.commit("task.created", "m1.b", [_task("m1.b")])
        log.commit("task.status_changed", "m1.a", [_task("m1.a", "completed")])
        with tempfile.TemporaryDirectory() as tmp:
            fresh = open_backend("database", Path(tmp))
            assert log.replay(fresh, after_seq=1) == 2
            assert fresh.read("task", "m1.a")["status"] == "completed"
            assert fresh.exists("task", "m1.b")
            fresh.close()
