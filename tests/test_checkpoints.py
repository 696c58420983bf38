"""Tests for checkpoints, resume and event replay."""

import tempfile
from pathlib import Path

import pytest

from milestone_orchestrator.config import Config
from milestone_orchestrator.errors import CheckpointNotFound, NotFound
from milestone_orchestrator.orchestrator import Orchestrator


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "data"


@pytest.fixture
def orch(data_dir):
    o = Orchestrator(Config(data_dir=data_dir, checkpoint_retention_count=3)).init()
    yield o
    o.shutdown()


def _snapshot(orch):
    return {
        "milestones": orch.store.list("milestone"),
        "tasks": orch.store.list("task"),
        "workers": {w.id: w.status for w in orch.list_workers()},
    }


def _alpha(orch):
    orch.create_milestone("Alpha", task_specs=[
        {"title": "A1", "phase": "design"},
        {"title": "A2", "phase": "design", "depends_on": ["A1"]},
        {"title": "S1", "phase": "spec"},
    ])
    orch.register_worker(worker_id="w1")
    orch.register_worker(["gpu"], worker_id="w2")
    orch.claim_task("w1")


class TestCheckpoint:
    def test_create_and_list(self, orch):
        _alpha(orch)
        cp = orch.checkpoint("before release")
        assert cp.id == 1
        assert cp.event_seq > 0
        assert cp.record_count == 6
        listed = orch.list_checkpoints()
        assert [c.id for c in listed] == [1]
        assert listed[0].reason == "before release"
        assert listed[0].records == []
        assert orch.events(event_type="checkpoint.created")[0].entity_id == "1"

    def test_retention(self, orch):
        for i in range(5):
            orch.checkpoint(f"cp {i}")
        assert [c.id for c in orch.list_checkpoints()] == [3, 4, 5]

    def test_unknown_checkpoint(self, orch):
        with pytest.raises(CheckpointNotFound):
            orch.resume(42)

    def test_resume_without_checkpoints(self, orch):
        with pytest.raises(NotFound):
            orch.resume()


class TestResume:
    def test_replay_reproduces_state(self, orch):
        _alpha(orch)
        cp = orch.checkpoint()

        orch.report_task_status("alpha.a1", "completed", worker_id="w1")
        orch.claim_task("w2")
        orch.create_milestone("Beta", task_specs=[{"title": "B1"}])
        orch.add_dependency("beta", "alpha")
        orch.report_task_status("alpha.a2", "failed", {"error": "flaky"}, worker_id="w2")
        expected = _snapshot(orch)

        replayed = orch.resume(cp.id)
        assert replayed >= 5
        assert _snapshot(orch) == expected

    def test_resume_discards_unlogged_changes(self, orch):
        _alpha(orch)
        orch.checkpoint()
        orch.report_task_status("alpha.a1", "completed", worker_id="w1")
        expected = _snapshot(orch)

        # Changes that bypass the event log do not survive a resume
        orch.store.delete("task", "alpha.s1")
        orch.store.put({**orch.store.read("task", "alpha.a2"), "status": "blocked"})

        orch.resume()
        assert _snapshot(orch) == expected

    def test_logged_but_unapplied_change_is_repaired(self, orch):
        _alpha(orch)
        orch.checkpoint()
        record = {**orch.store.read("task", "alpha.s1"), "title": "Renamed"}
        # Crash between the log append and the record write
        orch.event_log.append("task.updated", "alpha.s1", records=[record])
        assert orch.get_task("alpha.s1").title == "S1"

        orch.resume()
        assert orch.get_task("alpha.s1").title == "Renamed"

    def test_graphs_rebuilt(self, orch):
        _alpha(orch)
        cp = orch.checkpoint()
        orch.report_task_status("alpha.a1", "completed", worker_id="w1")
        orch.resume(cp.id)
        assert orch.task_graph.node("alpha.a1").status == "completed"
        orch.register_worker(worker_id="w3")
        assert orch.claim_task("w3").id == "alpha.a2"

    def test_resume_after_restart(self, data_dir):
        with Orchestrator(Config(data_dir=data_dir)) as first:
            _alpha(first)
            cp = first.checkpoint()
            first.report_task_status("alpha.a1", "completed", worker_id="w1")
            expected = _snapshot(first)

        with Orchestrator(Config(data_dir=data_dir)) as second:
            second.resume(cp.id)
            assert _snapshot(second) == expected
            assert second.events(event_type="checkpoint.restored")[0].payload["replayed"] >= 1

    def test_resume_on_migrated_tier(self, orch):
        _alpha(orch)
        cp = orch.checkpoint()
        orch.report_task_status("alpha.a1", "completed", worker_id="w1")
        assert orch.migrate("database").success
        expected = _snapshot(orch)
        orch.resume(cp.id)
        assert orch.current_tier() == "database"
        assert _snapshot(orch) == expected
