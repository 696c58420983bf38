"""Tests for the milestone, phase and task state machines."""

from datetime import datetime

import pytest

from milestone_orchestrator.core import milestones as machine
from milestone_orchestrator.db.models import ApprovalGate, Milestone, Task
from milestone_orchestrator.errors import InvalidTransition, NotFound

NOW = datetime(2026, 1, 5, 9, 0, 0)


def _status_of(tasks):
    by_id = {t.id: t for t in tasks}
    return lambda task_id: by_id[task_id].status


def _move(task, status, milestone, tasks):
    machine.check_task_transition(task, status, milestone, _status_of(tasks))
    machine.apply_task_status(task, status, milestone, tasks, NOW)


@pytest.fixture
def milestone():
    return Milestone(id="launch", title="Launch", created_at=NOW)


@pytest.fixture
def tasks(milestone):
    return machine.build_tasks(
        milestone.id,
        [
            {"title": "Sketch", "phase": "design"},
            {"title": "Write spec", "phase": "spec"},
            {"title": "Plan", "phase": "task"},
            {"title": "Build", "phase": "execute", "effort": 3},
            {"title": "Ship", "phase": "execute", "depends_on": ["Build"]},
        ],
        task_exists=lambda task_id: False,
        now=NOW,
    )


class TestHelpers:
    def test_slugify(self):
        assert machine.slugify("Hello, World!") == "hello-world"
        assert machine.slugify("  multiple   spaces__here ") == "multiple-spaces-here"
        assert machine.slugify("!!!") == "untitled"
        assert len(machine.slugify("x" * 100)) == 60

    def test_unique_id(self):
        taken = {"plan", "plan-2"}
        assert machine.unique_id("plan", taken.__contains__) == "plan-3"
        assert machine.unique_id("other", taken.__contains__) == "other"

    def test_clamp_priority(self):
        assert machine.clamp_priority(-4) == 0
        assert machine.clamp_priority(9) == 6
        assert machine.clamp_priority("2") == 2


class TestBuildTasks:
    def test_ids_and_defaults(self, tasks):
        assert [t.id for t in tasks] == [
            "launch.sketch", "launch.write-spec", "launch.plan", "launch.build", "launch.ship",
        ]
        assert tasks[3].effort == 3.0
        assert tasks[3].priority == 3
        assert tasks[0].status == "pending"

    def test_dependency_resolved_by_title(self, tasks):
        assert tasks[4].depends_on == ["launch.build"]

    def test_dependency_on_existing_task(self):
        built = machine.build_tasks(
            "m", [{"title": "Next", "depends_on": ["other.done"]}],
            task_exists=lambda task_id: task_id == "other.done", now=NOW,
        )
        assert built[0].depends_on == ["other.done"]

    def test_unknown_dependency(self):
        with pytest.raises(NotFound):
            machine.build_tasks("m", [{"title": "A", "depends_on": ["ghost"]}], lambda t: False, NOW)

    def test_duplicate_titles_get_suffixes(self):
        built = machine.build_tasks("m", [{"title": "Fix"}, {"title": "Fix"}], lambda t: False, NOW)
        assert [t.id for t in built] == ["m.fix", "m.fix-2"]

    @pytest.mark.parametrize("spec", [
        {"title": ""},
        {"title": "A", "phase": "deploy"},
        {"title": "A", "effort": -1},
    ])
    def test_invalid_specs(self, spec):
        with pytest.raises(ValueError):
            machine.build_tasks("m", [spec], lambda t: False, NOW)


class TestPhases:
    def test_cannot_skip_ahead(self, milestone, tasks):
        with pytest.raises(InvalidTransition, match="waits on earlier phases: design"):
            machine.transition_phase(milestone, "spec", "in_progress", tasks, NOW)

    def test_cannot_complete_with_unfinished_tasks(self, milestone, tasks):
        with pytest.raises(InvalidTransition, match="unfinished tasks"):
            machine.transition_phase(milestone, "design", "completed", tasks, NOW)

    def test_empty_phase_completed_explicitly(self, milestone):
        machine.transition_phase(milestone, "design", "completed", [], NOW)
        design = milestone.phase("design")
        assert design.status == "completed"
        assert design.started_at == NOW
        assert milestone.status == "active"

    def test_completed_is_terminal(self, milestone):
        machine.transition_phase(milestone, "design", "completed", [], NOW)
        with pytest.raises(InvalidTransition):
            machine.transition_phase(milestone, "design", "in_progress", [], NOW)

    def test_blocked_phase_blocks_milestone(self, milestone, tasks):
        machine.transition_phase(milestone, "design", "blocked", tasks, NOW)
        assert milestone.status == "blocked"
        machine.transition_phase(milestone, "design", "in_progress", tasks, NOW)
        assert milestone.status == "active"

    def test_unknown_values(self, milestone):
        with pytest.raises(ValueError):
            machine.transition_phase(milestone, "deploy", "completed", [], NOW)
        with pytest.raises(ValueError):
            machine.transition_phase(milestone, "design", "done", [], NOW)


class TestApprovalGates:
    def test_gate_holds_phase_open_until_approved(self, milestone, tasks):
        milestone.phase("design").gate = ApprovalGate(required=["alice", "bob"])
        _move(tasks[0], "completed", milestone, tasks)
        assert milestone.phase("design").status == "in_progress"

        machine.approve_phase(milestone, "design", "alice", tasks, NOW)
        assert milestone.phase("design").status == "in_progress"
        machine.approve_phase(milestone, "design", "bob", tasks, NOW)
        assert milestone.phase("design").status == "completed"

    def test_explicit_completion_needs_gate(self, milestone):
        milestone.phase("design").gate = ApprovalGate(required=["alice"])
        with pytest.raises(InvalidTransition, match="awaits approval from: alice"):
            machine.transition_phase(milestone, "design", "completed", [], NOW)

    def test_approver_must_be_required(self, milestone):
        milestone.phase("design").gate = ApprovalGate(required=["alice"])
        with pytest.raises(InvalidTransition):
            machine.approve_phase(milestone, "design", "mallory", [], NOW)

    def test_phase_without_gate(self, milestone):
        with pytest.raises(InvalidTransition, match="no approval gate"):
            machine.approve_phase(milestone, "design", "alice", [], NOW)


class TestTaskTransitions:
    def test_start_opens_phase(self, milestone, tasks):
        _move(tasks[0], "in_progress", milestone, tasks)
        assert tasks[0].started_at == NOW
        assert milestone.phase("design").status == "in_progress"
        assert milestone.status == "active"

    def test_later_phase_waits(self, milestone, tasks):
        with pytest.raises(InvalidTransition, match="waits on earlier phases"):
            _move(tasks[1], "in_progress", milestone, tasks)

    def test_dependencies_must_be_completed(self, milestone, tasks):
        for phase in ("design", "spec", "task"):
            t = next(t for t in tasks if t.phase == phase)
            _move(t, "completed", milestone, tasks)
        with pytest.raises(InvalidTransition, match="waits on dependencies: launch.build"):
            _move(tasks[4], "in_progress", milestone, tasks)
        _move(tasks[3], "completed", milestone, tasks)
        _move(tasks[4], "in_progress", milestone, tasks)

    def test_completed_task_is_terminal(self, milestone, tasks):
        _move(tasks[0], "completed", milestone, tasks)
        with pytest.raises(InvalidTransition, match="cannot go from completed"):
            _move(tasks[0], "pending", milestone, tasks)

    def test_failed_task_can_retry(self, milestone, tasks):
        _move(tasks[0], "in_progress", milestone, tasks)
        tasks[0].assignee = "w1"
        _move(tasks[0], "failed", milestone, tasks)
        assert tasks[0].assignee is None
        _move(tasks[0], "pending", milestone, tasks)
        _move(tasks[0], "in_progress", milestone, tasks)

    def test_unknown_status(self, milestone, tasks):
        with pytest.raises(ValueError):
            machine.check_task_transition(tasks[0], "done", milestone, _status_of(tasks))

    def test_all_phases_complete_archives(self, milestone, tasks):
        for t in tasks:
            _move(t, "completed", milestone, tasks)
        assert [p.status for p in milestone.phases] == ["completed"] * 4
        assert milestone.status == "completed"
        assert milestone.archived
        assert milestone.completed_at == NOW

    def test_archived_milestone_rejects_work(self, milestone, tasks):
        for t in tasks:
            _move(t, "completed", milestone, tasks)
        extra = Task(id="launch.extra", milestone_id="launch", title="Extra")
        with pytest.raises(InvalidTransition, match="archived"):
            _move(extra, "in_progress", milestone, tasks + [extra])
