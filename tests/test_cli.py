"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from milestone_orchestrator.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp data directory for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {"MO_DATA_DIR": str(Path(tmp) / "data")}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v
        os.environ.pop("MO_CONFIG", None)

        yield CliRunner(), Path(tmp)

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _launch(runner):
    return runner.invoke(main, [
        "milestone", "create", "Launch",
        "-t", "design:Sketch", "-t", "spec:Write spec", "-t", "task:Plan", "-t", "Build",
    ])


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Milestone Orchestrator" in result.output

    def test_milestone_create_and_list(self, cli_env):
        runner, _ = cli_env
        result = _launch(runner)
        assert result.exit_code == 0, result.output
        assert "Created milestone: launch" in result.output
        assert "launch.build" in result.output
        assert "Storage tier: flat" in result.output

        result = runner.invoke(main, ["milestone", "list"])
        assert result.exit_code == 0
        assert "launch: Launch (planning, 0.0%)" in result.output

    def test_milestone_list_json(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["milestone", "list", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["id"] == "launch"
        assert data[0]["progress"] == 0

    def test_milestone_show(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["milestone", "create", "Launch", "-t", "design:Sketch", "--gate", "design=lead"])
        result = runner.invoke(main, ["milestone", "show", "launch"])
        assert result.exit_code == 0
        assert "Milestone: launch" in result.output
        assert "[gate: none of lead]" in result.output
        assert "launch.sketch [design] (pending)" in result.output

    def test_tasks_file(self, cli_env):
        runner, tmp = cli_env
        tasks_file = tmp / "tasks.json"
        tasks_file.write_text(json.dumps([
            {"title": "Schema", "phase": "design", "effort": 2},
            {"title": "Migrate", "phase": "execute", "depends_on": ["Schema"]},
        ]))
        result = runner.invoke(main, ["milestone", "create", "Data", "--tasks-file", str(tasks_file)])
        assert result.exit_code == 0, result.output
        result = runner.invoke(main, ["task", "show", "data.migrate"])
        assert "Depends on: data.schema" in result.output

    def test_task_status_updates_progress(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["task", "status", "launch.sketch", "completed"])
        assert result.exit_code == 0, result.output
        assert "Task launch.sketch: completed" in result.output
        assert "Milestone progress: 15.00%" in result.output

        result = runner.invoke(main, ["milestone", "progress", "launch", "--json"])
        data = json.loads(result.output)
        assert data["percentage"] == 15
        assert data["per_phase"]["design"]["status"] == "completed"
        assert data["remaining_effort"] == 3

    def test_invalid_transition_exits_nonzero(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["task", "status", "launch.build", "in_progress"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "waits on earlier phases" in result.output

        result = runner.invoke(main, ["events", "--failed"])
        assert "report_task_status launch.build: InvalidTransition" in result.output

    def test_unknown_task(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1
        assert "Task not found: nope" in result.output

    def test_task_add_and_list(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, [
            "task", "add", "launch", "Docs", "--priority", "1", "--depends-on", "launch.build",
        ])
        assert result.exit_code == 0, result.output
        assert "Created task: launch.docs" in result.output
        result = runner.invoke(main, ["task", "list", "--milestone", "launch"])
        assert "P1 launch.docs: Docs (pending) [depends: launch.build]" in result.output

    def test_phase_commands(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["milestone", "create", "Launch"])
        result = runner.invoke(main, ["phase", "set", "launch", "design", "completed"])
        assert result.exit_code == 0, result.output
        assert "Phase design of launch: completed" in result.output
        assert "Milestone status: active" in result.output

        result = runner.invoke(main, ["phase", "deliverable", "launch", "spec", "docs/spec.md"])
        assert result.exit_code == 0
        result = runner.invoke(main, ["milestone", "show", "launch"])
        assert "deliverable: docs/spec.md" in result.output

    def test_phase_approve(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["milestone", "create", "Launch", "--gate", "design=lead,qa"])
        result = runner.invoke(main, ["phase", "approve", "launch", "design", "lead"])
        assert result.exit_code == 0, result.output
        assert "still pending: qa" in result.output

    def test_dependency_cycle(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["milestone", "create", "Graph", "-t", "A", "-t", "B"])
        result = runner.invoke(main, ["dep", "add", "graph.a", "graph.b"])
        assert result.exit_code == 0, result.output
        result = runner.invoke(main, ["dep", "add", "graph.b", "graph.a"])
        assert result.exit_code == 1
        assert "Dependency cycle detected: graph.b -> graph.a -> graph.b" in result.output

        result = runner.invoke(main, ["critical-path"])
        assert "graph.b" in result.output

    def test_checkpoint_and_resume(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["checkpoint", "create", "--reason", "nightly"])
        assert result.exit_code == 0
        assert result.output.startswith("Checkpoint 1 at event")
        runner.invoke(main, ["task", "status", "launch.sketch", "completed"])

        result = runner.invoke(main, ["checkpoint", "list"])
        assert "(nightly)" in result.output
        result = runner.invoke(main, ["resume"])
        assert result.exit_code == 0, result.output
        assert "Resumed; replayed" in result.output
        result = runner.invoke(main, ["task", "show", "launch.sketch"])
        assert "Status: completed" in result.output

    def test_storage_commands(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["storage", "status"])
        assert "Tier: flat" in result.output
        assert "Thresholds: hybrid at 25, database at 100" in result.output

        result = runner.invoke(main, ["storage", "migrate", "hybrid"])
        assert result.exit_code == 0, result.output
        assert "-> hybrid" in result.output
        result = runner.invoke(main, ["storage", "status"])
        assert "Tier: hybrid" in result.output

        result = runner.invoke(main, ["storage", "migrate", "hybrid"])
        assert result.exit_code == 1

    def test_workers(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["worker", "list"])
        assert "No workers registered." in result.output
        result = runner.invoke(main, ["worker", "sweep"])
        assert "All workers healthy." in result.output

    def test_events(self, cli_env):
        runner, _ = cli_env
        _launch(runner)
        result = runner.invoke(main, ["events", "--entity", "launch"])
        assert "milestone.created launch" in result.output

    def test_config_file(self, cli_env):
        runner, tmp = cli_env
        config = tmp / "mo.json"
        config.write_text(json.dumps({"tierThresholds": {"hybrid": 1, "database": 5}}))
        result = runner.invoke(main, ["--config", str(config), "--data-dir", str(tmp / "other"),
                                      "milestone", "create", "Launch"])
        assert result.exit_code == 0, result.output
        assert "Storage tier: hybrid" in result.output

    def test_bad_config_file(self, cli_env):
        runner, tmp = cli_env
        config = tmp / "mo.json"
        config.write_text(json.dumps({"colour": "blue"}))
        result = runner.invoke(main, ["--config", str(config), "milestone", "list"])
        assert result.exit_code == 1
        assert "Unknown configuration key" in result.output
