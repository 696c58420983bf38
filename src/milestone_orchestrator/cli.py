"""CLI entry point for the milestone orchestrator."""

import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path

import click

from milestone_orchestrator.config import Config, get_config
from milestone_orchestrator.db.models import PHASE_STATUSES, PHASES, TASK_STATUSES, TIERS, WORKER_STATUSES
from milestone_orchestrator.errors import ConfigError, OrchestratorError
from milestone_orchestrator.orchestrator import Orchestrator

STATUS_ICONS = {
    "pending": "○",
    "planning": "○",
    "in_progress": "●",
    "active": "●",
    "completed": "✓",
    "failed": "✗",
    "blocked": "✗",
}


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@contextmanager
def _session():
    """An initialized orchestrator for one command; domain errors exit 1."""
    config = click.get_current_context().obj["config"]
    orch = Orchestrator(config)
    try:
        orch.init()
        yield orch
    except (OrchestratorError, ValueError) as e:
        _fail(e)
    finally:
        orch.shutdown()


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON config file (overrides MO_CONFIG)")
@click.option("--data-dir", default=None, help="Data directory (overrides MO_DATA_DIR)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, data_dir, verbose):
    """mo - Milestone Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = Config.load(Path(config_path)) if config_path else get_config()
    except ConfigError as e:
        _fail(e)
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()
    ctx.obj = {"config": config}


# ── Milestone Commands ────────────────────────────────────────────────────────


@main.group("milestone")
def milestone_group():
    """Manage milestones."""
    pass


def _parse_task_option(value: str) -> dict:
    """``PHASE:TITLE`` or just ``TITLE`` (execute phase)."""
    phase, sep, title = value.partition(":")
    if sep and phase.strip() in PHASES:
        return {"title": title.strip(), "phase": phase.strip()}
    return {"title": value.strip()}


def _parse_gate(value: str) -> tuple[str, list[str]]:
    phase, sep, approvers = value.partition("=")
    if not sep or not approvers.strip():
        raise click.BadParameter(f"expected PHASE=APPROVER[,APPROVER...], got {value!r}")
    return phase.strip(), [a.strip() for a in approvers.split(",") if a.strip()]


@milestone_group.command("create")
@click.argument("title")
@click.option("--description", "-d", default="", help="Milestone description")
@click.option("--task", "-t", "tasks", multiple=True, help="Task as PHASE:TITLE or TITLE (repeatable)")
@click.option("--tasks-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON file with a list of task specs")
@click.option("--depends-on", default=None, help="Comma-separated milestone IDs this depends on")
@click.option("--gate", "gates", multiple=True, help="Approval gate as PHASE=APPROVER[,APPROVER] (repeatable)")
def milestone_create(title, description, tasks, tasks_file, depends_on, gates):
    """Create a milestone with its tasks."""
    specs = [_parse_task_option(t) for t in tasks]
    if tasks_file:
        loaded = json.loads(Path(tasks_file).read_text())
        if not isinstance(loaded, list):
            _fail(f"{tasks_file} must contain a JSON list of task specs")
        specs.extend(loaded)
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    gate_map = dict(_parse_gate(g) for g in gates)

    with _session() as orch:
        milestone = orch.create_milestone(title, description, specs, depends_on=deps, gates=gate_map or None)
        click.echo(f"Created milestone: {milestone.id}")
        click.echo(f"  Title: {milestone.title}")
        click.echo(f"  Tasks: {len(milestone.task_ids)}")
        for task_id in milestone.task_ids:
            click.echo(f"    - {task_id}")
        if milestone.depends_on:
            click.echo(f"  Depends on: {', '.join(milestone.depends_on)}")
        click.echo(f"  Storage tier: {orch.current_tier()}")


@milestone_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--all", "include_archived", is_flag=True, help="Include archived milestones")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def milestone_list(status, include_archived, json_output):
    """List milestones with their progress."""
    with _session() as orch:
        milestones = orch.list_milestones(status=status, include_archived=include_archived)
        if json_output:
            result = []
            for m in milestones:
                d = m.to_record()
                d["progress"] = orch.get_progress(m.id).percentage
                result.append(d)
            _echo_json(result)
            return
        if not milestones:
            click.echo("No milestones found.")
            return
        for m in milestones:
            icon = STATUS_ICONS.get(m.status, "?")
            pct = orch.get_progress(m.id).percentage
            archived = " [archived]" if m.archived else ""
            click.echo(f"  {icon} {m.id}: {m.title} ({m.status}, {pct:.1f}%){archived}")


@milestone_group.command("show")
@click.argument("milestone_id")
def milestone_show(milestone_id):
    """Show milestone details, phases and tasks."""
    with _session() as orch:
        m = orch.get_milestone(milestone_id)
        report = orch.get_progress(milestone_id)
        click.echo(f"Milestone: {m.id}")
        click.echo(f"  Title: {m.title}")
        click.echo(f"  Status: {m.status}")
        click.echo(f"  Progress: {report.percentage:.2f}%")
        if m.description:
            click.echo(f"  Description: {m.description}")
        if m.depends_on:
            click.echo(f"  Depends on: {', '.join(m.depends_on)}")
        click.echo("  Phases:")
        for phase in m.phases:
            icon = STATUS_ICONS.get(phase.status, "?")
            gate = ""
            if phase.gate:
                gate = f" [gate: {', '.join(phase.gate.approved_by) or 'none'} of {', '.join(phase.gate.required)}]"
            click.echo(f"    {icon} {phase.name} ({phase.status}){gate}")
            for ref in phase.deliverables:
                click.echo(f"        deliverable: {ref}")
        tasks = orch.list_tasks(milestone_id=milestone_id)
        if tasks:
            click.echo("  Tasks:")
            for t in tasks:
                icon = STATUS_ICONS.get(t.status, "?")
                who = f" @{t.assignee}" if t.assignee else ""
                click.echo(f"    {icon} P{t.priority} {t.id} [{t.phase}] ({t.status}){who}")
        if m.created_at:
            click.echo(f"  Created: {m.created_at}")


@milestone_group.command("progress")
@click.argument("milestone_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def milestone_progress(milestone_id, json_output):
    """Show weighted progress per phase."""
    with _session() as orch:
        report = orch.get_progress(milestone_id)
        remaining = orch.estimate_remaining(milestone_id)
        if json_output:
            data = report.to_dict()
            data["remaining_effort"] = remaining
            _echo_json(data)
            return
        click.echo(f"{milestone_id}: {report.percentage:.2f}%")
        for p in report.phases:
            click.echo(
                f"  {p.phase:<8} {p.completed_tasks}/{p.total_tasks} tasks  "
                f"{p.contribution:5.2f} of {p.weight}  ({p.status})"
            )
        click.echo(f"  Remaining effort: {remaining}")


# ── Phase Commands ────────────────────────────────────────────────────────────


@main.group("phase")
def phase_group():
    """Drive milestone phases."""
    pass


@phase_group.command("set")
@click.argument("milestone_id")
@click.argument("phase", type=click.Choice(PHASES))
@click.argument("status", type=click.Choice(PHASE_STATUSES))
def phase_set(milestone_id, phase, status):
    """Transition a phase to a new status."""
    with _session() as orch:
        m = orch.transition_phase(milestone_id, phase, status)
        click.echo(f"Phase {phase} of {milestone_id}: {m.phase(phase).status}")
        click.echo(f"  Milestone status: {m.status}")


@phase_group.command("approve")
@click.argument("milestone_id")
@click.argument("phase", type=click.Choice(PHASES))
@click.argument("approver")
def phase_approve(milestone_id, phase, approver):
    """Sign off a phase's approval gate."""
    with _session() as orch:
        m = orch.approve_phase(milestone_id, phase, approver)
        gate = m.phase(phase).gate
        pending = ", ".join(gate.pending) if gate and gate.pending else "none"
        click.echo(f"Approved {phase} of {milestone_id} as {approver} (still pending: {pending})")


@phase_group.command("deliverable")
@click.argument("milestone_id")
@click.argument("phase", type=click.Choice(PHASES))
@click.argument("reference")
def phase_deliverable(milestone_id, phase, reference):
    """Attach a deliverable reference to a phase."""
    with _session() as orch:
        orch.add_deliverable(milestone_id, phase, reference)
        click.echo(f"Added deliverable to {phase} of {milestone_id}: {reference}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect and update tasks."""
    pass


@task_group.command("add")
@click.argument("milestone_id")
@click.argument("title")
@click.option("--phase", default="execute", type=click.Choice(PHASES), help="Phase the task belongs to")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--effort", default=1.0, type=float, help="Estimated effort")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--capability", "capabilities", multiple=True, help="Required worker capability (repeatable)")
def task_add(milestone_id, title, phase, description, effort, priority, depends_on, capabilities):
    """Add a task to an existing milestone."""
    spec = {
        "title": title,
        "phase": phase,
        "description": description,
        "effort": effort,
        "priority": priority,
        "depends_on": [d.strip() for d in depends_on.split(",")] if depends_on else [],
        "capabilities": list(capabilities),
    }
    with _session() as orch:
        task = orch.add_task(milestone_id, spec)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Phase: {task.phase}")
        click.echo(f"  Priority: P{task.priority}")


@task_group.command("list")
@click.option("--milestone", default=None, help="Milestone ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(milestone, status, json_output):
    """List tasks."""
    with _session() as orch:
        tasks = orch.list_tasks(milestone_id=milestone, status=status)
        if json_output:
            _echo_json([t.to_record() for t in tasks])
            return
        if not tasks:
            click.echo("No tasks found.")
            return
        for t in tasks:
            icon = STATUS_ICONS.get(t.status, "?")
            deps = f" [depends: {', '.join(t.depends_on)}]" if t.depends_on else ""
            click.echo(f"  {icon} P{t.priority} {t.id}: {t.title} ({t.status}){deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and history."""
    with _session() as orch:
        t = orch.get_task(task_id)
        click.echo(f"Task: {t.id}")
        click.echo(f"  Title: {t.title}")
        click.echo(f"  Milestone: {t.milestone_id}")
        click.echo(f"  Phase: {t.phase}")
        click.echo(f"  Priority: P{t.priority}")
        click.echo(f"  Effort: {t.effort}")
        click.echo(f"  Status: {t.status}")
        if t.assignee:
            click.echo(f"  Assignee: {t.assignee}")
        if t.description:
            click.echo(f"  Description: {t.description}")
        if t.depends_on:
            click.echo(f"  Depends on: {', '.join(t.depends_on)}")
        if t.capabilities:
            click.echo(f"  Capabilities: {', '.join(t.capabilities)}")
        if t.details:
            click.echo(f"  Details: {json.dumps(t.details)}")
        events = orch.events(entity_id=task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.timestamp}] #{e.seq} {e.event_type}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
@click.option("--details", default=None, help="JSON object with details to record")
@click.option("--worker", default=None, help="Report as this worker")
def task_status(task_id, status, details, worker):
    """Report a task's status."""
    parsed = None
    if details:
        try:
            parsed = json.loads(details)
        except json.JSONDecodeError as e:
            _fail(f"--details is not valid JSON: {e}")
    with _session() as orch:
        task = orch.report_task_status(task_id, status, parsed, worker_id=worker)
        click.echo(f"Task {task.id}: {task.status}")
        click.echo(f"  Milestone progress: {orch.get_progress(task.milestone_id).percentage:.2f}%")


# ── Dependency Commands ───────────────────────────────────────────────────────


@main.group("dep")
def dep_group():
    """Manage dependencies between tasks or between milestones."""
    pass


@dep_group.command("add")
@click.argument("entity_id")
@click.argument("requires")
def dep_add(entity_id, requires):
    """Record that ENTITY_ID requires REQUIRES."""
    with _session() as orch:
        deps = orch.add_dependency(entity_id, requires)
        click.echo(f"{entity_id} now depends on: {', '.join(deps)}")


@dep_group.command("remove")
@click.argument("entity_id")
@click.argument("requires")
def dep_remove(entity_id, requires):
    """Remove a dependency."""
    with _session() as orch:
        deps = orch.remove_dependency(entity_id, requires)
        click.echo(f"{entity_id} now depends on: {', '.join(deps) or 'nothing'}")


@main.command("critical-path")
@click.option("--remaining", is_flag=True, help="Ignore effort already completed")
def critical_path(remaining):
    """Show the longest effort chain through the task graph."""
    with _session() as orch:
        path = orch.critical_path(remaining_only=remaining)
        if not path.nodes:
            click.echo("No tasks.")
            return
        click.echo(f"Critical path ({path.effort} effort):")
        for node_id in path.nodes:
            click.echo(f"  - {node_id}")


# ── Worker Commands ───────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Inspect workers."""
    pass


@worker_group.command("list")
@click.option("--status", default=None, type=click.Choice(WORKER_STATUSES), help="Filter by status")
def worker_list(status):
    """List registered workers."""
    with _session() as orch:
        workers = orch.list_workers(status)
        if not workers:
            click.echo("No workers registered.")
            return
        for w in workers:
            claim = f" -> {w.claimed_task_id}" if w.claimed_task_id else ""
            caps = f" [{', '.join(w.capabilities)}]" if w.capabilities else ""
            click.echo(f"  {w.id} ({w.status}){caps}{claim}  last heartbeat: {w.last_heartbeat}")


@worker_group.command("sweep")
def worker_sweep():
    """Run one heartbeat sweep now."""
    with _session() as orch:
        changed = orch.check_heartbeats()
        if not changed:
            click.echo("All workers healthy.")
            return
        for w in changed:
            click.echo(f"  {w.id}: {w.status}")


# ── Checkpoint Commands ───────────────────────────────────────────────────────


@main.group("checkpoint")
def checkpoint_group():
    """Create and inspect checkpoints."""
    pass


@checkpoint_group.command("create")
@click.option("--reason", default="manual", help="Why the checkpoint was taken")
def checkpoint_create(reason):
    """Snapshot current state."""
    with _session() as orch:
        cp = orch.checkpoint(reason)
        click.echo(f"Checkpoint {cp.id} at event {cp.event_seq} ({cp.record_count} records)")


@checkpoint_group.command("list")
def checkpoint_list():
    """List retained checkpoints."""
    with _session() as orch:
        checkpoints = orch.list_checkpoints()
        if not checkpoints:
            click.echo("No checkpoints.")
            return
        for cp in checkpoints:
            click.echo(f"  {cp.id}: event {cp.event_seq}, {cp.record_count} records, {cp.created_at} ({cp.reason})")


@main.command("resume")
@click.argument("checkpoint_id", required=False, type=int)
def resume(checkpoint_id):
    """Restore a checkpoint (latest by default) and replay later events."""
    with _session() as orch:
        replayed = orch.resume(checkpoint_id)
        click.echo(f"Resumed; replayed {replayed} events")


# ── Storage Commands ──────────────────────────────────────────────────────────


@main.group("storage")
def storage_group():
    """Inspect and migrate the storage tier."""
    pass


@storage_group.command("status")
def storage_status():
    """Show the active tier and record counts."""
    with _session() as orch:
        status = orch.storage_status()
        click.echo(f"Tier: {status['tier']}")
        click.echo(f"  Location: {status['root']}")
        click.echo(f"  Active milestones: {status['active_milestones']}")
        t = status["thresholds"]
        click.echo(f"  Thresholds: hybrid at {t['hybrid']}, database at {t['database']}")
        for kind, n in sorted(status["counts"].items()):
            click.echo(f"  {kind}: {n}")


@storage_group.command("migrate")
@click.argument("tier", type=click.Choice(TIERS))
def storage_migrate(tier):
    """Migrate storage to another tier (including downgrades)."""
    with _session() as orch:
        result = orch.migrate(tier)
        if not result.success:
            _fail(f"Migration {result.source_tier} -> {result.target_tier} rolled back: {result.reason}")
        click.echo(f"Migrated {result.record_count} records {result.source_tier} -> {result.target_tier}")


# ── Events Command ────────────────────────────────────────────────────────────


@main.command("events")
@click.option("--entity", default=None, help="Only events for this entity")
@click.option("--after", default=0, type=int, help="Only events after this sequence number")
@click.option("--type", "event_type", default=None, help="Only events of this type")
@click.option("--failed", is_flag=True, help="Show failed attempts instead")
def events(entity, after, event_type, failed):
    """Show the event log."""
    with _session() as orch:
        if failed:
            for a in orch.failed_attempts():
                click.echo(f"  #{a.seq} [{a.timestamp}] {a.operation} {a.entity_id or '-'}: {a.error}: {a.message}")
            return
        for e in orch.events(entity_id=entity, after_seq=after, event_type=event_type):
            click.echo(f"  #{e.seq} [{e.timestamp}] {e.event_type} {e.entity_id}")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API."""
    from milestone_orchestrator.web.app import run_server

    click.echo(f"Serving milestone orchestrator at http://{host}:{port}")
    run_server(ctx.obj["config"], host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
@click.pass_context
def mcp_serve(ctx):
    """Start the MCP server (stdio transport)."""
    from milestone_orchestrator.mcp.server import run

    run(ctx.obj["config"], transport="stdio")


if __name__ == "__main__":
    main()
