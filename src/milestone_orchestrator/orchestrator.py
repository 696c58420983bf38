"""The orchestration facade.

Hosts (the CLI, the HTTP app, the MCP server) construct one Orchestrator,
``init()`` it, use it, and ``shutdown()`` it. Every mutation goes through
the event log first (write-ahead) and then into storage; every rejected
operation is recorded as a failed attempt.
"""

from __future__ import annotations

import functools
import logging
import time
import uuid
from datetime import datetime

from milestone_orchestrator.config import Config
from milestone_orchestrator.core import milestones as machine
from milestone_orchestrator.core import progress
from milestone_orchestrator.core.checkpoints import CheckpointManager
from milestone_orchestrator.core.events import EventLog
from milestone_orchestrator.core.graph import CriticalPath, DependencyGraph
from milestone_orchestrator.core.locking import KeyedLock
from milestone_orchestrator.core.migration import MigrationEngine, MigrationResult
from milestone_orchestrator.core.scale import ScaleDetector
from milestone_orchestrator.core.workers import Coordinator, HeartbeatMonitor
from milestone_orchestrator.db.models import (
    PHASES,
    ApprovalGate,
    Checkpoint,
    Event,
    FailedAttempt,
    Milestone,
    Task,
    Worker,
)
from milestone_orchestrator.db.router import StorageRouter
from milestone_orchestrator.errors import (
    CycleError,
    InvalidTransition,
    NoWorkAvailable,
    NotFound,
    OrchestratorError,
    UnknownWorker,
)

logger = logging.getLogger(__name__)


def audited(operation: str):
    """Record rejected calls of a facade method in the failed-attempt stream."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except (OrchestratorError, ValueError) as e:
                entity_id = args[0] if args and isinstance(args[0], str) else None
                self.event_log.record_failure(operation, entity_id, e)
                raise
        return wrapper
    return decorator


class Orchestrator:
    def __init__(self, config: Config | None = None, clock=None, session_id: str | None = None):
        self.config = config or Config()
        self.config.validate()
        self.clock = clock or datetime.now
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.store: StorageRouter | None = None
        self.event_log: EventLog | None = None
        self.coordinator: Coordinator | None = None
        self.checkpoints: CheckpointManager | None = None
        self.migrations: MigrationEngine | None = None
        self.scale = ScaleDetector(self.config)
        self.monitor: HeartbeatMonitor | None = None
        self.locks = KeyedLock()
        self.task_graph = DependencyGraph()
        self.milestone_graph = DependencyGraph()

    # ── Lifecycle ───────────────────────────────────────────────────────

    def init(self, start_monitor: bool = False) -> Orchestrator:
        if self.store is not None:
            return self
        data_dir = self.config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        self.store = StorageRouter.open(data_dir)
        self.event_log = EventLog(self.store, self.session_id, self.clock)
        self.coordinator = Coordinator(self.store, self.event_log, self.config, self.clock, self.locks)
        self.checkpoints = CheckpointManager(
            self.store, self.event_log, self.config.checkpoint_retention_count, self.clock
        )
        self.migrations = MigrationEngine(self.store, self.event_log, self.clock)
        self.monitor = HeartbeatMonitor(self.coordinator.check_heartbeats, self.config.heartbeat_poll_seconds)
        self.event_log.subscribe("worker.disconnected", self._on_worker_disconnected)
        self._rebuild_graphs()
        if start_monitor:
            self.monitor.start()
        logger.info(
            "Orchestrator session %s started on %s tier (%s)",
            self.session_id, self.current_tier(), data_dir,
        )
        return self

    def shutdown(self):
        if self.store is None:
            return
        if self.monitor and self.monitor.running:
            self.monitor.stop()
        self.store.close()
        self.store = None
        logger.info("Orchestrator session %s shut down", self.session_id)

    def __enter__(self) -> Orchestrator:
        return self.init()

    def __exit__(self, *exc):
        self.shutdown()

    # ── Internal helpers ────────────────────────────────────────────────

    def _rebuild_graphs(self):
        tasks = self.store.list("task")
        milestones_ = self.store.list("milestone")
        self.task_graph = DependencyGraph()
        self.milestone_graph = DependencyGraph()
        for rec in tasks:
            self.task_graph.add_node(rec["id"], rec.get("effort", 1.0), rec["status"])
        for rec in milestones_:
            self.milestone_graph.add_node(rec["id"], 0.0, rec["status"], kind="milestone")
        for graph, records in ((self.task_graph, tasks), (self.milestone_graph, milestones_)):
            for rec in records:
                for dep in rec.get("depends_on", []):
                    try:
                        graph.add_edge(rec["id"], dep)
                    except (KeyError, CycleError) as e:
                        logger.warning("Skipping stored dependency %s -> %s: %s", rec["id"], dep, e)

    def _milestone(self, milestone_id: str) -> Milestone:
        return Milestone.from_record(self.store.read("milestone", milestone_id))

    def _task(self, task_id: str) -> Task:
        return Task.from_record(self.store.read("task", task_id))

    def _tasks_of(self, milestone_id: str) -> list[Task]:
        return [Task.from_record(r) for r in self.store.list("task", milestone_id=milestone_id)]

    def _dependency_status(self, task_id: str) -> str:
        if task_id in self.task_graph:
            return self.task_graph.node(task_id).status
        return self._task(task_id).status

    def _sync(self, milestone: Milestone, *tasks: Task):
        self.milestone_graph.set_status(milestone.id, milestone.status)
        for task in tasks:
            self.task_graph.set_status(task.id, task.status)

    def _load_with(self, milestone: Milestone, task: Task) -> list[Task]:
        """Every task of ``milestone``, with ``task`` swapped in for its stored copy."""
        return [task if t.id == task.id else t for t in self._tasks_of(milestone.id)]

    def _after_mutation(self):
        """Sample scale and migrate if the active tier is outgrown."""
        if not self.config.auto_migrate:
            return
        started = time.perf_counter()
        active = self.store.count("milestone", archived=False)
        latency_ms = (time.perf_counter() - started) * 1000
        target = self.scale.sample(self.current_tier(), active, latency_ms)
        if target:
            self.migrate(target)

    # ── Milestones and phases ───────────────────────────────────────────

    @audited("create_milestone")
    def create_milestone(
        self,
        title: str,
        description: str = "",
        task_specs: list[dict] | None = None,
        depends_on: list[str] | None = None,
        gates: dict[str, list[str]] | None = None,
    ) -> Milestone:
        """Create a milestone with its four phases and initial tasks.

        ``gates`` maps phase names to the approvers that must sign off
        before that phase can complete.
        """
        title = (title or "").strip()
        if not title:
            raise ValueError("Milestone title is required")
        for phase_name in gates or {}:
            if phase_name not in PHASES:
                raise ValueError(f"Unknown phase: {phase_name}")
        for dep in depends_on or []:
            if not self.store.exists("milestone", dep):
                raise NotFound("milestone", dep)

        now = self.clock()
        with self.locks.hold("milestone-ids"):
            milestone_id = machine.unique_id(
                machine.slugify(title), lambda c: self.store.exists("milestone", c)
            )
            tasks = machine.build_tasks(
                milestone_id, task_specs or [], lambda t: self.store.exists("task", t), now
            )
            milestone = Milestone(
                id=milestone_id,
                title=title,
                description=description,
                task_ids=[t.id for t in tasks],
                depends_on=list(dict.fromkeys(depends_on or [])),
                created_at=now,
                updated_at=now,
            )
            for phase_name, approvers in (gates or {}).items():
                milestone.phase(phase_name).gate = ApprovalGate(required=list(approvers))

            # Nodes go in before the commit so every stored id is in the graph
            added: list[str] = []
            try:
                for task in tasks:
                    self.task_graph.add_node(task.id, task.effort, task.status, requires=task.depends_on)
                    added.append(task.id)
                self.milestone_graph.add_node(
                    milestone_id, 0.0, milestone.status, kind="milestone", requires=milestone.depends_on
                )
                self.event_log.commit(
                    "milestone.created",
                    milestone_id,
                    [milestone.to_record()] + [t.to_record() for t in tasks],
                    {"title": title, "task_count": len(tasks)},
                )
            except Exception:
                for task_id in added:
                    self.task_graph.remove_node(task_id)
                self.milestone_graph.remove_node(milestone_id)
                raise
        logger.info("Created milestone %s with %d tasks", milestone_id, len(tasks))
        self._after_mutation()
        return milestone

    def get_milestone(self, milestone_id: str) -> Milestone:
        return self._milestone(milestone_id)

    def list_milestones(self, status: str | None = None, include_archived: bool = False) -> list[Milestone]:
        filters = {}
        if status:
            filters["status"] = status
        if not include_archived and status != "completed":
            filters["archived"] = False
        records = self.store.list("milestone", **filters)
        return sorted((Milestone.from_record(r) for r in records), key=lambda m: (m.created_at or datetime.min, m.id))

    @audited("add_task")
    def add_task(self, milestone_id: str, spec: dict) -> Task:
        with self.locks.hold(f"milestone:{milestone_id}"):
            milestone = self._milestone(milestone_id)
            if milestone.archived:
                raise InvalidTransition(f"Milestone {milestone_id} is completed and archived")
            phase_name = spec.get("phase", "execute")
            if phase_name in PHASES and milestone.phase(phase_name).status == "completed":
                raise InvalidTransition(f"Phase '{phase_name}' of {milestone_id} is already completed")
            now = self.clock()
            (task,) = machine.build_tasks(
                milestone_id, [spec], lambda t: self.store.exists("task", t), now
            )
            milestone.task_ids.append(task.id)
            milestone.updated_at = now
            self.task_graph.add_node(task.id, task.effort, task.status, requires=task.depends_on)
            try:
                self.event_log.commit(
                    "task.created", task.id, [milestone.to_record(), task.to_record()],
                    {"milestone_id": milestone_id, "title": task.title},
                )
            except Exception:
                self.task_graph.remove_node(task.id)
                raise
        self._after_mutation()
        return task

    @audited("transition_phase")
    def transition_phase(self, milestone_id: str, phase: str, new_status: str) -> Milestone:
        with self.locks.hold(f"milestone:{milestone_id}"):
            milestone = self._milestone(milestone_id)
            tasks = self._tasks_of(milestone_id)
            previous = milestone.phase(phase).status if phase in PHASES else None
            machine.transition_phase(milestone, phase, new_status, tasks, self.clock())
            self.event_log.commit(
                "phase.transitioned", milestone_id, [milestone.to_record()],
                {"phase": phase, "from": previous, "to": new_status, "milestone_status": milestone.status},
            )
            self._sync(milestone)
        logger.info("Milestone %s phase %s: %s -> %s", milestone_id, phase, previous, new_status)
        self._after_mutation()
        return milestone

    @audited("approve_phase")
    def approve_phase(self, milestone_id: str, phase: str, approver: str) -> Milestone:
        with self.locks.hold(f"milestone:{milestone_id}"):
            milestone = self._milestone(milestone_id)
            tasks = self._tasks_of(milestone_id)
            machine.approve_phase(milestone, phase, approver, tasks, self.clock())
            self.event_log.commit(
                "phase.approved", milestone_id, [milestone.to_record()],
                {"phase": phase, "approver": approver, "milestone_status": milestone.status},
            )
            self._sync(milestone)
        self._after_mutation()
        return milestone

    @audited("add_deliverable")
    def add_deliverable(self, milestone_id: str, phase: str, reference: str) -> Milestone:
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        with self.locks.hold(f"milestone:{milestone_id}"):
            milestone = self._milestone(milestone_id)
            deliverables = milestone.phase(phase).deliverables
            if reference not in deliverables:
                deliverables.append(reference)
                milestone.updated_at = self.clock()
                self.event_log.commit(
                    "phase.deliverable_added", milestone_id, [milestone.to_record()],
                    {"phase": phase, "reference": reference},
                )
        self._after_mutation()
        return milestone

    # ── Dependencies ────────────────────────────────────────────────────

    def _dependency_kind(self, frm: str, to: str) -> str:
        for kind in ("task", "milestone"):
            if self.store.exists(kind, frm):
                if not self.store.exists(kind, to):
                    raise NotFound(kind, to)
                return kind
        raise NotFound("task", frm)

    @audited("add_dependency")
    def add_dependency(self, frm: str, to: str) -> list[str]:
        """Record that ``frm`` requires ``to`` (two tasks or two milestones)."""
        kind = self._dependency_kind(frm, to)
        graph = self.task_graph if kind == "task" else self.milestone_graph
        with self.locks.hold(f"{kind}:{frm}"):
            record = self.store.read(kind, frm)
            if to in record.get("depends_on", []):
                return record["depends_on"]
            if kind == "task" and record["status"] in ("in_progress", "completed"):
                if self._dependency_status(to) != "completed":
                    raise InvalidTransition(
                        f"Task {frm} is already {record['status']}; it cannot wait on {to}"
                    )
            graph.add_edge(frm, to)
            record["depends_on"] = record.get("depends_on", []) + [to]
            record["updated_at"] = self.clock().isoformat()
            try:
                self.event_log.commit("dependency.added", frm, [record], {"kind": kind, "requires": to})
            except Exception:
                graph.remove_edge(frm, to)
                raise
        self._after_mutation()
        return record["depends_on"]

    @audited("remove_dependency")
    def remove_dependency(self, frm: str, to: str) -> list[str]:
        kind = self._dependency_kind(frm, to)
        graph = self.task_graph if kind == "task" else self.milestone_graph
        with self.locks.hold(f"{kind}:{frm}"):
            record = self.store.read(kind, frm)
            if to not in record.get("depends_on", []):
                raise NotFound("dependency", f"{frm} -> {to}")
            record["depends_on"] = [d for d in record["depends_on"] if d != to]
            record["updated_at"] = self.clock().isoformat()
            self.event_log.commit("dependency.removed", frm, [record], {"kind": kind, "requires": to})
            graph.remove_edge(frm, to)
        self._after_mutation()
        return record["depends_on"]

    def critical_path(self, remaining_only: bool = False) -> CriticalPath:
        return self.task_graph.critical_path(remaining_only=remaining_only)

    # ── Tasks ───────────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task:
        return self._task(task_id)

    def list_tasks(self, milestone_id: str | None = None, status: str | None = None) -> list[Task]:
        filters = {}
        if milestone_id:
            filters["milestone_id"] = milestone_id
        if status:
            filters["status"] = status
        return [Task.from_record(r) for r in self.store.list("task", **filters)]

    @audited("report_task_status")
    def report_task_status(
        self,
        task_id: str,
        status: str,
        details: dict | None = None,
        worker_id: str | None = None,
    ) -> Task:
        """Move a task to ``status``; a worker reports on the task it holds."""
        task = self._task(task_id)
        keys = [f"milestone:{task.milestone_id}", f"task:{task_id}"]
        if task.assignee:
            keys.append(f"worker:{task.assignee}")
        with self.locks.hold_all(*keys):
            task = self._task(task_id)
            milestone = self._milestone(task.milestone_id)
            if worker_id and task.assignee != worker_id:
                raise InvalidTransition(
                    f"Task {task_id} is not held by {worker_id} (assignee: {task.assignee or 'none'})"
                )
            machine.check_task_transition(task, status, milestone, self._dependency_status)
            previous, assignee = task.status, task.assignee
            if details is not None:
                task.details = details
            machine.apply_task_status(task, status, milestone, self._load_with(milestone, task), self.clock())
            records = [milestone.to_record(), task.to_record()]
            if assignee and task.assignee is None and self.store.exists("worker", assignee):
                worker = Worker.from_record(self.store.read("worker", assignee))
                if worker.claimed_task_id == task_id:
                    worker.claimed_task_id = None
                    if worker.status == "active":
                        worker.status = "idle"
                    records.append(worker.to_record())
            self.event_log.commit(
                "task.status_changed", task_id, records,
                {"from": previous, "to": status, "details": details, "milestone_status": milestone.status},
            )
            self._sync(milestone, task)
        logger.info("Task %s: %s -> %s", task_id, previous, status)
        self._after_mutation()
        return task

    # ── Workers ─────────────────────────────────────────────────────────

    @audited("register_worker")
    def register_worker(self, capabilities: list[str] | None = None, worker_id: str | None = None) -> Worker:
        worker = self.coordinator.register(capabilities, worker_id)
        self._after_mutation()
        return worker

    @audited("heartbeat")
    def heartbeat(self, worker_id: str) -> Worker:
        return self.coordinator.heartbeat(worker_id)

    def get_worker(self, worker_id: str) -> Worker:
        return self.coordinator.get(worker_id)

    def list_workers(self, status: str | None = None) -> list[Worker]:
        return self.coordinator.list(status)

    def _claimable(self, worker: Worker) -> list[Task]:
        """Pending ready tasks this worker may take, best first."""
        carried = set(worker.capabilities)
        milestones_: dict[str, Milestone] = {}
        candidates = []
        for task_id in self.task_graph.ready_nodes():
            if self.task_graph.node(task_id).status != "pending":
                continue
            try:
                task = self._task(task_id)
            except NotFound:
                # Added to the graph by a create that has not committed yet
                continue
            if not set(task.capabilities) <= carried:
                continue
            milestone = milestones_.get(task.milestone_id)
            if milestone is None:
                milestone = milestones_[task.milestone_id] = self._milestone(task.milestone_id)
            if milestone.archived or milestone.status == "blocked":
                continue
            if any(
                self.milestone_graph.node(d).status != "completed"
                for d in self.milestone_graph.dependencies(milestone.id)
            ):
                continue
            phase = milestone.phase(task.phase)
            if phase.status in ("blocked", "completed") or not machine.can_start(milestone, task.phase):
                continue
            candidates.append(task)
        candidates.sort(key=lambda t: (t.priority, PHASES.index(t.phase), t.created_at or datetime.min, t.id))
        return candidates

    @audited("claim_task")
    def claim_task(self, worker_id: str) -> Task:
        """Assign the best ready task to ``worker_id``.

        Raises NoWorkAvailable (with ``retry_after``) when nothing fits.
        """
        worker = self.coordinator.get_live(worker_id)
        if worker.claimed_task_id:
            raise InvalidTransition(f"Worker {worker_id} already holds task {worker.claimed_task_id}")

        for candidate in self._claimable(worker):
            with self.locks.hold_all(
                f"milestone:{candidate.milestone_id}", f"task:{candidate.id}", f"worker:{worker_id}"
            ):
                task = self._task(candidate.id)
                milestone = self._milestone(task.milestone_id)
                worker = self.coordinator.get_live(worker_id)
                if worker.claimed_task_id:
                    raise InvalidTransition(f"Worker {worker_id} already holds task {worker.claimed_task_id}")
                if task.status != "pending":
                    continue
                try:
                    machine.check_task_transition(task, "in_progress", milestone, self._dependency_status)
                except InvalidTransition:
                    continue
                now = self.clock()
                task.assignee = worker_id
                machine.apply_task_status(task, "in_progress", milestone, self._load_with(milestone, task), now)
                worker.status = "active"
                worker.claimed_task_id = task.id
                worker.last_heartbeat = now
                self.event_log.commit(
                    "task.claimed", task.id,
                    [milestone.to_record(), task.to_record(), worker.to_record()],
                    {"worker_id": worker_id},
                )
                self._sync(milestone, task)
            logger.info("Worker %s claimed task %s", worker_id, task.id)
            self._after_mutation()
            return task

        raise NoWorkAvailable(
            f"No ready task for worker {worker_id}", retry_after=self.config.no_work_retry_seconds
        )

    def _release(self, worker_id: str, task_id: str, reason: str) -> Task | None:
        """Return a claimed task to pending and free the worker."""
        try:
            task = self._task(task_id)
        except NotFound:
            return None
        with self.locks.hold_all(f"milestone:{task.milestone_id}", f"task:{task_id}", f"worker:{worker_id}"):
            task = self._task(task_id)
            milestone = self._milestone(task.milestone_id)
            records = []
            if task.status == "in_progress" and task.assignee == worker_id:
                machine.apply_task_status(task, "pending", milestone, self._load_with(milestone, task), self.clock())
                records += [milestone.to_record(), task.to_record()]
            if self.store.exists("worker", worker_id):
                worker = Worker.from_record(self.store.read("worker", worker_id))
                if worker.claimed_task_id == task_id:
                    worker.claimed_task_id = None
                    if worker.status == "active":
                        worker.status = "idle"
                    records.append(worker.to_record())
            if not records:
                return None
            self.event_log.commit("task.released", task_id, records, {"worker_id": worker_id, "reason": reason})
            self._sync(milestone, task)
        logger.info("Task %s released from worker %s (%s)", task_id, worker_id, reason)
        return task

    @audited("release_task")
    def release_task(self, worker_id: str) -> Task:
        worker = self.coordinator.get_live(worker_id)
        if not worker.claimed_task_id:
            raise InvalidTransition(f"Worker {worker_id} holds no task")
        task = self._release(worker_id, worker.claimed_task_id, "released by worker")
        self._after_mutation()
        return task or self._task(worker.claimed_task_id)

    def _on_worker_disconnected(self, event: Event):
        task_id = event.payload.get("claimed_task_id")
        if task_id:
            self._release(event.entity_id, task_id, "worker disconnected")

    def check_heartbeats(self, now: datetime | None = None) -> list[Worker]:
        """Sweep heartbeats, then release any claim a gone worker still holds."""
        changed = self.coordinator.check_heartbeats(now)
        for rec in self.store.list("task", status="in_progress"):
            assignee = rec.get("assignee")
            if not assignee:
                continue
            try:
                gone = self.coordinator.get(assignee).status == "disconnected"
            except UnknownWorker:
                gone = True
            if gone:
                self._release(assignee, rec["id"], "orphaned claim")
        return changed

    # ── Progress ────────────────────────────────────────────────────────

    def get_progress(self, milestone_id: str) -> progress.ProgressReport:
        milestone = self._milestone(milestone_id)
        return progress.calculate(milestone, self._tasks_of(milestone_id))

    def estimate_remaining(self, milestone_id: str) -> float:
        self._milestone(milestone_id)
        return progress.estimate_remaining(self._tasks_of(milestone_id))

    # ── Checkpoints ─────────────────────────────────────────────────────

    @audited("checkpoint")
    def checkpoint(self, reason: str = "manual") -> Checkpoint:
        cp = self.checkpoints.checkpoint(reason)
        self.event_log.append("checkpoint.created", str(cp.id), {"event_seq": cp.event_seq, "reason": reason})
        return cp

    def list_checkpoints(self) -> list[Checkpoint]:
        return self.checkpoints.list()

    @audited("resume")
    def resume(self, checkpoint_id: int | None = None) -> int:
        """Restore a checkpoint (the latest by default) and replay later events.

        Returns the number of events replayed.
        """
        if checkpoint_id is None:
            latest = self.checkpoints.latest()
            if latest is None:
                raise NotFound("checkpoint", "latest")
            checkpoint_id = latest.id
        replayed = self.checkpoints.restore(checkpoint_id)
        self._rebuild_graphs()
        self.event_log.append(
            "checkpoint.restored", str(checkpoint_id), {"replayed": replayed}
        )
        return replayed

    # ── Storage ─────────────────────────────────────────────────────────

    def current_tier(self) -> str:
        return self.store.current_tier()

    @audited("migrate")
    def migrate(self, tier: str) -> MigrationResult:
        """Move storage to ``tier`` behind a resumable pre-migration checkpoint."""
        self.migrations.check_target(tier)
        self.checkpoint(reason=f"pre-migration:{tier}")
        result = self.migrations.migrate(tier)
        self.scale.reset()
        return result

    def storage_status(self) -> dict:
        backend = self.store.backend
        return {
            "tier": backend.tier,
            "root": str(backend.root),
            "counts": backend.counts(),
            "active_milestones": self.store.count("milestone", archived=False),
            "thresholds": {
                "hybrid": self.config.tier_thresholds.hybrid,
                "database": self.config.tier_thresholds.database,
            },
        }

    # ── History ─────────────────────────────────────────────────────────

    def events(self, entity_id: str | None = None, after_seq: int = 0, event_type: str | None = None) -> list[Event]:
        return self.event_log.events(entity_id=entity_id, after_seq=after_seq, event_type=event_type)

    def failed_attempts(self, operation: str | None = None) -> list[FailedAttempt]:
        return self.event_log.attempts(operation)

    def summary(self) -> dict:
        milestones_ = self.store.list("milestone")
        by_status: dict[str, int] = {}
        for rec in milestones_:
            by_status[rec["status"]] = by_status.get(rec["status"], 0) + 1
        workers = self.coordinator.list()
        return {
            "session_id": self.session_id,
            "tier": self.current_tier(),
            "milestones": by_status,
            "tasks": self.store.count("task"),
            "workers": {
                "total": len(workers),
                "live": sum(1 for w in workers if w.status != "disconnected"),
            },
            "last_event_seq": self.event_log.last_seq,
        }
