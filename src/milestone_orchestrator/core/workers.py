"""Worker registry, heartbeat tracking and the background heartbeat monitor."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from milestone_orchestrator.config import Config
from milestone_orchestrator.core.events import EventLog
from milestone_orchestrator.core.locking import KeyedLock
from milestone_orchestrator.db.models import WORKER_STATUSES, Worker
from milestone_orchestrator.errors import MigrationInProgress, NotFound, UnknownWorker

logger = logging.getLogger(__name__)


class Coordinator:
    """Tracks registered workers and their liveness.

    A worker that misses heartbeats for ``heartbeat_timeout_seconds`` is
    stalled; after a further ``disconnect_grace_seconds`` it is
    disconnected and ``worker.disconnected`` is appended exactly once.
    Releasing the disconnected worker's task is left to whoever
    subscribes to that event.
    """

    def __init__(
        self,
        store,
        events: EventLog,
        config: Config,
        clock: Callable[[], datetime] = datetime.now,
        locks: KeyedLock | None = None,
    ):
        self._store = store
        self._events = events
        self._config = config
        self._clock = clock
        self._locks = locks or KeyedLock()

    # ── Registry ────────────────────────────────────────────────────────

    def register(self, capabilities: list[str] | None = None, worker_id: str | None = None) -> Worker:
        now = self._clock()
        worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        with self._locks.hold(f"worker:{worker_id}"):
            if self._store.exists("worker", worker_id):
                existing = Worker.from_record(self._store.read("worker", worker_id))
                if existing.status != "disconnected":
                    raise ValueError(f"Worker {worker_id} is already registered")
            worker = Worker(
                id=worker_id,
                capabilities=sorted(set(capabilities or [])),
                registered_at=now,
                last_heartbeat=now,
            )
            self._events.commit("worker.registered", worker_id, [worker.to_record()],
                                {"capabilities": worker.capabilities})
        logger.info("Registered worker %s", worker_id)
        return worker

    def get(self, worker_id: str) -> Worker:
        try:
            return Worker.from_record(self._store.read("worker", worker_id))
        except NotFound:
            raise UnknownWorker(worker_id) from None

    def get_live(self, worker_id: str) -> Worker:
        """Like ``get`` but a disconnected worker counts as unknown."""
        worker = self.get(worker_id)
        if worker.status == "disconnected":
            raise UnknownWorker(worker_id, "disconnected; register again")
        return worker

    def list(self, status: str | None = None) -> list[Worker]:
        if status is not None and status not in WORKER_STATUSES:
            raise ValueError(f"Unknown worker status: {status}")
        filters = {"status": status} if status else {}
        return [Worker.from_record(r) for r in self._store.list("worker", **filters)]

    # ── Liveness ────────────────────────────────────────────────────────

    def heartbeat(self, worker_id: str) -> Worker:
        """Record a heartbeat. A stalled worker recovers; a disconnected one is gone."""
        now = self._clock()
        with self._locks.hold(f"worker:{worker_id}"):
            worker = self.get_live(worker_id)
            worker.last_heartbeat = now
            if worker.status == "stalled":
                worker.status = "active" if worker.claimed_task_id else "idle"
                worker.stalled_at = None
                self._events.commit("worker.recovered", worker_id, [worker.to_record()])
                logger.info("Worker %s recovered (%s)", worker_id, worker.status)
            else:
                self._store.put(worker.to_record())
        return worker

    def check_heartbeats(self, now: datetime | None = None) -> list[Worker]:
        """Stall or disconnect workers whose heartbeats lapsed.

        Both deadlines count from the last heartbeat, so one sweep may
        stall and disconnect the same worker. Returns the workers changed.
        """
        now = now or self._clock()
        timeout = timedelta(seconds=self._config.heartbeat_timeout_seconds)
        grace = timedelta(seconds=self._config.disconnect_grace_seconds)
        changed = []
        disconnects = []
        for candidate in self._store.list("worker"):
            if candidate["status"] == "disconnected":
                continue
            worker_id = candidate["id"]
            with self._locks.hold(f"worker:{worker_id}"):
                worker = self.get(worker_id)
                if worker.status == "disconnected" or worker.last_heartbeat is None:
                    continue
                silent = now - worker.last_heartbeat
                if silent <= timeout:
                    continue
                if worker.status != "stalled":
                    worker.status = "stalled"
                    worker.stalled_at = now
                    self._events.commit("worker.stalled", worker_id, [worker.to_record()],
                                        {"silent_seconds": silent.total_seconds()})
                    logger.warning("Worker %s stalled (no heartbeat for %.0fs)",
                                   worker_id, silent.total_seconds())
                if silent > timeout + grace:
                    worker.status = "disconnected"
                    worker.disconnected_at = now
                    disconnects.append(self._events.commit(
                        "worker.disconnected", worker_id, [worker.to_record()],
                        {"claimed_task_id": worker.claimed_task_id}, notify=False,
                    ))
                    logger.warning("Worker %s disconnected (claimed task: %s)",
                                   worker_id, worker.claimed_task_id or "none")
                changed.append(worker)
        for event in disconnects:
            self._events.publish(event)
        return changed


class HeartbeatMonitor:
    """Background thread that periodically sweeps worker heartbeats."""

    def __init__(self, sweep: Callable[[], object], poll_interval: float = 15.0):
        self.sweep = sweep
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the monitor thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="heartbeat-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Heartbeat monitor started")

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Heartbeat monitor stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except MigrationInProgress:
                logger.debug("Heartbeat sweep skipped while storage is quiesced")
            except Exception:
                logger.exception("Error in heartbeat monitor loop")
            self._stop_event.wait(self.poll_interval)
