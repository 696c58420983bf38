"""Checkpoint snapshots and crash resume.

A checkpoint is the full set of state records (milestones, tasks,
workers) plus the event sequence number it was taken at. Restoring puts
the snapshot back and replays every later event's post-images, so the
result equals applying those events to the snapshot directly.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from milestone_orchestrator.core.events import EventLog
from milestone_orchestrator.db.flat import write_atomic
from milestone_orchestrator.db.models import STATE_KINDS, Checkpoint
from milestone_orchestrator.db.router import StorageRouter
from milestone_orchestrator.errors import CheckpointNotFound, MigrationInProgress, RestoreInProgress

logger = logging.getLogger(__name__)

_FILE = re.compile(r"^checkpoint-(\d+)\.json$")


class CheckpointManager:
    def __init__(self, router: StorageRouter, events: EventLog, retention: int = 10, clock=datetime.now):
        self.router = router
        self.events = events
        self.retention = retention
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self.router.data_dir / "checkpoints"

    def _path(self, checkpoint_id: int) -> Path:
        return self.directory / f"checkpoint-{checkpoint_id:06d}.json"

    def _ids(self) -> list[int]:
        if not self.directory.is_dir():
            return []
        ids = []
        for path in self.directory.iterdir():
            m = _FILE.match(path.name)
            if m:
                ids.append(int(m.group(1)))
        return sorted(ids)

    def checkpoint(self, reason: str = "") -> Checkpoint:
        """Snapshot current state; writes are briefly drained for consistency."""
        with self.router.quiesce(MigrationInProgress("Checkpoint in progress")):
            records = [r for kind in STATE_KINDS for r in self.router.list(kind)]
            event_seq = self.events.last_seq
        ids = self._ids()
        cp = Checkpoint(
            id=(ids[-1] + 1) if ids else 1,
            event_seq=event_seq,
            reason=reason,
            created_at=self._clock(),
            record_count=len(records),
            records=records,
        )
        write_atomic(self._path(cp.id), json.dumps({
            "id": cp.id,
            "event_seq": cp.event_seq,
            "reason": cp.reason,
            "created_at": cp.created_at.isoformat(),
            "record_count": cp.record_count,
            "records": cp.records,
        }))
        logger.info("Checkpoint %d written at event %d (%d records)", cp.id, cp.event_seq, cp.record_count)
        self.prune()
        return cp

    def load(self, checkpoint_id: int) -> Checkpoint:
        path = self._path(checkpoint_id)
        if not path.exists():
            raise CheckpointNotFound(checkpoint_id)
        data = json.loads(path.read_text())
        return Checkpoint(
            id=data["id"],
            event_seq=data["event_seq"],
            reason=data.get("reason", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            record_count=data.get("record_count", len(data["records"])),
            records=data["records"],
        )

    def list(self) -> list[Checkpoint]:
        """Checkpoint metadata, oldest first (records are not included)."""
        result = []
        for checkpoint_id in self._ids():
            cp = self.load(checkpoint_id)
            cp.records = []
            result.append(cp)
        return result

    def latest(self) -> Checkpoint | None:
        ids = self._ids()
        return self.load(ids[-1]) if ids else None

    def prune(self) -> list[int]:
        ids = self._ids()
        removed = ids[: max(0, len(ids) - self.retention)]
        for checkpoint_id in removed:
            self._path(checkpoint_id).unlink(missing_ok=True)
        if removed:
            logger.debug("Pruned checkpoints %s", removed)
        return removed

    def restore(self, checkpoint_id: int) -> int:
        """Replace live state with the snapshot and replay later events.

        Returns the number of events replayed.
        """
        cp = self.load(checkpoint_id)
        with self.router.quiesce(RestoreInProgress(f"Restoring checkpoint {checkpoint_id}")):
            backend = self.router.backend
            backend.clear(STATE_KINDS)
            backend.put_many(cp.records)
            replayed = self.events.replay(backend, cp.event_seq)
        logger.info("Restored checkpoint %d and replayed %d events", checkpoint_id, replayed)
        return replayed
