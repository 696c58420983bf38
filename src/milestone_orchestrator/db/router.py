"""Active-backend routing, the write-quiesce gate, and the tier pointer file."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from milestone_orchestrator.db.base import StorageBackend
from milestone_orchestrator.db.database import DatabaseBackend
from milestone_orchestrator.db.flat import FlatFileBackend, write_atomic
from milestone_orchestrator.db.hybrid import HybridBackend
from milestone_orchestrator.errors import MigrationInProgress

logger = logging.getLogger(__name__)

TIER_CLASSES: dict[str, type[StorageBackend]] = {
    "flat": FlatFileBackend,
    "hybrid": HybridBackend,
    "database": DatabaseBackend,
}

POINTER_FILE = "active.json"


def open_backend(tier: str, root: Path) -> StorageBackend:
    try:
        cls = TIER_CLASSES[tier]
    except KeyError:
        raise ValueError(f"Unknown storage tier: {tier}") from None
    return cls(root)


def read_pointer(data_dir: Path) -> dict | None:
    path = Path(data_dir) / POINTER_FILE
    if not path.exists():
        return None
    return json.loads(path.read_text())


def write_pointer(data_dir: Path, tier: str, root: Path):
    """Atomically point the data directory at a tier location."""
    data_dir = Path(data_dir)
    pointer = {
        "tier": tier,
        "path": str(Path(root).relative_to(data_dir)),
        "activated_at": datetime.now().isoformat(),
    }
    write_atomic(data_dir / POINTER_FILE, json.dumps(pointer, indent=2))


def tier_location(data_dir: Path, tier: str, label: str) -> Path:
    return Path(data_dir) / "tiers" / f"{tier}-{label}"


class StorageRouter:
    """Stands in front of the active tier and owns the write-quiesce gate.

    Writers wrap mutations in ``writing()``. ``quiesce()`` rejects new
    writers with ``MigrationInProgress`` (or a subclass), waits for
    in-flight ones to drain, and holds the gate until the block exits.
    Log appends made while quiesced are queued and flushed to whichever
    backend is active when the gate reopens.
    """

    def __init__(self, backend: StorageBackend, data_dir: Path):
        self._backend = backend
        self.data_dir = Path(data_dir)
        self._cond = threading.Condition()
        self._writers: dict[int, int] = {}
        self._quiesce_error: MigrationInProgress | None = None
        self._owner: int | None = None
        self._pending: list[dict] = []

    @classmethod
    def open(cls, data_dir: Path) -> "StorageRouter":
        """Open the tier recorded in the pointer file, or start a flat tier."""
        data_dir = Path(data_dir)
        pointer = read_pointer(data_dir)
        if pointer:
            backend = open_backend(pointer["tier"], data_dir / pointer["path"])
        else:
            root = tier_location(data_dir, "flat", "initial")
            backend = open_backend("flat", root)
            write_pointer(data_dir, "flat", root)
        logger.info("Storage opened on %s tier at %s", backend.tier, backend.root)
        return cls(backend, data_dir)

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    def current_tier(self) -> str:
        return self._backend.current_tier()

    @property
    def is_quiesced(self) -> bool:
        return self._quiesce_error is not None

    # ── Write gate ──────────────────────────────────────────────────────

    def _is_writer(self) -> bool:
        ident = threading.get_ident()
        return ident in self._writers or ident == self._owner

    def _rejection(self) -> MigrationInProgress:
        err = self._quiesce_error
        return type(err)(str(err), err.retry_after)

    def _enter(self):
        ident = threading.get_ident()
        self._writers[ident] = self._writers.get(ident, 0) + 1

    def _exit(self):
        with self._cond:
            ident = threading.get_ident()
            self._writers[ident] -= 1
            if not self._writers[ident]:
                del self._writers[ident]
            self._cond.notify_all()

    @contextmanager
    def writing(self):
        """Admit one mutation, or fail fast while writes are quiesced."""
        with self._cond:
            if self._quiesce_error is not None and not self._is_writer():
                raise self._rejection()
            self._enter()
        try:
            yield self
        finally:
            self._exit()

    @contextmanager
    def quiesce(self, error: MigrationInProgress, drain_timeout: float = 30.0):
        with self._cond:
            if self._quiesce_error is not None:
                raise self._rejection()
            if self._is_writer():
                raise RuntimeError("Cannot quiesce storage from inside a write")
            self._quiesce_error = error
            self._owner = threading.get_ident()
            drained = self._cond.wait_for(lambda: not self._writers, timeout=drain_timeout)
            if not drained:
                self._quiesce_error = None
                self._owner = None
                self._cond.notify_all()
                raise error
        try:
            yield self
        finally:
            self._reopen()

    def _reopen(self):
        while True:
            with self._cond:
                batch, self._pending = self._pending, []
                if not batch:
                    self._quiesce_error = None
                    self._owner = None
                    self._cond.notify_all()
                    return
            self._backend.put_many(batch)
            logger.info("Flushed %d queued log records to %s tier", len(batch), self.current_tier())

    def pending(self, kind: str) -> list[dict]:
        with self._cond:
            return [r for r in self._pending if r["kind"] == kind]

    def swap(self, backend: StorageBackend) -> StorageBackend:
        """Point at a new backend. Only the quiescing thread may swap."""
        if self._owner != threading.get_ident():
            raise RuntimeError("Backend swap requires quiesced storage")
        write_pointer(self.data_dir, backend.tier, backend.root)
        old, self._backend = self._backend, backend
        return old

    # ── Delegation ──────────────────────────────────────────────────────

    def create(self, record: dict) -> str:
        with self.writing():
            return self._backend.create(record)

    def update(self, kind: str, entity_id: str, patch: dict) -> dict:
        with self.writing():
            return self._backend.update(kind, entity_id, patch)

    def delete(self, kind: str, entity_id: str) -> None:
        with self.writing():
            self._backend.delete(kind, entity_id)

    def put(self, record: dict) -> None:
        with self.writing():
            self._backend.put(record)

    def append_log(self, record: dict) -> bool:
        """Persist a log record, or queue it while writes are quiesced.

        Returns False when the record was queued.
        """
        with self._cond:
            if self._quiesce_error is not None and not self._is_writer():
                self._pending.append(record)
                return False
            self._enter()
        try:
            self._backend.put(record)
        finally:
            self._exit()
        return True

    def read(self, kind: str, entity_id: str) -> dict:
        return self._backend.read(kind, entity_id)

    def exists(self, kind: str, entity_id: str) -> bool:
        return self._backend.exists(kind, entity_id)

    def list(self, kind: str, **filters) -> list[dict]:
        return self._backend.list(kind, **filters)

    def count(self, kind: str, **filters) -> int:
        return self._backend.count(kind, **filters)

    def close(self):
        self._backend.close()
