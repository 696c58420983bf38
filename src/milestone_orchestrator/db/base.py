"""Storage backend contract shared by the flat, hybrid and database tiers."""

from __future__ import annotations

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from pathlib import Path

from milestone_orchestrator.core.locking import KeyedLock
from milestone_orchestrator.db.models import SCHEMA_VERSION
from milestone_orchestrator.errors import NotFound


def encode_record(record: dict) -> str:
    """Canonical JSON encoding; identical records always encode identically."""
    return json.dumps(record, sort_keys=True, separators=(",", ":"))


def records_checksum(records: Iterable[dict]) -> str:
    """Order-independent sha256 over a set of records."""
    digest = hashlib.sha256()
    for encoded in sorted(encode_record(r) for r in records):
        digest.update(encoded.encode())
        digest.update(b"\n")
    return digest.hexdigest()


def matches(record: dict, filters: dict) -> bool:
    return all(record.get(k) == v for k, v in filters.items())


def _check_record(record: dict):
    if not record.get("kind") or not record.get("id"):
        raise ValueError("Record must carry 'kind' and 'id'")


class StorageBackend(ABC):
    """CRUD over records keyed by ``(kind, id)``.

    Writes to one entity are atomic and serialized through a per-entity
    lock; ``update`` is read-modify-write under that lock, so the last
    writer wins without losing fields it did not touch.
    """

    tier: str = ""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks = KeyedLock()
        # Guards operations that span entities (put_many, clear)
        self._bulk = threading.RLock()

    # ── Contract ────────────────────────────────────────────────────────

    def current_tier(self) -> str:
        return self.tier

    def create(self, record: dict) -> str:
        _check_record(record)
        record = {"schema_version": SCHEMA_VERSION, **record}
        kind, entity_id = record["kind"], record["id"]
        with self._locks.hold(f"{kind}:{entity_id}"):
            if self._load(kind, entity_id) is not None:
                raise ValueError(f"{kind} {entity_id} already exists")
            self._store(record)
        return entity_id

    def read(self, kind: str, entity_id: str) -> dict:
        record = self._load(kind, entity_id)
        if record is None:
            raise NotFound(kind, entity_id)
        return record

    def update(self, kind: str, entity_id: str, patch: dict) -> dict:
        if patch.get("kind", kind) != kind or patch.get("id", entity_id) != entity_id:
            raise ValueError("An update cannot change a record's kind or id")
        with self._locks.hold(f"{kind}:{entity_id}"):
            current = self._load(kind, entity_id)
            if current is None:
                raise NotFound(kind, entity_id)
            updated = {**current, **patch}
            self._store(updated)
        return updated

    def delete(self, kind: str, entity_id: str) -> None:
        with self._locks.hold(f"{kind}:{entity_id}"):
            if not self._remove(kind, entity_id):
                raise NotFound(kind, entity_id)

    def put(self, record: dict) -> None:
        """Insert or replace a whole record."""
        _check_record(record)
        record = {"schema_version": SCHEMA_VERSION, **record}
        with self._locks.hold(f"{record['kind']}:{record['id']}"):
            self._store(record)

    def exists(self, kind: str, entity_id: str) -> bool:
        return self._load(kind, entity_id) is not None

    def count(self, kind: str, **filters) -> int:
        return len(self.list(kind, **filters))

    def checksum(self) -> str:
        return records_checksum(self.records())

    def counts(self) -> dict[str, int]:
        """Number of records per kind."""
        result: dict[str, int] = {}
        for kind in self.kinds():
            result[kind] = len(self.list(kind))
        return result

    def records(self) -> Iterator[dict]:
        for kind in self.kinds():
            yield from self.list(kind)

    def close(self):
        pass

    @abstractmethod
    def list(self, kind: str, **filters) -> list[dict]:
        """Records of a kind matching equality filters, ordered by id."""

    @abstractmethod
    def kinds(self) -> list[str]:
        """Record kinds currently present."""

    @abstractmethod
    def put_many(self, records: Iterable[dict]) -> int:
        """Write many records as one logical transaction. Returns the count."""

    @abstractmethod
    def clear(self, kinds: Iterable[str] | None = None) -> None:
        """Remove every record (or every record of the given kinds)."""

    @abstractmethod
    def _load(self, kind: str, entity_id: str) -> dict | None: ...

    @abstractmethod
    def _store(self, record: dict) -> None: ...

    @abstractmethod
    def _remove(self, kind: str, entity_id: str) -> bool: ...
