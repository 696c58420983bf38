"""Flat-file tier: one JSON file per entity, directory listing for queries."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from milestone_orchestrator.db.base import StorageBackend, encode_record, matches
from milestone_orchestrator.db.models import SCHEMA_VERSION


def write_atomic(path: Path, text: str):
    """Write via a temp file in the same directory and rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FlatFileBackend(StorageBackend):
    """Records stored as ``<root>/<kind>/<id>.json``."""

    tier = "flat"

    def __init__(self, root: Path):
        super().__init__(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, kind: str, entity_id: str) -> Path:
        if "/" in entity_id or entity_id.startswith("."):
            raise ValueError(f"Invalid record id: {entity_id!r}")
        return self.root / kind / f"{entity_id}.json"

    def _load(self, kind: str, entity_id: str) -> dict | None:
        path = self._path(kind, entity_id)
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            return None

    def _store(self, record: dict) -> None:
        write_atomic(self._path(record["kind"], record["id"]), encode_record(record))

    def _remove(self, kind: str, entity_id: str) -> bool:
        try:
            self._path(kind, entity_id).unlink()
            return True
        except FileNotFoundError:
            return False

    def _ids(self, kind: str) -> list[str]:
        kind_dir = self.root / kind
        if not kind_dir.is_dir():
            return []
        return sorted(p.stem for p in kind_dir.glob("*.json"))

    def list(self, kind: str, **filters) -> list[dict]:
        result = []
        for entity_id in self._ids(kind):
            record = self._load(kind, entity_id)
            # Removed between listing and reading
            if record is None:
                continue
            if matches(record, filters):
                result.append(record)
        return result

    def kinds(self) -> list[str]:
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def put_many(self, records: Iterable[dict]) -> int:
        """Stage every record in a scratch directory, then move them in.

        If staging fails nothing is visible in the tier.
        """
        with self._bulk:
            staging = Path(tempfile.mkdtemp(dir=self.root, prefix=".staging-"))
            try:
                staged = []
                prepared = []
                for record in records:
                    record = {"schema_version": SCHEMA_VERSION, **record}
                    prepared.append(record)
                    target = self._path(record["kind"], record["id"])
                    tmp = staging / f"{len(staged)}.json"
                    tmp.write_text(encode_record(record))
                    staged.append((tmp, target))
                for tmp, target in staged:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(tmp, target)
                self._after_put_many(prepared)
                return len(staged)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

    def _after_put_many(self, records: list[dict]):
        """Hook for tiers that keep secondary structures in sync."""

    def clear(self, kinds: Iterable[str] | None = None) -> None:
        with self._bulk:
            for kind in list(kinds) if kinds is not None else self.kinds():
                shutil.rmtree(self.root / kind, ignore_errors=True)
