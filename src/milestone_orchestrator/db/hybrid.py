"""Hybrid tier: flat-file records plus a single-file SQLite index."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from pathlib import Path

from milestone_orchestrator.db.base import matches
from milestone_orchestrator.db.engine import INDEX_SCHEMA, INDEXED_FIELDS, index_values, init_db
from milestone_orchestrator.db.flat import FlatFileBackend


class HybridBackend(FlatFileBackend):
    """Files stay authoritative; ``index.db`` answers filter queries.

    The file is written before the index row, so a crash between the two
    leaves a record the index can be rebuilt from (``reindex``).
    """

    tier = "hybrid"

    def __init__(self, root: Path):
        super().__init__(root)
        self._db = init_db(self.root / "index.db", INDEX_SCHEMA)
        self._db_lock = threading.Lock()

    def _store(self, record: dict) -> None:
        super()._store(record)
        with self._db_lock:
            self._db.execute(
                """INSERT OR REPLACE INTO record_index (kind, id, status, milestone_id, archived, updated_at)
                   VALUES (?, ?, ?, ?, ?, datetime('now'))""",
                (record["kind"], record["id"], *index_values(record)),
            )
            self._db.commit()

    def _remove(self, kind: str, entity_id: str) -> bool:
        removed = super()._remove(kind, entity_id)
        with self._db_lock:
            self._db.execute(
                "DELETE FROM record_index WHERE kind = ? AND id = ?", (kind, entity_id)
            )
            self._db.commit()
        return removed

    def list(self, kind: str, **filters) -> list[dict]:
        indexed = {k: v for k, v in filters.items() if k in INDEXED_FIELDS}
        rest = {k: v for k, v in filters.items() if k not in INDEXED_FIELDS}

        query = "SELECT id FROM record_index WHERE kind = ?"
        params: list = [kind]
        for column, value in indexed.items():
            if value is None:
                query += f" AND {column} IS NULL"
            else:
                query += f" AND {column} = ?"
                params.append(int(value) if column == "archived" else value)
        query += " ORDER BY id"

        with self._db_lock:
            ids = [r["id"] for r in self._db.execute(query, params).fetchall()]

        result = []
        for entity_id in ids:
            record = self._load(kind, entity_id)
            if record is not None and matches(record, rest):
                result.append(record)
        return result

    def count(self, kind: str, **filters) -> int:
        if any(k not in INDEXED_FIELDS for k in filters):
            return super().count(kind, **filters)
        query = "SELECT COUNT(*) FROM record_index WHERE kind = ?"
        params: list = [kind]
        for column, value in filters.items():
            if value is None:
                query += f" AND {column} IS NULL"
            else:
                query += f" AND {column} = ?"
                params.append(int(value) if column == "archived" else value)
        with self._db_lock:
            return self._db.execute(query, params).fetchone()[0]

    def _after_put_many(self, records: list[dict]):
        with self._db_lock:
            with self._db:
                self._db.executemany(
                    """INSERT OR REPLACE INTO record_index (kind, id, status, milestone_id, archived)
                       VALUES (?, ?, ?, ?, ?)""",
                    [(r["kind"], r["id"], *index_values(r)) for r in records],
                )

    def clear(self, kinds: Iterable[str] | None = None) -> None:
        kinds = list(kinds) if kinds is not None else self.kinds()
        super().clear(kinds)
        with self._db_lock:
            with self._db:
                self._db.executemany(
                    "DELETE FROM record_index WHERE kind = ?", [(k,) for k in kinds]
                )

    def reindex(self) -> int:
        """Rebuild the index from the record files."""
        records = [r for kind in self.kinds() for r in FlatFileBackend.list(self, kind)]
        with self._db_lock:
            with self._db:
                self._db.execute("DELETE FROM record_index")
        self._after_put_many(records)
        return len(records)

    def close(self):
        with self._db_lock:
            self._db.close()
