"""Database tier: every record in one SQLite file, fully indexed."""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Iterable
from pathlib import Path

from milestone_orchestrator.db.base import StorageBackend, encode_record
from milestone_orchestrator.db.engine import INDEXED_FIELDS, RECORDS_SCHEMA, index_values, init_db
from milestone_orchestrator.db.models import SCHEMA_VERSION

_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DatabaseBackend(StorageBackend):
    """Records stored in ``<root>/records.db``."""

    tier = "database"

    def __init__(self, root: Path):
        super().__init__(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._db = init_db(self.root / "records.db", RECORDS_SCHEMA)
        self._db_lock = threading.Lock()

    def _load(self, kind: str, entity_id: str) -> dict | None:
        with self._db_lock:
            row = self._db.execute(
                "SELECT data FROM records WHERE kind = ? AND id = ?", (kind, entity_id)
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data"])

    def _store(self, record: dict) -> None:
        with self._db_lock:
            with self._db:
                self._insert(record)

    def _insert(self, record: dict):
        self._db.execute(
            """INSERT OR REPLACE INTO records
               (kind, id, schema_version, status, milestone_id, archived, data, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, datetime('now'))""",
            (
                record["kind"],
                record["id"],
                record.get("schema_version", SCHEMA_VERSION),
                *index_values(record),
                encode_record(record),
            ),
        )

    def _remove(self, kind: str, entity_id: str) -> bool:
        with self._db_lock:
            with self._db:
                cur = self._db.execute(
                    "DELETE FROM records WHERE kind = ? AND id = ?", (kind, entity_id)
                )
        return cur.rowcount > 0

    def _where(self, kind: str, filters: dict) -> tuple[str, list]:
        clause = "kind = ?"
        params: list = [kind]
        for key, value in filters.items():
            if key in INDEXED_FIELDS:
                column = key
                if key == "archived" and value is not None:
                    value = int(bool(value))
            else:
                if not _FIELD.match(key):
                    raise ValueError(f"Invalid filter field: {key!r}")
                column = f"json_extract(data, '$.{key}')"
                if isinstance(value, bool):
                    value = int(value)
                elif isinstance(value, (list, dict)):
                    column = f"json(json_extract(data, '$.{key}'))"
                    value = json.dumps(value, separators=(",", ":"))
            if value is None:
                clause += f" AND {column} IS NULL"
            else:
                clause += f" AND {column} = ?"
                params.append(value)
        return clause, params

    def list(self, kind: str, **filters) -> list[dict]:
        clause, params = self._where(kind, filters)
        with self._db_lock:
            rows = self._db.execute(
                f"SELECT data FROM records WHERE {clause} ORDER BY id", params
            ).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def count(self, kind: str, **filters) -> int:
        clause, params = self._where(kind, filters)
        with self._db_lock:
            return self._db.execute(
                f"SELECT COUNT(*) FROM records WHERE {clause}", params
            ).fetchone()[0]

    def kinds(self) -> list[str]:
        with self._db_lock:
            rows = self._db.execute(
                "SELECT DISTINCT kind FROM records ORDER BY kind"
            ).fetchall()
        return [r["kind"] for r in rows]

    def counts(self) -> dict[str, int]:
        with self._db_lock:
            rows = self._db.execute(
                "SELECT kind, COUNT(*) AS n FROM records GROUP BY kind"
            ).fetchall()
        return {r["kind"]: r["n"] for r in rows}

    def put_many(self, records: Iterable[dict]) -> int:
        """Insert every record inside a single SQLite transaction."""
        n = 0
        with self._bulk, self._db_lock:
            with self._db:
                for record in records:
                    self._insert({"schema_version": SCHEMA_VERSION, **record})
                    n += 1
        return n

    def clear(self, kinds: Iterable[str] | None = None) -> None:
        with self._bulk, self._db_lock:
            with self._db:
                if kinds is None:
                    self._db.execute("DELETE FROM records")
                else:
                    self._db.executemany(
                        "DELETE FROM records WHERE kind = ?", [(k,) for k in kinds]
                    )

    def close(self):
        with self._db_lock:
            self._db.close()
