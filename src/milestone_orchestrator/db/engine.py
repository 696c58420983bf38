"""SQLite connection management and schema initialization."""

import sqlite3
from pathlib import Path

# Database tier: every record lives in one table, indexed on the fields
# the orchestrator filters by; the full record is kept as JSON.
RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    schema_version INTEGER NOT NULL DEFAULT 1,
    status TEXT,
    milestone_id TEXT,
    archived INTEGER,
    data TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (kind, id)
);

CREATE INDEX IF NOT EXISTS records_kind_status ON records(kind, status);
CREATE INDEX IF NOT EXISTS records_kind_milestone ON records(kind, milestone_id);
CREATE INDEX IF NOT EXISTS records_kind_archived ON records(kind, archived);
"""

# Hybrid tier: records stay as files; this index only accelerates filters.
INDEX_SCHEMA = """
CREATE TABLE IF NOT EXISTS record_index (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    status TEXT,
    milestone_id TEXT,
    archived INTEGER,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (kind, id)
);

CREATE INDEX IF NOT EXISTS record_index_kind_status ON record_index(kind, status);
CREATE INDEX IF NOT EXISTS record_index_kind_milestone ON record_index(kind, milestone_id);
CREATE INDEX IF NOT EXISTS record_index_kind_archived ON record_index(kind, archived);
"""

# Columns promoted out of the record body for indexed filtering
INDEXED_FIELDS = ("status", "milestone_id", "archived")


def init_db(db_path: Path, schema: str = RECORDS_SCHEMA) -> sqlite3.Connection:
    """Initialize a database file, creating tables if needed.

    The connection may be shared between threads; callers serialize access.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(schema)
    conn.commit()
    return conn


def index_values(record: dict) -> tuple:
    """Values of the indexed columns for a record, in ``INDEXED_FIELDS`` order."""
    archived = record.get("archived")
    return (
        record.get("status"),
        record.get("milestone_id"),
        None if archived is None else int(bool(archived)),
    )
