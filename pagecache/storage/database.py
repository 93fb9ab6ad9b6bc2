"""SQLite connection management shared by the record cache and checkpoint store."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    external_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    source_timestamp TEXT,
    cached_at TEXT NOT NULL,
    PRIMARY KEY (collection, external_id)
);
CREATE INDEX IF NOT EXISTS idx_records_order ON records(collection, cached_at DESC, external_id);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    status TEXT NOT NULL,
    cursor TEXT,
    processed_count INTEGER NOT NULL DEFAULT 0,
    total_count INTEGER,
    started_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    last_error TEXT,
    artifact_path TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_collection ON jobs(collection, started_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""

BUSY_TIMEOUT_SECONDS = 30.0


@contextmanager
def connect(path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection, commit on success and roll back on error."""
    conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(path: Path) -> None:
    """Create the database file, switch it to WAL mode and ensure tables exist."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with connect(path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
