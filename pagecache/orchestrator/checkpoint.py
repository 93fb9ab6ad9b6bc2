"""Durable job checkpoints for resumable ingestion runs."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from pagecache.errors import CacheWriteError
from pagecache.orchestrator.jobs import Cursor, Job, JobStatus
from pagecache.storage.database import connect, init_schema

logger = structlog.get_logger(__name__)

_COLUMNS = (
    "job_id",
    "collection",
    "status",
    "cursor",
    "processed_count",
    "total_count",
    "started_at",
    "updated_at",
    "completed_at",
    "last_error",
    "artifact_path",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_row(job: Job) -> dict[str, object]:
    return {
        "job_id": job.job_id,
        "collection": job.collection,
        "status": job.status.value,
        "cursor": job.cursor,
        "processed_count": job.processed_count,
        "total_count": job.total_count,
        "started_at": _iso(job.started_at),
        "updated_at": _iso(job.updated_at),
        "completed_at": _iso(job.completed_at),
        "last_error": job.last_error,
        "artifact_path": job.artifact_path,
    }


def _from_row(row: sqlite3.Row) -> Job:
    return Job(
        job_id=row["job_id"],
        collection=row["collection"],
        status=JobStatus(row["status"]),
        cursor=Cursor(row["cursor"]) if row["cursor"] is not None else None,
        processed_count=int(row["processed_count"] or 0),
        total_count=row["total_count"],
        started_at=_parse(row["started_at"]),
        updated_at=_parse(row["updated_at"]),
        completed_at=_parse(row["completed_at"]),
        last_error=row["last_error"],
        artifact_path=row["artifact_path"],
    )


class CheckpointStore:
    """Persists job identity, status, counters and resume cursor in SQLite."""

    def __init__(self, path: Path) -> None:
        self._path = path
        init_schema(path)

    def create(self, job: Job) -> Job:
        """Insert a new job row."""
        placeholders = ", ".join(f":{name}" for name in _COLUMNS)
        with connect(self._path) as conn:
            conn.execute(f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})", _to_row(job))
        logger.info("job_created", job_id=job.job_id, collection=job.collection)
        return job

    def save(self, job: Job) -> None:
        """Persist every mutable field of the job."""
        assignments = ", ".join(f"{name} = :{name}" for name in _COLUMNS if name not in ("job_id", "collection"))
        try:
            with connect(self._path) as conn:
                updated = conn.execute(f"UPDATE jobs SET {assignments} WHERE job_id = :job_id", _to_row(job)).rowcount
        except sqlite3.Error as exc:
            raise CacheWriteError(f"failed to persist job {job.job_id}: {exc}") from exc
        if updated == 0:
            raise KeyError(job.job_id)

    def advance(self, job: Job) -> None:
        """Persist the cursor and processed counter of a committed page."""
        try:
            with connect(self._path) as conn:
                conn.execute(
                    """
                    UPDATE jobs
                    SET cursor = ?, processed_count = ?, updated_at = ?
                    WHERE job_id = ? AND processed_count <= ?
                    """,
                    (job.cursor, job.processed_count, _iso(job.updated_at), job.job_id, job.processed_count),
                )
        except sqlite3.Error as exc:
            raise CacheWriteError(f"failed to checkpoint job {job.job_id}: {exc}") from exc

    def get(self, job_id: str) -> Optional[Job]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _from_row(row) if row is not None else None

    def latest(self, collection: str) -> Optional[Job]:
        """Return the most recently started job of the collection."""
        jobs = self.history(collection, limit=1)
        return jobs[0] if jobs else None

    def latest_unfinished(self, collection: str) -> Optional[Job]:
        """Return the most recently started job of the collection that is not completed."""
        with connect(self._path) as conn:
            row = conn.execute(
                """
                SELECT * FROM jobs
                WHERE collection = ? AND status != ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT 1
                """,
                (collection, JobStatus.COMPLETED.value),
            ).fetchone()
        return _from_row(row) if row is not None else None

    def active(self, collection: Optional[str] = None) -> List[Job]:
        """Return pending or running jobs, optionally for one collection."""
        query = "SELECT * FROM jobs WHERE status IN (?, ?)"
        params: list[object] = [JobStatus.PENDING.value, JobStatus.RUNNING.value]
        if collection is not None:
            query += " AND collection = ?"
            params.append(collection)
        query += " ORDER BY started_at DESC, rowid DESC"
        with connect(self._path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_from_row(row) for row in rows]

    def history(self, collection: str, limit: int = 10) -> List[Job]:
        """Return jobs of the collection, newest first."""
        with connect(self._path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE collection = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (collection, limit),
            ).fetchall()
        return [_from_row(row) for row in rows]
