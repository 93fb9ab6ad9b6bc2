"""Definitions for ingestion jobs and their lifecycle."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NewType, Optional

from pagecache.errors import InvalidStateError, PageCacheError
from pagecache.util.time import utcnow

Cursor = NewType("Cursor", str)
"""Opaque continuation token handed out by the upstream API."""


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is JobStatus.COMPLETED

    @property
    def active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass
class Job:
    """One attempt, spanning any number of resumes, to ingest a collection."""

    job_id: str
    collection: str
    status: JobStatus = JobStatus.PENDING
    cursor: Optional[Cursor] = None
    processed_count: int = 0
    total_count: Optional[int] = None
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    artifact_path: Optional[str] = None

    @classmethod
    def create(cls, collection: str) -> "Job":
        """Build a fresh pending job with a generated identifier."""
        now = utcnow()
        return cls(
            job_id=f"job_{uuid.uuid4().hex}",
            collection=collection,
            started_at=now,
            updated_at=now,
        )

    @property
    def resumable(self) -> bool:
        """Return True when the job has a committed page and is not completed."""
        return self.status is not JobStatus.COMPLETED and self.cursor is not None

    def mark_running(self, *, allow_orphan: bool = False) -> None:
        """Transition the job into the running state."""
        allowed = {JobStatus.PENDING, JobStatus.FAILED}
        if allow_orphan:
            allowed.add(JobStatus.RUNNING)
        if self.status not in allowed:
            raise InvalidStateError(f"job {self.job_id} cannot run from status {self.status.value}")
        self.status = JobStatus.RUNNING
        self.last_error = None
        self.updated_at = utcnow()

    def advance(self, cursor: Optional[Cursor], added: int) -> None:
        """Record a committed page."""
        if self.status is not JobStatus.RUNNING:
            raise InvalidStateError(f"job {self.job_id} is not running")
        if added < 0:
            raise ValueError("processed_count cannot decrease")
        if cursor is not None:
            self.cursor = cursor
        self.processed_count += added
        self.updated_at = utcnow()

    def mark_completed(self, total: int) -> None:
        """Mark the job as exhausted; clears the cursor."""
        if self.status is not JobStatus.RUNNING:
            raise InvalidStateError(f"job {self.job_id} cannot complete from status {self.status.value}")
        now = utcnow()
        self.status = JobStatus.COMPLETED
        self.cursor = None
        self.total_count = total
        self.completed_at = now
        self.updated_at = now

    def mark_failed(self, error: BaseException | str) -> None:
        """Record a failure; the last committed cursor is kept."""
        if self.status is JobStatus.COMPLETED:
            raise InvalidStateError(f"job {self.job_id} is already completed")
        if isinstance(error, PageCacheError):
            message = error.describe()
        else:
            message = str(error) or type(error).__name__
        self.status = JobStatus.FAILED
        self.last_error = message
        self.updated_at = utcnow()
