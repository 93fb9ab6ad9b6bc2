"""Administrative status helpers."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pagecache.orchestrator.jobs import Job


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def job_snapshot(job: Job) -> Dict[str, object]:
    """Render a job as a JSON-friendly mapping."""
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
        "resumable": job.resumable,
    }


def summarise_collections(names: Iterable[str], counts: Dict[str, int]) -> List[Dict[str, object]]:
    """Merge configured collection names with cached record counts."""
    configured = set(names)
    rows = []
    for name in sorted(configured | set(counts)):
        rows.append({"collection": name, "configured": name in configured, "cached_records": counts.get(name, 0)})
    return rows
