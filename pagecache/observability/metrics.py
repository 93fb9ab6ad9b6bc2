"""Per-job ingestion counters, exported as one JSON document per job."""
from __future__ import annotations

import contextlib
import time
from pathlib import Path
from typing import Dict, Iterator, Optional, Sequence

import orjson
import structlog

logger = structlog.get_logger(__name__)

JOB_COUNTERS = (
    "pages_fetched",
    "records_cached",
    "fetch_errors_transient",
    "fetch_errors_fatal",
    "cache_write_errors",
    "rows_materialized",
    "job_duration_ms",
)


def metrics_path(directory: Path, job_id: str) -> Path:
    """``<directory>/job_<hex>.json`` for ids made by ``Job.create``."""
    return directory / f"{job_id}.json"


class MetricsRegistry:
    """Counters for one job run; unknown names start at zero."""

    def __init__(self, counters: Sequence[str] = JOB_COUNTERS) -> None:
        self._counters: Dict[str, int] = dict.fromkeys(counters, 0)

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + value

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def records_per_page(self) -> float:
        pages = self.get("pages_fetched")
        return round(self.get("records_cached") / pages, 2) if pages else 0.0

    def export(self, directory: Path, *, job_id: str, collection: str) -> Path:
        """Write the job's counters next to those of earlier jobs."""
        path = metrics_path(directory, job_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "job_id": job_id,
            "collection": collection,
            "counters": self.snapshot(),
            "records_per_page": self.records_per_page(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        logger.debug("metrics_exported", job_id=job_id, path=str(path))
        return path


def load_job_metrics(directory: Path, job_id: str) -> Optional[Dict[str, object]]:
    """Return the exported document for a job, or None if it never ran."""
    path = metrics_path(directory, job_id)
    if not path.exists():
        return None
    return orjson.loads(path.read_bytes())


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the block's wall time in milliseconds to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        registry.incr(metric_name, int((time.perf_counter() - start) * 1000))
