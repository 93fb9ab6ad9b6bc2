"""Streams a cached collection into a flat CSV artifact."""
from __future__ import annotations

import contextlib
import csv
from datetime import date
from pathlib import Path
from typing import Optional, Sequence, TextIO

import structlog

from pagecache.errors import EmptyCollectionError, MaterializeIOError
from pagecache.observability.metrics import MetricsRegistry
from pagecache.storage.columns import CUSTOMER_COLUMNS, Column, flatten, header
from pagecache.storage.record_cache import RecordCache
from pagecache.util.time import utcnow

logger = structlog.get_logger(__name__)


class Materializer:
    """Reads only the record cache; never consults job state."""

    def __init__(
        self,
        cache: RecordCache,
        *,
        exports_dir: Path,
        columns: Sequence[Column] = CUSTOMER_COLUMNS,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._cache = cache
        self._exports_dir = exports_dir
        self._columns = columns
        self._metrics = metrics or MetricsRegistry()

    def artifact_path(self, collection: str, *, day: Optional[date] = None) -> Path:
        day = day or utcnow().date()
        return self._exports_dir / f"{collection}-{day.isoformat()}.csv"

    def write(self, collection: str, handle: TextIO) -> int:
        """Write header and one row per cached record; return the row count."""
        writer = csv.writer(handle, lineterminator="\r\n")
        writer.writerow(header(self._columns))
        rows = 0
        for record in self._cache.get_all(collection):
            writer.writerow(flatten(record.payload, self._columns))
            rows += 1
        if rows == 0:
            raise EmptyCollectionError(f"no records cached for {collection}")
        self._metrics.incr("rows_materialized", rows)
        return rows

    def materialize(self, collection: str) -> Path:
        """Write the collection's CSV artifact and return its location."""
        if self._cache.count(collection) == 0:
            raise EmptyCollectionError(f"no records cached for {collection}")
        target = self.artifact_path(collection)
        partial = target.with_name(target.name + ".partial")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with partial.open("w", encoding="utf-8", newline="") as handle:
                rows = self.write(collection, handle)
            partial.replace(target)
        except OSError as exc:
            with contextlib.suppress(OSError):
                partial.unlink(missing_ok=True)
            raise MaterializeIOError(f"failed to write {target}: {exc}") from exc
        except EmptyCollectionError:
            with contextlib.suppress(OSError):
                partial.unlink(missing_ok=True)
            raise
        logger.info("collection_materialized", collection=collection, rows=rows, path=str(target))
        return target
