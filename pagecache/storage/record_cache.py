"""Durable, idempotent key-value cache of fetched records."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Sequence

import orjson
import structlog

from pagecache.errors import CacheWriteError
from pagecache.storage.database import connect, init_schema
from pagecache.storage.models import CachedRecord, SourceRecord
from pagecache.util.time import utcnow

logger = structlog.get_logger(__name__)

FETCH_CHUNK = 500

UPSERT_SQL = """
    INSERT INTO records (collection, external_id, payload, source_timestamp, cached_at)
    VALUES (:collection, :external_id, :payload, :source_timestamp, :cached_at)
    ON CONFLICT(collection, external_id) DO UPDATE SET
        payload=excluded.payload,
        source_timestamp=excluded.source_timestamp,
        cached_at=excluded.cached_at
"""


def _timestamp(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class RecordCache:
    """Stores records keyed by ``(collection, external_id)`` in SQLite."""

    def __init__(self, path: Path) -> None:
        self._path = path
        init_schema(path)

    def upsert(self, collection: str, records: Sequence[SourceRecord]) -> int:
        """Insert or replace every record of the batch in one transaction."""
        if not records:
            return 0
        cached_at = _timestamp(utcnow())
        try:
            prepared = [
                {
                    "collection": collection,
                    "external_id": record.external_id,
                    "payload": orjson.dumps(record.payload).decode(),
                    "source_timestamp": record.source_timestamp,
                    "cached_at": cached_at,
                }
                for record in records
            ]
            with connect(self._path) as conn:
                conn.executemany(UPSERT_SQL, prepared)
        except (sqlite3.Error, orjson.JSONEncodeError) as exc:
            logger.error("cache_write_failed", collection=collection, batch=len(records), error=str(exc))
            raise CacheWriteError(f"failed to cache {len(records)} records for {collection}: {exc}") from exc
        return len(prepared)

    def get_all(self, collection: str) -> Iterator[CachedRecord]:
        """Yield cached records newest first; each call starts a fresh scan."""
        with connect(self._path) as conn:
            cursor = conn.execute(
                """
                SELECT collection, external_id, payload, source_timestamp, cached_at
                FROM records
                WHERE collection = ?
                ORDER BY cached_at DESC, external_id ASC
                """,
                (collection,),
            )
            while True:
                rows = cursor.fetchmany(FETCH_CHUNK)
                if not rows:
                    break
                for row in rows:
                    yield CachedRecord(
                        collection=row["collection"],
                        external_id=row["external_id"],
                        payload=orjson.loads(row["payload"]),
                        source_timestamp=row["source_timestamp"],
                        cached_at=datetime.fromisoformat(row["cached_at"]),
                    )

    def count(self, collection: str) -> int:
        with connect(self._path) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM records WHERE collection = ?", (collection,)).fetchone()
        return int(row["n"])

    def collections(self) -> Dict[str, int]:
        """Return the number of cached records per collection."""
        with connect(self._path) as conn:
            rows = conn.execute(
                "SELECT collection, COUNT(*) AS n FROM records GROUP BY collection ORDER BY collection"
            ).fetchall()
        return {row["collection"]: int(row["n"]) for row in rows}

    def purge(self, collection: str) -> int:
        """Delete every cached record of the collection; job state is untouched."""
        with connect(self._path) as conn:
            deleted = conn.execute("DELETE FROM records WHERE collection = ?", (collection,)).rowcount
        logger.info("cache_purged", collection=collection, deleted=deleted)
        return deleted
