"""Per-collection leases serialising ingestion runs inside one process."""
from __future__ import annotations

import threading
import uuid
from typing import Dict

import structlog

from pagecache.errors import ConflictError

logger = structlog.get_logger(__name__)


class CollectionLease:
    """A held lease on one collection; releasing it twice is a no-op."""

    def __init__(self, locks: "CollectionLocks", collection: str, token: str) -> None:
        self._locks = locks
        self.collection = collection
        self.token = token
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._locks._release(self.collection, self.token)

    def __enter__(self) -> "CollectionLease":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class CollectionLocks:
    """Lock table handed to the coordinator.

    State lives only in memory, so a process restart never leaves a stale
    lease behind; persisted job status is the only thing that survives.
    """

    def __init__(self) -> None:
        self._held: Dict[str, str] = {}
        self._mutex = threading.Lock()

    def acquire(self, collection: str) -> CollectionLease:
        """Take the lease or raise ``ConflictError`` if it is already held."""
        token = uuid.uuid4().hex
        with self._mutex:
            if collection in self._held:
                raise ConflictError(f"an ingestion run is already active for {collection}")
            self._held[collection] = token
        logger.debug("lease_acquired", collection=collection, token=token)
        return CollectionLease(self, collection, token)

    def is_held(self, collection: str) -> bool:
        with self._mutex:
            return collection in self._held

    def _release(self, collection: str, token: str) -> None:
        with self._mutex:
            if self._held.get(collection) == token:
                del self._held[collection]
        logger.debug("lease_released", collection=collection, token=token)
