"""Error taxonomy shared by the coordinator, pager, stores and materializer."""
from __future__ import annotations


class PageCacheError(Exception):
    """Base class for all errors raised by the ingestion core."""

    label = "error"

    def describe(self) -> str:
        """Return the labelled message persisted as a job's ``last_error``."""
        return f"{self.label}: {self}"


class ValidationError(PageCacheError):
    """Unknown or misconfigured collection; raised before any job exists."""

    label = "validation"


class ConflictError(PageCacheError):
    """A non-terminal job already owns the collection."""

    label = "conflict"


class InvalidStateError(PageCacheError):
    """The requested transition is not allowed from the job's current state."""

    label = "invalid_state"


class FetchError(PageCacheError):
    """Failure while requesting a page from the upstream API."""

    label = "fetch"


class TransientFetchError(FetchError):
    """Network failure, malformed page or upstream unavailable."""

    label = "transient_fetch"


class FatalFetchError(FetchError):
    """Authentication or schema incompatibility; retrying will not help."""

    label = "fatal_fetch"


class CacheWriteError(PageCacheError):
    """The durable store rejected a page commit."""

    label = "cache_write"


class JobCancelledError(PageCacheError):
    """The run was cancelled between page fetches."""

    label = "cancelled"


class EmptyCollectionError(PageCacheError):
    """Nothing is cached for the collection being materialized."""

    label = "empty_collection"


class MaterializeIOError(PageCacheError):
    """The CSV artifact could not be written."""

    label = "materialize_io"
