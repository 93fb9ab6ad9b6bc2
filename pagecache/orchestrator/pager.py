"""Sequential, checkpointed fetch loop over a paginated upstream source."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from pagecache.errors import CacheWriteError, FatalFetchError, JobCancelledError, TransientFetchError
from pagecache.fetch.client import Page, PageSource
from pagecache.observability.metrics import MetricsRegistry
from pagecache.orchestrator.checkpoint import CheckpointStore
from pagecache.orchestrator.jobs import Job
from pagecache.storage.record_cache import RecordCache

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 250
DEFAULT_DELAY_SECONDS = 0.5

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class PagerResult:
    """Outcome of one pager run."""

    pages: int
    records: int
    exhausted: bool


class Pager:
    """Fetches pages one after another and commits each before moving on.

    A page is committed by writing its records to the cache first and only
    then advancing the job's checkpoint, so the stored cursor never points
    past data that is not durably cached.
    """

    def __init__(
        self,
        *,
        source: PageSource,
        cache: RecordCache,
        checkpoints: CheckpointStore,
        metrics: Optional[MetricsRegistry] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        max_pages: Optional[int] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._source = source
        self._cache = cache
        self._checkpoints = checkpoints
        self._metrics = metrics or MetricsRegistry()
        self._page_size = page_size
        self._delay = max(delay_seconds, 0.0)
        self._max_pages = max_pages or None
        self._sleep = sleep

    async def run(self, job: Job, *, cancel: Optional[asyncio.Event] = None) -> PagerResult:
        """Page from ``job.cursor`` until the source is exhausted."""
        pages = 0
        records = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise JobCancelledError(f"job {job.job_id} cancelled after {pages} page(s)")
            if self._max_pages is not None and pages >= self._max_pages:
                logger.warning("page_limit_reached", max_pages=self._max_pages, processed=job.processed_count)
                return PagerResult(pages=pages, records=records, exhausted=False)

            page = await self._fetch(job)
            pages += 1
            await self._commit(job, page)
            records += len(page.records)
            logger.info(
                "page_committed",
                page=pages,
                records=len(page.records),
                processed=job.processed_count,
                has_more=page.has_more,
            )
            if not page.has_more:
                return PagerResult(pages=pages, records=records, exhausted=True)
            if self._delay:
                await self._sleep(self._delay)

    async def _fetch(self, job: Job) -> Page:
        try:
            page = await self._source.fetch_page(page_size=self._page_size, cursor=job.cursor)
        except TransientFetchError:
            self._metrics.incr("fetch_errors_transient")
            raise
        except FatalFetchError:
            self._metrics.incr("fetch_errors_fatal")
            raise
        self._metrics.incr("pages_fetched")
        return page

    async def _commit(self, job: Job, page: Page) -> None:
        try:
            if page.records:
                await asyncio.to_thread(self._cache.upsert, job.collection, page.records)
            job.advance(page.next_cursor, len(page.records))
            await asyncio.to_thread(self._checkpoints.advance, job)
        except CacheWriteError:
            self._metrics.incr("cache_write_errors")
            raise
        self._metrics.incr("records_cached", len(page.records))
