"""Job lifecycle: start, resume, finalisation and the control-plane queries."""
from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncContextManager, Callable, List, Optional

import structlog

from pagecache.errors import ConflictError, InvalidStateError, JobCancelledError, ValidationError
from pagecache.fetch.client import PageSource, open_source
from pagecache.observability.metrics import MetricsRegistry, record_duration
from pagecache.observability.tracing import clear_context, set_context
from pagecache.orchestrator.checkpoint import CheckpointStore
from pagecache.orchestrator.collections import CollectionConfig, CollectionRegistry
from pagecache.orchestrator.jobs import Job, JobStatus
from pagecache.orchestrator.locks import CollectionLease, CollectionLocks
from pagecache.orchestrator.pager import DEFAULT_DELAY_SECONDS, DEFAULT_PAGE_SIZE, Pager, Sleep
from pagecache.storage.materialize import Materializer
from pagecache.storage.record_cache import RecordCache

logger = structlog.get_logger(__name__)

SourceFactory = Callable[[CollectionConfig], AsyncContextManager[PageSource]]


@dataclass
class JobHandle:
    """Explicit handle on a running job task."""

    job_id: str
    collection: str
    task: "asyncio.Task[Job]"
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        """Ask the pager to stop before its next page request."""
        self.cancel_event.set()

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Job:
        """Wait for the run to finish and return the final job state."""
        return await self.task


class JobCoordinator:
    """Owns job transitions and enforces one active job per collection."""

    def __init__(
        self,
        *,
        registry: CollectionRegistry,
        checkpoints: CheckpointStore,
        cache: RecordCache,
        materializer: Materializer,
        locks: Optional[CollectionLocks] = None,
        source_factory: SourceFactory = open_source,
        page_size: int = DEFAULT_PAGE_SIZE,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        max_pages: Optional[int] = None,
        metrics_dir: Optional[Path] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._checkpoints = checkpoints
        self._cache = cache
        self._materializer = materializer
        self._locks = locks or CollectionLocks()
        self._source_factory = source_factory
        self._page_size = page_size
        self._delay = delay_seconds
        self._max_pages = max_pages
        self._metrics_dir = metrics_dir
        self._sleep = sleep

    async def start(self, collection: str, *, materialize_after: bool = False) -> JobHandle:
        """Create a job for the collection and launch its pager task."""
        config = self._registry.get(collection)
        lease = self._locks.acquire(collection)
        try:
            active = await asyncio.to_thread(self._checkpoints.active, collection)
            if active:
                raise ConflictError(
                    f"job {active[0].job_id} is still {active[0].status.value} for {collection}; "
                    "resume it or run recovery first"
                )
            job = Job.create(collection)
            await asyncio.to_thread(self._checkpoints.create, job)
            job.mark_running()
            await asyncio.to_thread(self._checkpoints.save, job)
        except BaseException:
            lease.release()
            raise
        logger.info("job_started", job_id=job.job_id, collection=collection)
        return self._launch(job, config, lease, materialize_after)

    async def resume(self, target: str, *, materialize_after: bool = False) -> JobHandle:
        """Resume a job by id, or the most recent non-completed job of a collection."""
        job = await self._resolve(target)
        config = self._registry.get(job.collection)
        if job.status is JobStatus.COMPLETED:
            raise InvalidStateError(f"job {job.job_id} is already completed")
        lease = self._locks.acquire(job.collection)
        try:
            current = await asyncio.to_thread(self._checkpoints.get, job.job_id)
            if current is None or current.status is JobStatus.COMPLETED:
                raise InvalidStateError(f"job {job.job_id} is already completed")
            if current.cursor is None:
                raise InvalidStateError(
                    f"job {job.job_id} has no committed page to resume from; start a new job instead"
                )
            job = current
            job.mark_running(allow_orphan=True)
            await asyncio.to_thread(self._checkpoints.save, job)
        except BaseException:
            lease.release()
            raise
        # No upstream total is tracked, so growth or shrinkage since the last
        # committed page cannot be detected here.
        logger.info(
            "job_resumed",
            job_id=job.job_id,
            collection=job.collection,
            processed=job.processed_count,
        )
        return self._launch(job, config, lease, materialize_after)

    def status(self, collection: str) -> Optional[Job]:
        """Return the latest job snapshot for the collection."""
        return self._checkpoints.latest(collection)

    def history(self, collection: str, limit: int = 10) -> List[Job]:
        return self._checkpoints.history(collection, limit=limit)

    async def materialize(self, collection: str, *, job: Optional[Job] = None) -> Path:
        """Write the collection's CSV artifact; optionally record it on a job."""
        if collection not in self._registry:
            raise ValidationError(f"unknown collection {collection!r}")
        path = await asyncio.to_thread(self._materializer.materialize, collection)
        if job is not None:
            job.artifact_path = str(path)
            await asyncio.to_thread(self._checkpoints.save, job)
        return path

    def recover_orphans(self, collection: Optional[str] = None) -> List[Job]:
        """Fail pending/running jobs that no live run in this process owns."""
        recovered: List[Job] = []
        for job in self._checkpoints.active(collection):
            if self._locks.is_held(job.collection):
                continue
            job.mark_failed("orphaned: no live run owns this job")
            self._checkpoints.save(job)
            logger.warning("job_orphan_recovered", job_id=job.job_id, collection=job.collection, cursor=job.cursor)
            recovered.append(job)
        return recovered

    async def _resolve(self, target: str) -> Job:
        if target in self._registry:
            job = await asyncio.to_thread(self._checkpoints.latest_unfinished, target)
            if job is None:
                raise InvalidStateError(f"no unfinished job to resume for {target}")
            return job
        job = await asyncio.to_thread(self._checkpoints.get, target)
        if job is None:
            raise ValidationError(f"{target!r} is neither a configured collection nor a known job id")
        return job

    def _launch(
        self,
        job: Job,
        config: CollectionConfig,
        lease: CollectionLease,
        materialize_after: bool,
    ) -> JobHandle:
        cancel_event = asyncio.Event()
        try:
            task = asyncio.create_task(
                self._run(job, config, lease, cancel_event, materialize_after),
                name=f"ingest:{job.collection}:{job.job_id}",
            )
        except BaseException as exc:
            lease.release()
            job.mark_failed(exc)
            self._checkpoints.save(job)
            raise
        task.add_done_callback(functools.partial(self._on_done, job.job_id, lease))
        return JobHandle(job_id=job.job_id, collection=job.collection, task=task, cancel_event=cancel_event)

    async def _run(
        self,
        job: Job,
        config: CollectionConfig,
        lease: CollectionLease,
        cancel_event: asyncio.Event,
        materialize_after: bool,
    ) -> Job:
        set_context(job_id=job.job_id, collection=job.collection)
        metrics = MetricsRegistry()
        try:
            with lease, record_duration(metrics, "job_duration_ms"):
                try:
                    async with self._source_factory(config) as source:
                        pager = Pager(
                            source=source,
                            cache=self._cache,
                            checkpoints=self._checkpoints,
                            metrics=metrics,
                            page_size=self._page_size,
                            delay_seconds=self._delay,
                            max_pages=self._max_pages,
                            sleep=self._sleep,
                        )
                        result = await pager.run(job, cancel=cancel_event)
                except asyncio.CancelledError:
                    await self._mark_failed(job, JobCancelledError("task cancelled"))
                    raise
                except Exception as exc:
                    await self._mark_failed(job, exc)
                    raise
                if result.exhausted:
                    await self._mark_completed(job, job.processed_count)
                else:
                    await self._mark_failed(job, f"page_limit: stopped after {result.pages} page(s)")
            if materialize_after and job.status is JobStatus.COMPLETED:
                await self.materialize(job.collection, job=job)
            return job
        finally:
            if self._metrics_dir is not None:
                metrics.export(self._metrics_dir, job_id=job.job_id, collection=job.collection)
            clear_context()

    async def _mark_completed(self, job: Job, total: int) -> None:
        job.mark_completed(total)
        await asyncio.to_thread(self._checkpoints.save, job)
        logger.info("job_completed", job_id=job.job_id, collection=job.collection, total=total)

    async def _mark_failed(self, job: Job, error: BaseException | str) -> None:
        job.mark_failed(error)
        await asyncio.to_thread(self._checkpoints.save, job)
        logger.error(
            "job_failed",
            job_id=job.job_id,
            collection=job.collection,
            error=job.last_error,
            cursor=job.cursor,
            processed=job.processed_count,
        )

    def _on_done(self, job_id: str, lease: CollectionLease, task: "asyncio.Task[Job]") -> None:
        lease.release()
        if task.cancelled():
            job = self._checkpoints.get(job_id)
            if job is not None and job.status is JobStatus.RUNNING:
                job.mark_failed(JobCancelledError("task cancelled before it ran"))
                self._checkpoints.save(job)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("job_task_error", job_id=job_id, error=repr(exc))
