import asyncio
import contextlib

import pytest

from conftest import FakeSource
from pagecache.errors import (
    ConflictError,
    EmptyCollectionError,
    FatalFetchError,
    InvalidStateError,
    JobCancelledError,
    TransientFetchError,
    ValidationError,
)
from pagecache.orchestrator.jobs import Job, JobStatus


def test_scenario_empty_collection(make_coordinator, cache):
    coordinator = make_coordinator(FakeSource(0))

    async def _run():
        handle = await coordinator.start("demo-us")
        job = await handle.wait()
        assert job.status is JobStatus.COMPLETED
        assert job.processed_count == 0
        assert job.total_count == 0
        with pytest.raises(EmptyCollectionError):
            await coordinator.materialize("demo-us")

    asyncio.run(_run())
    assert cache.count("demo-us") == 0


def test_scenario_three_pages(make_coordinator, cache, tmp_path):
    coordinator = make_coordinator(FakeSource(520))

    async def _run():
        handle = await coordinator.start("demo-us")
        return await handle.wait()

    job = asyncio.run(_run())
    assert job.status is JobStatus.COMPLETED
    assert job.processed_count == 520
    assert job.total_count == 520
    assert job.cursor is None
    assert cache.count("demo-us") == 520
    stored = coordinator.status("demo-us")
    assert stored.status is JobStatus.COMPLETED
    assert stored.cursor is None
    assert (tmp_path / "metrics" / f"{job.job_id}.json").exists()


def test_scenario_resume_after_two_pages(make_coordinator, cache):
    failing = FakeSource(520, fail_on_calls={3})
    healthy = FakeSource(520)

    async def _run():
        handle = await make_coordinator(failing).start("demo-us")
        with pytest.raises(TransientFetchError):
            await handle.wait()
        failed = make_coordinator(failing).status("demo-us")
        assert failed.status is JobStatus.FAILED
        assert failed.cursor == "offset:500"
        assert failed.processed_count == 500
        assert failed.last_error.startswith("transient_fetch")

        resumed = await make_coordinator(healthy).resume("demo-us")
        assert resumed.job_id == failed.job_id
        return await resumed.wait()

    job = asyncio.run(_run())
    assert healthy.calls == ["offset:500"]
    assert job.status is JobStatus.COMPLETED
    assert job.processed_count == 520
    assert cache.count("demo-us") == 520
    external_ids = [record.external_id for record in cache.get_all("demo-us")]
    assert len(external_ids) == len(set(external_ids))


def test_resume_completed_job_always_rejected(make_coordinator, checkpoints):
    coordinator = make_coordinator(FakeSource(20))

    async def _run():
        job = await (await coordinator.start("demo-us")).wait()
        for _ in range(3):
            with pytest.raises(InvalidStateError):
                await coordinator.resume(job.job_id)
            with pytest.raises(InvalidStateError):
                await coordinator.resume("demo-us")
        return job

    job = asyncio.run(_run())
    assert checkpoints.get(job.job_id) == job


def test_resume_without_cursor_is_rejected_and_mutates_nothing(make_coordinator, checkpoints):
    source = FakeSource(520, fail_on_calls={1}, error=FatalFetchError("bad token"))
    coordinator = make_coordinator(source)

    async def _run():
        handle = await coordinator.start("demo-us")
        with pytest.raises(FatalFetchError):
            await handle.wait()
        before = coordinator.status("demo-us")
        with pytest.raises(InvalidStateError):
            await coordinator.resume(before.job_id)
        return before

    before = asyncio.run(_run())
    assert before.cursor is None
    assert before.last_error.startswith("fatal_fetch")
    assert checkpoints.get(before.job_id) == before
    assert len(source.calls) == 1


def test_second_start_conflicts_while_running(make_coordinator):
    class BlockingSource(FakeSource):
        async def fetch_page(self, *, page_size, cursor):
            await self.release.wait()
            return await super().fetch_page(page_size=page_size, cursor=cursor)

    source = BlockingSource(30)
    coordinator = make_coordinator(source)

    async def _run():
        source.release = asyncio.Event()
        handle = await coordinator.start("demo-us")
        await asyncio.sleep(0)
        with pytest.raises(ConflictError):
            await coordinator.start("demo-us")
        with pytest.raises(ConflictError):
            await coordinator.resume(handle.job_id)
        running = coordinator.status("demo-us")
        assert running.job_id == handle.job_id
        assert running.status is JobStatus.RUNNING
        source.release.set()
        return await handle.wait()

    job = asyncio.run(_run())
    assert job.status is JobStatus.COMPLETED
    assert len(coordinator.history("demo-us")) == 1


def test_persisted_active_job_blocks_start(make_coordinator, checkpoints):
    orphan = checkpoints.create(Job.create("demo-us"))
    coordinator = make_coordinator(FakeSource(10))

    with pytest.raises(ConflictError):
        asyncio.run(coordinator.start("demo-us"))
    assert checkpoints.get(orphan.job_id).status is JobStatus.PENDING


def test_orphaned_running_job_is_resumable(make_coordinator, checkpoints, cache):
    source = FakeSource(520)
    orphan = checkpoints.create(Job.create("demo-us"))
    orphan.mark_running()
    orphan.advance("offset:250", 250)
    checkpoints.save(orphan)
    coordinator = make_coordinator(source)

    async def _run():
        return await (await coordinator.resume("demo-us")).wait()

    job = asyncio.run(_run())
    assert job.job_id == orphan.job_id
    assert job.processed_count == 520
    assert source.calls == ["offset:250", "offset:500"]


def test_recover_orphans_allows_fresh_start(make_coordinator, checkpoints):
    orphan = checkpoints.create(Job.create("demo-us"))
    coordinator = make_coordinator(FakeSource(5))

    recovered = coordinator.recover_orphans("demo-us")
    assert [job.job_id for job in recovered] == [orphan.job_id]
    assert checkpoints.get(orphan.job_id).status is JobStatus.FAILED

    async def _run():
        return await (await coordinator.start("demo-us")).wait()

    assert asyncio.run(_run()).status is JobStatus.COMPLETED


def test_unknown_collection_is_rejected_before_job_creation(make_coordinator, checkpoints):
    coordinator = make_coordinator(FakeSource(5))
    with pytest.raises(ValidationError):
        asyncio.run(coordinator.start("nowhere"))
    with pytest.raises(ValidationError):
        asyncio.run(coordinator.resume("job_missing"))
    assert checkpoints.history("nowhere") == []


def test_lock_is_released_after_failure(make_coordinator):
    source = FakeSource(520, fail_on_calls={2})
    coordinator = make_coordinator(source)

    async def _run():
        handle = await coordinator.start("demo-us")
        with pytest.raises(TransientFetchError):
            await handle.wait()
        source.fail_on_calls = set()
        return await (await coordinator.resume("demo-us")).wait()

    job = asyncio.run(_run())
    assert job.status is JobStatus.COMPLETED
    assert job.processed_count == 520


def test_cancel_before_first_page_fails_job(make_coordinator):
    coordinator = make_coordinator(FakeSource(520))

    async def _run():
        handle = await coordinator.start("demo-us")
        handle.cancel()
        with pytest.raises(JobCancelledError):
            await handle.wait()

    asyncio.run(_run())
    job = coordinator.status("demo-us")
    assert job.status is JobStatus.FAILED
    assert job.last_error.startswith("cancelled")
    assert job.cursor is None
    assert not job.resumable


def test_task_cancel_marks_job_failed(make_coordinator):
    class SlowSource(FakeSource):
        async def fetch_page(self, *, page_size, cursor):
            if cursor is not None:
                await asyncio.sleep(10)
            return await super().fetch_page(page_size=page_size, cursor=cursor)

    coordinator = make_coordinator(SlowSource(520))

    async def _run():
        handle = await coordinator.start("demo-us")
        for _ in range(50):
            await asyncio.sleep(0.01)
            job = coordinator.status("demo-us")
            if job.cursor is not None:
                break
        handle.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handle.wait()

    asyncio.run(_run())
    job = coordinator.status("demo-us")
    assert job.status is JobStatus.FAILED
    assert job.cursor == "offset:250"
    assert job.processed_count == 250


def test_max_pages_leaves_job_resumable(make_coordinator):
    coordinator = make_coordinator(FakeSource(520), max_pages=2)

    async def _run():
        return await (await coordinator.start("demo-us")).wait()

    job = asyncio.run(_run())
    assert job.status is JobStatus.FAILED
    assert job.last_error.startswith("page_limit")
    assert job.cursor == "offset:500"
    assert job.resumable


def test_materialize_after_records_artifact(make_coordinator, checkpoints):
    coordinator = make_coordinator(FakeSource(3))

    async def _run():
        return await (await coordinator.start("demo-us", materialize_after=True)).wait()

    job = asyncio.run(_run())
    assert job.artifact_path is not None
    assert checkpoints.get(job.job_id).artifact_path == job.artifact_path


def test_resume_by_collection_skips_newer_completed_job(make_coordinator, checkpoints):
    healthy = FakeSource(520)

    async def _run():
        failing = await make_coordinator(FakeSource(520, fail_on_calls={3})).start("demo-us")
        with pytest.raises(TransientFetchError):
            await failing.wait()
        newer = await (await make_coordinator(FakeSource(20)).start("demo-us")).wait()
        assert newer.status is JobStatus.COMPLETED

        resumed = await make_coordinator(healthy).resume("demo-us")
        assert resumed.job_id == failing.job_id
        return await resumed.wait(), newer

    job, newer = asyncio.run(_run())
    assert healthy.calls == ["offset:500"]
    assert job.status is JobStatus.COMPLETED
    assert job.processed_count == 520
    assert checkpoints.get(newer.job_id) == newer


def test_jobs_for_different_collections_run_concurrently(make_coordinator, cache):
    class GatedSource(FakeSource):
        async def fetch_page(self, *, page_size, cursor):
            await self.gate.wait()
            return await super().fetch_page(page_size=page_size, cursor=cursor)

    sources = {"demo-us": GatedSource(300), "demo-eu": GatedSource(40)}

    @contextlib.asynccontextmanager
    async def open_by_name(config):
        yield sources[config.name]

    coordinator = make_coordinator(source_factory=open_by_name)

    async def _run():
        for source in sources.values():
            source.gate = asyncio.Event()
        us = await coordinator.start("demo-us")
        eu = await coordinator.start("demo-eu")
        for _ in range(5):
            await asyncio.sleep(0)
        assert coordinator.status("demo-us").status is JobStatus.RUNNING
        assert coordinator.status("demo-eu").status is JobStatus.RUNNING
        assert sources["demo-us"].calls == [None]
        assert sources["demo-eu"].calls == [None]

        sources["demo-eu"].gate.set()
        eu_job = await eu.wait()
        assert not us.done()
        sources["demo-us"].gate.set()
        return await us.wait(), eu_job

    us_job, eu_job = asyncio.run(_run())
    assert us_job.status is JobStatus.COMPLETED
    assert eu_job.status is JobStatus.COMPLETED
    assert us_job.processed_count == 300
    assert eu_job.processed_count == 40
    assert cache.count("demo-us") == 300
    assert cache.count("demo-eu") == 40
