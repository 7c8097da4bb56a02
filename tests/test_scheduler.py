"""
Tests for the Scheduler (poll/dispatch, monitor, cleanup, drain) and metrics.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from job_queue.metrics import PerformanceMetrics, load_percentage
from job_queue.scheduler import Scheduler
from job_queue.worker import Worker
from models.errors import TransientInfraError
from models.schemas import JobPayload, JobSpec, JobStatus, JobType


def make_workers(n, conversations, engine, audit=None, timeout=1.0):
    return [Worker(i + 1, conversations, engine, audit=audit, generation_timeout=timeout) for i in range(n)]


async def start_and_enqueue(conversations, queue, start_spec, job_spec, job_type=JobType.FIRST_RESPONSE, **kwargs):
    conversation_id, _ = await conversations.start(start_spec)
    receipt = await queue.enqueue(job_spec(job_type, conversation_id, **kwargs))
    return conversation_id, receipt.job_id


class TestTick:
    @pytest.mark.asyncio
    async def test_tick_runs_and_completes_jobs(self, queue, conversations, engine, audit, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(3, conversations, engine, audit))
        ids = [await start_and_enqueue(conversations, queue, start_spec, job_spec) for _ in range(2)]

        assert await scheduler.tick() == 2

        for conversation_id, job_id in ids:
            job = await queue.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.result["worker_id"] in (1, 2, 3)
            assert len((await conversations.get(conversation_id)).messages) == 1
        assert scheduler.metrics.processed == 2

    @pytest.mark.asyncio
    async def test_tick_respects_batch_cap(self, queue, conversations, engine, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(5, conversations, engine), batch_cap=2)
        for _ in range(4):
            await start_and_enqueue(conversations, queue, start_spec, job_spec)

        assert await scheduler.tick() == 2
        assert (await queue.stats()).pending == 2

    @pytest.mark.asyncio
    async def test_tick_claims_only_for_idle_workers(self, queue, conversations, engine, start_spec, job_spec):
        workers = make_workers(2, conversations, engine)
        scheduler = Scheduler(queue, workers)
        for _ in range(3):
            await start_and_enqueue(conversations, queue, start_spec, job_spec)

        workers[0]._current_job = object()  # simulate a busy slot
        assert await scheduler.tick() == 1
        assert (await queue.stats()).pending == 2

    @pytest.mark.asyncio
    async def test_tick_on_empty_queue(self, queue, conversations, engine):
        scheduler = Scheduler(queue, make_workers(2, conversations, engine))
        assert await scheduler.tick() == 0

    @pytest.mark.asyncio
    async def test_failed_job_goes_back_with_retry(self, queue, conversations, audit, start_spec, job_spec, make_engine):
        scheduler = Scheduler(queue, make_workers(1, conversations, make_engine(fail_times=1), audit))
        _, job_id = await start_and_enqueue(conversations, queue, start_spec, job_spec)

        await scheduler.tick()
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert job.last_error == "model overloaded"

        await scheduler.tick()
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED
        assert scheduler.metrics.failed == 1
        assert scheduler.metrics.processed == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, queue, conversations, engine, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(2, conversations, engine))
        _, good_id = await start_and_enqueue(conversations, queue, start_spec, job_spec)
        bad = await queue.enqueue(job_spec(JobType.FIRST_RESPONSE, "conv_missing", max_retries=0))

        assert await scheduler.tick() == 2
        assert (await queue.get_job(good_id)).status == JobStatus.COMPLETED
        failed = await queue.get_job(bad.job_id)
        assert failed.status == JobStatus.FAILED
        assert "Conversation not found" in failed.error

    @pytest.mark.asyncio
    async def test_max_retries_two_ends_failed(self, queue, conversations, start_spec, job_spec, make_engine):
        scheduler = Scheduler(queue, make_workers(1, conversations, make_engine(fail_times=10)))
        _, job_id = await start_and_enqueue(conversations, queue, start_spec, job_spec, max_retries=2)

        for _ in range(4):
            await scheduler.tick()

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 2
        assert scheduler.metrics.failed == 3

    @pytest.mark.asyncio
    async def test_job_missing_its_input_is_not_retried(self, queue, conversations, engine, start_spec):
        scheduler = Scheduler(queue, make_workers(1, conversations, engine))
        conversation_id, _ = await conversations.start(start_spec)
        # Skips JobSpec validation, as a job written by an older producer would
        spec = JobSpec.model_construct(
            type=JobType.RESPONSE, conversation_id=conversation_id, user_id="u_42",
            payload=JobPayload(), priority=None, max_retries=3,
        )
        receipt = await queue.enqueue(spec)

        assert await scheduler.tick() == 1
        job = await queue.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert "no user_message" in job.error
        assert engine.requests == []
        assert (await queue.stats()).pending == 0

    @pytest.mark.asyncio
    async def test_claim_error_is_contained(self, queue, conversations, engine):
        scheduler = Scheduler(queue, make_workers(1, conversations, engine))
        queue.claim_next = AsyncMock(side_effect=TransientInfraError("redis down"))
        assert await scheduler.tick() == 0

    @pytest.mark.asyncio
    async def test_mark_completed_error_is_contained(self, queue, conversations, engine, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(1, conversations, engine))
        _, job_id = await start_and_enqueue(conversations, queue, start_spec, job_spec)
        queue.mark_completed = AsyncMock(side_effect=TransientInfraError("redis down"))

        assert await scheduler.tick() == 1
        assert (await queue.get_job(job_id)).status == JobStatus.PROCESSING

    def test_requires_workers(self, queue):
        with pytest.raises(ValueError):
            Scheduler(queue, [])


class TestMonitorAndCleanup:
    @pytest.mark.asyncio
    async def test_monitor_flags_overload(self, queue, conversations, engine, job_spec):
        scheduler = Scheduler(queue, make_workers(2, conversations, engine), overload_factor=2)
        for _ in range(5):
            await queue.enqueue(job_spec())

        report = await scheduler.monitor_once()
        assert report["overloaded"] is True
        assert report["stats"]["pending"] == 5
        assert report["load_percentage"] == 125.0

    @pytest.mark.asyncio
    async def test_monitor_no_overload(self, queue, conversations, engine, job_spec):
        scheduler = Scheduler(queue, make_workers(2, conversations, engine))
        for _ in range(4):
            await queue.enqueue(job_spec())
        assert (await scheduler.monitor_once())["overloaded"] is False

    @pytest.mark.asyncio
    async def test_cleanup_once(self, queue, conversations, engine, audit, clock, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(1, conversations, engine, audit), audit=audit,
                              cleanup_max_age_hours=1, stale_after_seconds=60)
        await start_and_enqueue(conversations, queue, start_spec, job_spec)
        await scheduler.tick()
        await queue.enqueue(job_spec())
        await queue.claim_next()  # claimed by a process that then died

        clock.advance(2 * 3600)
        report = await scheduler.cleanup_once()
        assert report == {"jobs_deleted": 1, "audit_rows_deleted": 0, "requeued_stale": 1}
        assert (await queue.stats()).pending == 1

    @pytest.mark.asyncio
    async def test_performance_stats(self, queue, conversations, engine, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(4, conversations, engine))
        await start_and_enqueue(conversations, queue, start_spec, job_spec)
        await scheduler.tick()
        await queue.enqueue(job_spec())

        stats = await scheduler.performance_stats()
        assert stats["workers"] == {"total": 4, "active": 0, "idle": 4}
        assert stats["total_processed"] == 1
        assert stats["queue"]["pending"] == 1
        assert stats["load_percentage"] == 12.5


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_processes_queue(self, queue, conversations, engine, start_spec, job_spec):
        scheduler = Scheduler(queue, make_workers(2, conversations, engine), poll_interval=0.01,
                              monitor_interval=0.01)
        _, job_id = await start_and_enqueue(conversations, queue, start_spec, job_spec)

        await scheduler.start_background()
        assert scheduler.is_running
        for _ in range(100):
            if (await queue.get_job(job_id)).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.is_running
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_job(self, queue, conversations, start_spec, job_spec, make_engine):
        scheduler = Scheduler(queue, make_workers(1, conversations, make_engine(delay=0.1)), poll_interval=0.01)
        _, job_id = await start_and_enqueue(conversations, queue, start_spec, job_spec)

        await scheduler.start_background()
        await asyncio.sleep(0.03)
        assert (await queue.get_job(job_id)).status == JobStatus.PROCESSING

        await scheduler.stop()
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_without_start(self, queue, conversations, engine):
        scheduler = Scheduler(queue, make_workers(1, conversations, engine))
        await scheduler.stop()


class TestMetrics:
    def test_counters_and_average(self):
        metrics = PerformanceMetrics()
        metrics.record_success(100)
        metrics.record_success(300)
        metrics.record_failure()

        snap = metrics.snapshot()
        assert snap["total_processed"] == 2
        assert snap["total_failed"] == 1
        assert snap["average_processing_ms"] == 200.0

    def test_jobs_per_second_rolling_window(self):
        now = [1000.0]
        metrics = PerformanceMetrics(window_seconds=10, clock=lambda: now[0])
        for _ in range(5):
            metrics.record_success(10)
        assert metrics.jobs_per_second() == 0.5

        now[0] += 11
        assert metrics.jobs_per_second() == 0.0
        assert metrics.processed == 5

    def test_load_percentage(self):
        assert load_percentage(0, 0, 10) == 0.0
        assert load_percentage(15, 5, 10) == 100.0
        assert load_percentage(3, 0, 2) == 75.0
