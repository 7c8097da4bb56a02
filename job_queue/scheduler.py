"""
Scheduler — Drives a fixed pool of Workers from the JobQueue.

Loops (each a background task):
  poll      every poll_interval: claim up to min(idle workers, batch_cap)
            jobs, hand them to the idle workers 1:1, await them all
  monitor   every monitor_interval: sample queue stats, log load, warn when
            the backlog exceeds max_workers * overload_factor (never scales)
  cleanup   every cleanup_interval_hours: purge old terminal jobs and audit
            rows, return stale in-flight jobs to pending

Per-job failures are isolated: one job raising never affects the others in
the same tick, and queue errors are logged without leaving the loop.

Shutdown drains: stop() lets the in-flight tick finish (bounded by the
worker generation timeout) before the loops exit.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from backend.records import AuditRecordStore
from job_queue.job_queue import JobQueue, cleanup
from job_queue.metrics import PerformanceMetrics, load_percentage
from job_queue.worker import Worker
from models.errors import InvalidJobPayload
from models.schemas import Job

logger = structlog.get_logger()


class Scheduler:
    """
    Usage:
        scheduler = Scheduler(queue, workers)
        await scheduler.start_background()
        ...
        await scheduler.stop()       # drains the in-flight tick
    """

    def __init__(
        self,
        queue: JobQueue,
        workers: list[Worker],
        audit: Optional[AuditRecordStore] = None,
        poll_interval: float = 1.0,
        batch_cap: int = 10,
        monitor_interval: float = 5.0,
        overload_factor: int = 2,
        cleanup_interval_hours: float = 6.0,
        cleanup_max_age_hours: int = 24,
        stale_after_seconds: float = 600,
        metrics: PerformanceMetrics = None,
    ):
        if not workers:
            raise ValueError("Scheduler needs at least one worker")
        self.queue = queue
        self.workers = workers
        self.audit = audit
        self.poll_interval = poll_interval
        self.batch_cap = batch_cap
        self.monitor_interval = monitor_interval
        self.overload_factor = overload_factor
        self.cleanup_interval = cleanup_interval_hours * 3600
        self.cleanup_max_age_hours = cleanup_max_age_hours
        self.stale_after_seconds = stale_after_seconds
        self.metrics = metrics or PerformanceMetrics()

        self._running = False
        self._stop_event = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None
        self._side_tasks: list[asyncio.Task] = []

    @property
    def max_workers(self) -> int:
        return len(self.workers)

    @property
    def is_running(self) -> bool:
        return self._running

    def idle_workers(self) -> list[Worker]:
        return [w for w in self.workers if not w.is_busy]

    # ── Poll ──────────────────────────────────────────────

    async def tick(self) -> int:
        """One poll iteration. Returns the number of jobs dispatched."""
        idle = self.idle_workers()
        wanted = min(len(idle), self.batch_cap)
        if wanted == 0:
            return 0

        claimed: list[Job] = []
        try:
            for _ in range(wanted):
                job = await self.queue.claim_next()
                if job is None:
                    break
                claimed.append(job)
        except Exception as e:
            logger.error("scheduler_claim_error", claimed=len(claimed), error=str(e))

        if not claimed:
            return 0

        logger.debug("scheduler_dispatch", jobs=len(claimed), idle_workers=len(idle))
        await asyncio.gather(*(
            self._run_job(worker, job) for worker, job in zip(idle, claimed)
        ))
        return len(claimed)

    async def _run_job(self, worker: Worker, job: Job) -> None:
        try:
            result = await worker.execute(job)
        except Exception as e:
            self.metrics.record_failure()
            logger.warning("job_execution_failed",
                           job_id=job.id,
                           worker_id=worker.worker_id,
                           error_type=type(e).__name__,
                           error=str(e))
            try:
                await self.queue.mark_failed(
                    job.id, str(e), retryable=not isinstance(e, InvalidJobPayload),
                )
            except Exception as mark_error:
                logger.error("job_mark_failed_error", job_id=job.id, error=str(mark_error))
            return

        self.metrics.record_success(result.elapsed_ms)
        try:
            await self.queue.mark_completed(job.id, result.model_dump(mode="json"))
        except Exception as e:
            # Left in processing; requeue_stale picks it up later
            logger.error("job_mark_completed_error", job_id=job.id, error=str(e))

    async def _poll_loop(self):
        logger.info("scheduler_poll_started",
                    workers=self.max_workers,
                    interval=self.poll_interval,
                    batch_cap=self.batch_cap)
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e))
            await self._sleep(self.poll_interval)
        logger.info("scheduler_poll_stopped")

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ── Monitor ───────────────────────────────────────────

    async def monitor_once(self) -> dict[str, Any]:
        stats = await self.queue.stats()
        load = load_percentage(stats.pending, stats.processing, self.max_workers)
        busy = self.max_workers - len(self.idle_workers())

        logger.info("scheduler_load",
                    pending=stats.pending,
                    processing=stats.processing,
                    active_workers=busy,
                    max_workers=self.max_workers,
                    load_percentage=load)

        overloaded = stats.pending > self.max_workers * self.overload_factor
        if overloaded:
            logger.warning("scheduler_overloaded",
                           pending=stats.pending,
                           threshold=self.max_workers * self.overload_factor,
                           hint="raise worker.max_workers or run another worker process")
        return {"stats": stats.model_dump(), "load_percentage": load, "overloaded": overloaded}

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.monitor_once()
            except Exception as e:
                logger.error("scheduler_monitor_error", error=str(e))
            await self._sleep(self.monitor_interval)

    # ── Cleanup ───────────────────────────────────────────

    async def cleanup_once(self) -> dict[str, int]:
        report = await cleanup(self.queue, self.cleanup_max_age_hours, self.audit)
        report["requeued_stale"] = await self.queue.requeue_stale(self.stale_after_seconds)
        logger.info("scheduler_cleanup_done", **report)
        return report

    async def _cleanup_loop(self):
        while self._running:
            await self._sleep(self.cleanup_interval)
            if not self._running:
                break
            try:
                await self.cleanup_once()
            except Exception as e:
                logger.error("scheduler_cleanup_error", error=str(e))

    # ── Lifecycle ─────────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        """Start poll, monitor and cleanup loops. Returns the poll task handle."""
        self._running = True
        self._stop_event.clear()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._side_tasks = [
            asyncio.create_task(self._monitor_loop()),
            asyncio.create_task(self._cleanup_loop()),
        ]
        logger.info("scheduler_started", workers=self.max_workers)
        return self._poll_task

    async def stop(self):
        """Stop new ticks, wait for the in-flight one, then stop the side loops."""
        if not self._running and self._poll_task is None:
            return
        self._running = False
        self._stop_event.set()

        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

        for task in self._side_tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._side_tasks.clear()
        logger.info("scheduler_stopped", **self.metrics.snapshot())

    async def performance_stats(self) -> dict[str, Any]:
        stats = await self.queue.stats()
        active = self.max_workers - len(self.idle_workers())
        return {
            "workers": {
                "total": self.max_workers,
                "active": active,
                "idle": self.max_workers - active,
            },
            **self.metrics.snapshot(),
            "queue": stats.model_dump(),
            "load_percentage": load_percentage(stats.pending, stats.processing, self.max_workers),
        }
