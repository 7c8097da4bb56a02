"""
Job Queue — Priority-ordered, exclusive-claim work queue on the shared store.

Queue Topology (all keys prefixed with the namespace):
  <ns>:queue:pending      Sorted set. Member = serialized Job, score = composite
                          priority score (higher is served first)
  <ns>:queue:processing   Hash job_id → Job claimed by exactly one worker
  <ns>:queue:completed    Hash job_id → Job with result
  <ns>:queue:failed       Hash job_id → Job with final error
  <ns>:queue:sequence     Counter giving every insert a FIFO sequence number

Scoring:
  band:       high=100, medium=50, low=10
  on retry:   band - 10 * retry_count, never below the low band
  composite:  band * 1e9 - sequence
              → strict priority across bands, FIFO inside a band

Claim:
  ZREVRANGE picks the top member, ZREM removes it. Only the caller whose
  ZREM returned 1 owns the job; a caller that lost the race moves on to the
  next member. Delivery is at-least-once: a process dying between claim and
  completion leaves the job in processing until requeue_stale() returns it.
"""
from __future__ import annotations

import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from backend.records import AuditRecordStore
from database.kv_base import KeyValueBackend
from models.errors import RetriesExhausted
from models.schemas import (
    EnqueueReceipt, Job, JobPriority, JobSpec, JobStatus, QueueStats,
)

logger = structlog.get_logger()

PRIORITY_SCORES: dict[JobPriority, int] = {
    JobPriority.HIGH: 100,
    JobPriority.MEDIUM: 50,
    JobPriority.LOW: 10,
}
RETRY_DECAY = 10
MIN_SCORE = PRIORITY_SCORES[JobPriority.LOW]
SCORE_BAND_WIDTH = 1_000_000_000

# Relative wait per band, applied to the estimated seconds per job
_WAIT_MULTIPLIER: dict[JobPriority, float] = {
    JobPriority.HIGH: 0.5,
    JobPriority.MEDIUM: 1.0,
    JobPriority.LOW: 2.0,
}


def priority_score(priority: JobPriority, retry_count: int = 0) -> int:
    """Band score for a job, decayed by retry count and clamped at the low band."""
    return max(PRIORITY_SCORES[priority] - RETRY_DECAY * retry_count, MIN_SCORE)


def composite_score(job: Job) -> float:
    return float(priority_score(job.priority, job.retry_count) * SCORE_BAND_WIDTH - job.sequence)


def estimate_wait_seconds(
    priority: JobPriority,
    queue_position: int,
    capacity: int,
    seconds_per_job: float = 2.0,
) -> int:
    """Rough wait estimate: one batch of `capacity` jobs per seconds_per_job."""
    batches_ahead = queue_position // max(capacity, 1)
    return int(math.ceil(seconds_per_job * _WAIT_MULTIPLIER[priority] * (1 + batches_ahead)))


class JobQueue:
    """
    Usage:
        queue = JobQueue(backend, namespace="ia")
        receipt = await queue.enqueue(JobSpec(...))
        job = await queue.claim_next()
        await queue.mark_completed(job.id, {...})   # or mark_failed(job.id, "boom")
    """

    CLAIM_ATTEMPTS = 5

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str = "ia",
        default_max_retries: int = 3,
        capacity: int = 10,
        seconds_per_job: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_max_retries = default_max_retries
        self.capacity = capacity
        self.seconds_per_job = seconds_per_job
        self._clock = clock

        self.pending_key = f"{namespace}:queue:pending"
        self.processing_key = f"{namespace}:queue:processing"
        self.completed_key = f"{namespace}:queue:completed"
        self.failed_key = f"{namespace}:queue:failed"
        self.sequence_key = f"{namespace}:queue:sequence"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _push_pending(self, job: Job) -> str:
        job.sequence = await self.backend.incr(self.sequence_key)
        job.enqueued_at = self._now()
        member = job.model_dump_json()
        await self.backend.zadd(self.pending_key, {member: composite_score(job)})
        return member

    # ── Enqueue ───────────────────────────────────────────

    async def enqueue(self, spec: JobSpec) -> EnqueueReceipt:
        job = Job(
            type=spec.type,
            conversation_id=spec.conversation_id,
            user_id=spec.user_id,
            payload=spec.payload,
            priority=spec.effective_priority,
            status=JobStatus.PENDING,
            retry_count=0,
            max_retries=spec.max_retries if spec.max_retries is not None else self.default_max_retries,
            created_at=self._now(),
        )
        member = await self._push_pending(job)
        rank = await self.backend.zrevrank(self.pending_key, member)
        position = (rank + 1) if rank is not None else 1

        logger.info("job_enqueued",
                    job_id=job.id,
                    job_type=job.type.value,
                    conversation_id=job.conversation_id,
                    priority=job.priority.value,
                    queue_position=position)
        return EnqueueReceipt(
            job_id=job.id,
            priority=job.priority,
            queue_position=position,
            estimated_wait_seconds=estimate_wait_seconds(
                job.priority, position, self.capacity, self.seconds_per_job,
            ),
        )

    # ── Claim ─────────────────────────────────────────────

    async def claim_next(self) -> Optional[Job]:
        for _ in range(self.CLAIM_ATTEMPTS):
            top = await self.backend.zrevrange(self.pending_key, 0, 0)
            if not top:
                return None
            member = top[0]

            removed = await self.backend.zrem(self.pending_key, member)
            if not removed:
                # Another claimer won this member
                continue

            job = Job.model_validate_json(member)
            job.status = JobStatus.PROCESSING
            job.started_at = self._now()
            try:
                await self.backend.hset(self.processing_key, job.id, job.model_dump_json())
            except Exception:
                # Owned but not yet in processing: put it back or it is lost
                await self.backend.zadd(self.pending_key, {member: composite_score(job)})
                logger.warning("job_claim_rolled_back", job_id=job.id)
                raise
            logger.info("job_claimed",
                        job_id=job.id,
                        job_type=job.type.value,
                        attempt=job.retry_count + 1)
            return job

        logger.debug("job_claim_contended", attempts=self.CLAIM_ATTEMPTS)
        return None

    # ── Completion bookkeeping ────────────────────────────

    async def _take_processing(self, job_id: str) -> Optional[Job]:
        raw = await self.backend.hget(self.processing_key, job_id)
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def mark_completed(self, job_id: str, result: dict[str, Any]) -> Optional[Job]:
        job = await self._take_processing(job_id)
        if job is None:
            logger.warning("job_not_in_flight", job_id=job_id, op="mark_completed")
            return None

        job.status = JobStatus.COMPLETED
        job.completed_at = self._now()
        job.result = result
        await self.backend.hset(self.completed_key, job_id, job.model_dump_json())
        await self.backend.hdel(self.processing_key, job_id)
        logger.info("job_completed", job_id=job_id, job_type=job.type.value)
        return job

    async def mark_failed(self, job_id: str, error: str, retryable: bool = True) -> Optional[Job]:
        """Re-queue with decay while retries remain; `retryable=False` fails it now."""
        job = await self._take_processing(job_id)
        if job is None:
            logger.warning("job_not_in_flight", job_id=job_id, op="mark_failed")
            return None

        now = self._now()
        if retryable and job.retry_count < job.max_retries:
            job.retry_count += 1
            job.status = JobStatus.PENDING
            job.last_error = error
            job.last_retry_at = now
            job.started_at = None
            await self._push_pending(job)
            logger.info("job_scheduled_for_retry",
                        job_id=job_id,
                        retry_count=job.retry_count,
                        max_retries=job.max_retries,
                        score=priority_score(job.priority, job.retry_count),
                        error=error)
        else:
            job.status = JobStatus.FAILED
            job.failed_at = now
            job.error = str(RetriesExhausted(job_id, job.retry_count + 1, error)) if retryable else error
            job.last_error = error
            await self.backend.hset(self.failed_key, job_id, job.model_dump_json())
            logger.warning("job_failed_permanently",
                           job_id=job_id,
                           attempts=job.retry_count + 1,
                           retryable=retryable,
                           error=error)

        await self.backend.hdel(self.processing_key, job_id)
        return job

    # ── Inspection ────────────────────────────────────────

    async def stats(self) -> QueueStats:
        return QueueStats(
            pending=await self.backend.zcard(self.pending_key),
            processing=await self.backend.hlen(self.processing_key),
            completed=await self.backend.hlen(self.completed_key),
            failed=await self.backend.hlen(self.failed_key),
        )

    async def estimated_wait_seconds(self, stats: QueueStats = None) -> int:
        """Time for the current backlog to drain at full capacity."""
        stats = stats or await self.stats()
        backlog = stats.pending + stats.processing
        if backlog == 0:
            return 0
        batches = math.ceil(backlog / max(self.capacity, 1))
        return int(math.ceil(batches * self.seconds_per_job))

    async def get_job(self, job_id: str) -> Optional[Job]:
        for key in (self.processing_key, self.completed_key, self.failed_key):
            raw = await self.backend.hget(key, job_id)
            if raw is not None:
                return Job.model_validate_json(raw)
        for member in await self.backend.zrevrange(self.pending_key, 0, -1):
            job = Job.model_validate_json(member)
            if job.id == job_id:
                return job
        return None

    # ── Maintenance ───────────────────────────────────────

    async def sweep_old(self, max_age_seconds: float) -> int:
        """Delete completed/failed entries older than max_age_seconds."""
        cutoff = self._now() - timedelta(seconds=max_age_seconds)
        deleted = 0
        for key, stamp in ((self.completed_key, "completed_at"), (self.failed_key, "failed_at")):
            entries = await self.backend.hgetall(key)
            for job_id, raw in entries.items():
                job = Job.model_validate_json(raw)
                finished_at = getattr(job, stamp)
                if finished_at is not None and finished_at < cutoff:
                    deleted += await self.backend.hdel(key, job_id)
        if deleted:
            logger.info("job_cleanup", deleted=deleted, max_age_seconds=max_age_seconds)
        return deleted

    async def requeue_stale(self, max_processing_seconds: float) -> int:
        """Return jobs stuck in processing (claimer died) to pending."""
        cutoff = self._now() - timedelta(seconds=max_processing_seconds)
        requeued = 0
        entries = await self.backend.hgetall(self.processing_key)
        for job_id, raw in entries.items():
            job = Job.model_validate_json(raw)
            if job.started_at is None or job.started_at >= cutoff:
                continue
            # hdel first: its result decides who requeues when several processes sweep
            if not await self.backend.hdel(self.processing_key, job_id):
                continue
            job.status = JobStatus.PENDING
            job.started_at = None
            await self._push_pending(job)
            requeued += 1
            logger.warning("job_requeued_stale", job_id=job_id, job_type=job.type.value)
        return requeued


# ──────────────────────────────────────────────────────────────
#  Manual cleanup
# ──────────────────────────────────────────────────────────────

MIN_CLEANUP_HOURS = 1
MAX_CLEANUP_HOURS = 168


async def cleanup(
    queue: JobQueue,
    max_age_hours: int = 24,
    audit: Optional[AuditRecordStore] = None,
) -> dict[str, int]:
    """
    Purge terminal jobs (and audit rows, when a store is given) older than
    max_age_hours. Accepts 1 hour to 1 week.
    """
    if not MIN_CLEANUP_HOURS <= max_age_hours <= MAX_CLEANUP_HOURS:
        raise ValueError(
            f"max_age_hours must be between {MIN_CLEANUP_HOURS} and {MAX_CLEANUP_HOURS}, "
            f"got {max_age_hours}"
        )

    jobs_deleted = await queue.sweep_old(max_age_hours * 3600)
    audit_deleted = 0
    if audit is not None:
        try:
            audit_deleted = await audit.purge_older_than(max_age_hours)
        except Exception as e:
            logger.error("audit_purge_failed", max_age_hours=max_age_hours, error=str(e))

    return {"jobs_deleted": jobs_deleted, "audit_rows_deleted": audit_deleted}
