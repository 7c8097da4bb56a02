"""
Worker — Executes one claimed job at a time.

Flow per job:
  1. Load the conversation (must exist; must be active except for summaries)
  2. Generate text under a hard timeout
  3. Append the bot message (not for summaries) and write the audit row
  4. Return a JobResult

A Worker never touches the queue: the Scheduler claims the job, hands it
over, and routes the outcome to mark_completed / mark_failed.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Awaitable, Callable, Optional

import structlog

from backend.records import AuditRecordStore
from core.engine import GenerationBackend
from database.conversation_store import ConversationStore
from models.errors import (
    ConversationNotActive, ConversationNotFound, GenerationBackendFailure, InvalidJobPayload,
    WorkerBusyError,
)
from models.schemas import (
    AuditRecord, ConversationContext, ConversationType, GeneratedText, GenerationRequest,
    Job, JobResult, JobType, MessageType, NewMessage,
)

logger = structlog.get_logger()

# Where a conversation summary belongs, by conversation type
SUMMARY_TARGET_TABLES: dict[ConversationType, str] = {
    ConversationType.BILAN: "bilans",
    ConversationType.ACTIVITY: "activities",
}


def summary_target(context: ConversationContext) -> tuple[str, Optional[str]]:
    """(target_table, target_id) for a summary, read from the context metadata."""
    table = SUMMARY_TARGET_TABLES.get(context.type, "ai_responses")
    meta = context.metadata
    target_id = (
        meta.get("bilanId") or meta.get("bilan_id")
        or meta.get("activityId") or meta.get("activity_id")
    )
    return table, target_id


class Worker:
    """
    One execution slot. `is_busy` is true from the moment execute() is
    entered until it returns or raises.
    """

    def __init__(
        self,
        worker_id: int,
        conversations: ConversationStore,
        engine: GenerationBackend,
        audit: Optional[AuditRecordStore] = None,
        generation_timeout: float = 60.0,
    ):
        self.worker_id = worker_id
        self.conversations = conversations
        self.engine = engine
        self.audit = audit
        self.generation_timeout = generation_timeout
        self._current_job: Optional[Job] = None

        self._handlers: dict[JobType, Callable[[Job, ConversationContext], Awaitable[JobResult]]] = {
            JobType.FIRST_RESPONSE: self._first_response,
            JobType.RESPONSE: self._response,
            JobType.UNFINISHED_EXCHANGE: self._unfinished_exchange,
            JobType.SUMMARY: self._summary,
        }

    @property
    def is_busy(self) -> bool:
        return self._current_job is not None

    @property
    def current_job(self) -> Optional[Job]:
        return self._current_job

    async def execute(self, job: Job) -> JobResult:
        if self._current_job is not None:
            raise WorkerBusyError(self.worker_id, self._current_job.id)

        self._current_job = job
        started = time.monotonic()
        try:
            handler = self._handlers[job.type]
            context = await self.conversations.get(job.conversation_id)
            if context is None:
                raise ConversationNotFound(job.conversation_id)
            if job.type != JobType.SUMMARY and not context.is_active:
                raise ConversationNotActive(job.conversation_id, context.status.value)

            logger.info("worker_job_started",
                        worker_id=self.worker_id,
                        job_id=job.id,
                        job_type=job.type.value,
                        conversation_id=job.conversation_id)

            result = await handler(job, context)
            result.elapsed_ms = round((time.monotonic() - started) * 1000, 2)

            logger.info("worker_job_done",
                        worker_id=self.worker_id,
                        job_id=job.id,
                        elapsed_ms=result.elapsed_ms)
            return result
        finally:
            self._current_job = None

    # ── Generation ────────────────────────────────────────

    async def _generate(self, job: Job, context: ConversationContext) -> GeneratedText:
        request = GenerationRequest(
            job_type=job.type,
            context=context,
            user_message=job.payload.user_message,
            last_answer=job.payload.last_answer,
        )
        try:
            return await asyncio.wait_for(
                self.engine.generate(request), timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationBackendFailure(
                f"generation timed out after {self.generation_timeout}s"
            ) from e
        except GenerationBackendFailure:
            raise
        except Exception as e:
            raise GenerationBackendFailure(str(e)) from e

    async def _reply(
        self, job: Job, context: ConversationContext, extra_metadata: dict = None,
    ) -> JobResult:
        """Generate, append the bot message, record it. Shared by the reply-type jobs."""
        generated = await self._generate(job, context)
        metadata = {"source": "ai", "model": generated.model, "type": job.type.value}
        metadata.update(extra_metadata or {})

        message_id, _ = await self.conversations.append_message(
            job.conversation_id,
            NewMessage(content=generated.text, type=MessageType.BOT, metadata=metadata),
        )
        await self._record(AuditRecord(
            conversation_id=job.conversation_id,
            user_id=job.user_id,
            text=generated.text,
            message_type="text",
            metadata={**metadata, "message_id": message_id, "job_id": job.id},
        ))
        return JobResult(
            job_type=job.type,
            text=generated.text,
            message_id=message_id,
            worker_id=self.worker_id,
            elapsed_ms=0.0,
            model=generated.model,
        )

    async def _record(self, record: AuditRecord) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.create_record(record)
        except Exception as e:
            logger.error("audit_write_failed",
                         worker_id=self.worker_id,
                         conversation_id=record.conversation_id,
                         message_type=record.message_type,
                         error=str(e))

    # ── Per-type handlers ─────────────────────────────────

    async def _first_response(self, job: Job, context: ConversationContext) -> JobResult:
        return await self._reply(job, context)

    async def _response(self, job: Job, context: ConversationContext) -> JobResult:
        if not job.payload.user_message.strip():
            raise InvalidJobPayload(job.id, "response job has no user_message")
        return await self._reply(job, context)

    async def _unfinished_exchange(self, job: Job, context: ConversationContext) -> JobResult:
        if not job.payload.last_answer.strip():
            raise InvalidJobPayload(job.id, "unfinished_exchange job has no last_answer")
        linkage = {}
        if job.payload.previous_response_id:
            linkage["previous_response_id"] = job.payload.previous_response_id
        return await self._reply(job, context, linkage)

    async def _summary(self, job: Job, context: ConversationContext) -> JobResult:
        generated = await self._generate(job, context)
        target_table, target_id = summary_target(context)
        if target_id is None and context.type in SUMMARY_TARGET_TABLES:
            logger.warning("summary_target_missing",
                           conversation_id=context.id, type=context.type.value)

        await self._record(AuditRecord(
            conversation_id=job.conversation_id,
            user_id=job.user_id,
            text=json.dumps({
                "summary": generated.text,
                "target_table": target_table,
                "target_id": target_id,
                "summary_type": "conversation_summary",
            }),
            message_type="summary",
            metadata={"source": "ai", "model": generated.model, "job_id": job.id},
        ))
        return JobResult(
            job_type=job.type,
            text=generated.text,
            message_id=None,
            worker_id=self.worker_id,
            elapsed_ms=0.0,
            model=generated.model,
        )
