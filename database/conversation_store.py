"""
ConversationStore — TTL-bounded conversation state on the shared key-value store.

Layout:
  <ns>:conversation:<id>   JSON-serialized ConversationContext, written with
                           a TTL equal to the sliding window (default 30 min)

Lifecycle:
  start()           — create with TTL
  append_message()  — read-modify-write, TTL reset on every write (sliding expiry)
  get()             — double-checks last_activity + ttl; deletes locally expired entries
  complete()        — mark completed; the entry lives until its TTL runs out
  end()             — summary + delete + cascade delete of audit rows
  sweep_expired()   — delete orphans (no/invalid TTL), corrupt and expired entries

Concurrency:
  Writers on the same conversation inside one process are serialized by a
  per-conversation asyncio.Lock. Writers in different processes are not:
  the last write wins. In practice a conversation has one logical writer
  in flight (the human turn or one worker).
"""
from __future__ import annotations

import asyncio
import time
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from backend.records import AuditRecordStore
from database.kv_base import KeyValueBackend
from models.errors import ConversationNotActive, ConversationNotFound
from models.schemas import (
    ChatMessage, ConversationContext, ConversationStatus, ConversationSummary,
    MessageType, NewMessage, StartConversation, SweepReport, new_conversation_id,
)

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 30 * 60


class ConversationStore:
    """
    Owns the canonical ConversationContext. Workers and request handlers
    read-modify-write it only through this API.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        audit: Optional[AuditRecordStore] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        namespace: str = "ia",
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── Keys / time ───────────────────────────────────────

    def _key(self, conversation_id: str) -> str:
        return f"{self.namespace}:conversation:{conversation_id}"

    @property
    def _key_pattern(self) -> str:
        return f"{self.namespace}:conversation:*"

    def _id_from_key(self, key: str) -> str:
        return key[len(f"{self.namespace}:conversation:"):]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _is_expired(self, context: ConversationContext) -> bool:
        deadline = context.last_activity + timedelta(seconds=self.ttl_seconds)
        return self._now() >= deadline

    async def _write(self, context: ConversationContext) -> None:
        await self.backend.set(
            self._key(context.id), context.model_dump_json(), ex=self.ttl_seconds,
        )

    async def _load(self, conversation_id: str) -> Optional[ConversationContext]:
        raw = await self.backend.get(self._key(conversation_id))
        if raw is None:
            return None
        try:
            return ConversationContext.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("conversation_corrupt_entry_deleted",
                           conversation_id=conversation_id, error=str(e))
            await self.backend.delete(self._key(conversation_id))
            return None

    def _touch(self, context: ConversationContext) -> None:
        """Bump last_activity (strictly increasing) and the write version."""
        now = self._now()
        if now <= context.last_activity:
            now = context.last_activity + timedelta(microseconds=1)
        context.last_activity = now
        context.version += 1

    # ── Operations ────────────────────────────────────────

    async def start(self, spec: StartConversation) -> tuple[str, ConversationContext]:
        conversation_id = spec.id or new_conversation_id()
        now = self._now()
        context = ConversationContext(
            id=conversation_id,
            user_id=spec.user_id,
            type=spec.type,
            start_time=now,
            last_activity=now,
            messages=[],
            metadata=dict(spec.metadata),
            status=ConversationStatus.ACTIVE,
            ai_rules=spec.ai_rules,
            activity_data=spec.activity_data,
            version=1,
        )
        async with self._lock_for(conversation_id):
            await self._write(context)
        logger.info("conversation_started",
                    conversation_id=conversation_id,
                    user_id=spec.user_id,
                    type=spec.type.value,
                    ttl_seconds=self.ttl_seconds)
        return conversation_id, context

    async def append_message(
        self, conversation_id: str, message: NewMessage,
    ) -> tuple[str, ConversationContext]:
        async with self._lock_for(conversation_id):
            context = await self.get(conversation_id)
            if context is None:
                raise ConversationNotFound(conversation_id)
            if not context.is_active:
                raise ConversationNotActive(conversation_id, context.status.value)

            chat_message = ChatMessage(
                content=message.content,
                type=message.type,
                timestamp=self._now(),
                metadata=dict(message.metadata),
            )
            context.messages.append(chat_message)
            self._touch(context)
            await self._write(context)

        logger.debug("conversation_message_appended",
                     conversation_id=conversation_id,
                     message_id=chat_message.id,
                     message_type=message.type.value,
                     message_count=len(context.messages))
        return chat_message.id, context

    async def get(self, conversation_id: str) -> Optional[ConversationContext]:
        """Return the context, or None when absent or expired. Never raises for those."""
        context = await self._load(conversation_id)
        if context is None:
            return None
        if self._is_expired(context):
            # Backing TTL granularity can lag the logical deadline
            await self.backend.delete(self._key(conversation_id))
            logger.info("conversation_expired_on_read", conversation_id=conversation_id)
            return None
        return context

    async def complete(self, conversation_id: str) -> ConversationContext:
        async with self._lock_for(conversation_id):
            context = await self.get(conversation_id)
            if context is None:
                raise ConversationNotFound(conversation_id)
            context.status = ConversationStatus.COMPLETED
            self._touch(context)
            await self._write(context)
        logger.info("conversation_completed", conversation_id=conversation_id)
        return context

    async def end(self, conversation_id: str) -> ConversationSummary:
        async with self._lock_for(conversation_id):
            context = await self.get(conversation_id)
            if context is None:
                raise ConversationNotFound(conversation_id)
            end_time = self._now()
            summary = ConversationSummary(
                conversation_id=context.id,
                user_id=context.user_id,
                type=context.type,
                start_time=context.start_time,
                end_time=end_time,
                duration_ms=int((end_time - context.start_time).total_seconds() * 1000),
                message_count=len(context.messages),
                user_message_count=len(context.messages_of(MessageType.USER)),
                bot_message_count=len(context.messages_of(MessageType.BOT)),
            )
            await self.backend.delete(self._key(conversation_id))

        await self._cascade_audit_delete(conversation_id)
        logger.info("conversation_ended",
                    conversation_id=conversation_id,
                    message_count=summary.message_count,
                    duration_ms=summary.duration_ms)
        return summary

    async def _cascade_audit_delete(self, conversation_id: str) -> int:
        if self.audit is None:
            return 0
        try:
            deleted = await self.audit.delete_for_conversation(conversation_id)
            if deleted:
                logger.info("audit_rows_deleted", conversation_id=conversation_id, count=deleted)
            return deleted
        except Exception as e:
            logger.error("audit_cascade_delete_failed",
                         conversation_id=conversation_id, error=str(e))
            return 0

    async def sweep_expired(self) -> SweepReport:
        """
        Delete entries the TTL alone will not reclaim: keys written without a
        TTL or with a TTL beyond the window (orphans), corrupt payloads, and
        entries whose logical deadline has passed.
        """
        report = SweepReport()
        async for key in self.backend.scan_iter(self._key_pattern):
            report.scanned += 1
            conversation_id = self._id_from_key(key)
            ttl = await self.backend.ttl(key)
            if ttl == -2:
                continue  # vanished between scan and TTL check

            reason = None
            if ttl == -1 or ttl > self.ttl_seconds:
                reason = "orphaned"
            else:
                raw = await self.backend.get(key)
                if raw is None:
                    continue
                try:
                    context = ConversationContext.model_validate_json(raw)
                except ValidationError:
                    reason = "corrupted"
                else:
                    if self._is_expired(context):
                        reason = "expired"

            if reason is None:
                continue

            await self.backend.delete(key)
            setattr(report, reason, getattr(report, reason) + 1)
            await self._cascade_audit_delete(conversation_id)
            logger.debug("conversation_swept", conversation_id=conversation_id, reason=reason)

        if report.deleted:
            logger.info("conversation_sweep_done",
                        scanned=report.scanned,
                        orphaned=report.orphaned,
                        expired=report.expired,
                        corrupted=report.corrupted)
        return report

    async def stats(self) -> dict[str, int]:
        active = 0
        total = 0
        async for key in self.backend.scan_iter(self._key_pattern):
            total += 1
            context = await self._load(self._id_from_key(key))
            if context is not None and context.is_active and not self._is_expired(context):
                active += 1
        return {"active_conversations": active, "total_conversations": total}


# ──────────────────────────────────────────────────────────────
#  Background sweeper
# ──────────────────────────────────────────────────────────────

class ConversationSweeper:
    """
    Background task that periodically runs ConversationStore.sweep_expired().
    """

    def __init__(self, store: ConversationStore, interval_seconds: float = 300):
        self.store = store
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("conversation_sweeper_started", interval=self.interval)
        while True:
            try:
                await self.store.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("conversation_sweep_error", error=str(e))
            await asyncio.sleep(self.interval)
