"""
Runtime wiring — builds every long-lived object from Settings.

The entry points (worker process, API) call build_runtime(), connect(),
and close() at the end. Nothing here is a module-level singleton, so
tests can build a Runtime around in-memory backends.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from backend.records import AuditRecordStore, create_audit_store
from config.settings import Settings, get_settings
from core.engine import GenerationBackend, create_generation_backend
from database.conversation_store import ConversationStore
from database.kv_base import KeyValueBackend
from database.kv_factory import create_backend
from job_queue.job_queue import JobQueue
from job_queue.worker import Worker

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    backend: KeyValueBackend
    audit: AuditRecordStore
    engine: GenerationBackend
    queue: JobQueue
    conversations: ConversationStore
    workers: list[Worker] = field(default_factory=list)

    async def connect(self) -> None:
        await self.backend.connect()

    async def check_connections(self) -> dict:
        """Ping the store and read queue stats; raises TransientInfraError when down."""
        await self.backend.ping()
        stats = await self.queue.stats()
        logger.info("runtime_connections_ok", **stats.model_dump())
        return stats.model_dump()

    def build_workers(self) -> list[Worker]:
        cfg = self.settings.worker
        self.workers = [
            Worker(
                worker_id=i + 1,
                conversations=self.conversations,
                engine=self.engine,
                audit=self.audit,
                generation_timeout=cfg.generation_timeout,
            )
            for i in range(cfg.max_workers)
        ]
        return self.workers

    async def close(self) -> None:
        for closer in (self.engine.close, self.audit.close, self.backend.close):
            try:
                await closer()
            except Exception as e:
                logger.error("runtime_close_error", error=str(e))
        logger.info("runtime_closed")


def build_runtime(
    settings: Optional[Settings] = None,
    backend: Optional[KeyValueBackend] = None,
    audit: Optional[AuditRecordStore] = None,
    engine: Optional[GenerationBackend] = None,
    clock: Callable[[], float] = time.time,
) -> Runtime:
    """Construct the runtime; any collaborator may be injected instead."""
    settings = settings or get_settings()
    backend = backend or create_backend({
        "backend": settings.store.backend,
        "redis_url": settings.store.redis_url,
    })
    audit = audit or create_audit_store(settings.audit)
    engine = engine or create_generation_backend(settings.llm)

    namespace = settings.store.namespace
    queue = JobQueue(
        backend,
        namespace=namespace,
        default_max_retries=settings.worker.default_max_retries,
        capacity=settings.worker.max_workers,
        seconds_per_job=settings.worker.estimated_job_seconds,
        clock=clock,
    )
    conversations = ConversationStore(
        backend,
        audit=audit,
        ttl_seconds=settings.conversation.ttl_seconds,
        namespace=namespace,
        clock=clock,
    )
    return Runtime(
        settings=settings,
        backend=backend,
        audit=audit,
        engine=engine,
        queue=queue,
        conversations=conversations,
    )
