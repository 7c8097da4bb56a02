"""
FastAPI Application — thin HTTP surface over the queue and conversation store.

Provides:
- Job submission, lookup, stats and manual cleanup
- Conversation start / read / append / complete / end
- Health check

Generation itself never runs in the request path: handlers enqueue jobs
and the worker process (job_queue.runner) executes them.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from config.settings import get_settings
from core.bootstrap import Runtime, build_runtime
from job_queue.job_queue import cleanup
from models.errors import ConversationNotActive, ConversationNotFound, TransientInfraError
from models.schemas import (
    ActivityData, AIRule, ConversationType, JobPayload, JobSpec, JobType, MessageType,
    NewMessage, StartConversation,
)
from utils.log_setup import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StartConversationRequest(BaseModel):
    user_id: str
    type: ConversationType
    id: Optional[str] = None
    metadata: dict[str, Any] = {}
    ai_rules: Optional[list[AIRule]] = None
    activity_data: Optional[ActivityData] = None
    generate_first_response: bool = True


class AddMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    type: MessageType = MessageType.USER
    metadata: dict[str, Any] = {}
    generate_reply: bool = True

    @field_validator("content")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class CompleteConversationRequest(BaseModel):
    generate_summary: bool = True


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(runtime: Runtime = None) -> FastAPI:
    """
    Build the app. When no runtime is injected one is built from settings
    and owned (connected and closed) by the app lifespan.
    """
    owns_runtime = runtime is None
    if owns_runtime:
        settings = get_settings()
        configure_logging(settings.log_level, settings.log_format)
        runtime = build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_runtime:
            await runtime.connect()
        logger.info("api_started", owns_runtime=owns_runtime)
        yield
        if owns_runtime:
            await runtime.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="Converse Worker API",
        description="Asynchronous AI conversation jobs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────

    @app.exception_handler(ConversationNotFound)
    async def _not_found(request: Request, exc: ConversationNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConversationNotActive)
    async def _not_active(request: Request, exc: ConversationNotActive):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientInfraError)
    async def _transient(request: Request, exc: TransientInfraError):
        logger.warning("api_store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "store unavailable"})

    # ══════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        try:
            store_ok = await runtime.backend.ping()
        except TransientInfraError:
            store_ok = False
        return {
            "status": "healthy" if store_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": type(runtime.backend).__name__,
            "store_ok": store_ok,
        }

    # ══════════════════════════════════════════════════════
    #  JOBS
    # ══════════════════════════════════════════════════════

    @app.post("/api/v1/jobs", status_code=202)
    async def submit_job(spec: JobSpec):
        receipt = await runtime.queue.enqueue(spec)
        return receipt.model_dump()

    @app.get("/api/v1/jobs/stats")
    async def job_stats():
        stats = await runtime.queue.stats()
        return {
            **stats.model_dump(),
            "estimated_wait_seconds": await runtime.queue.estimated_wait_seconds(stats),
        }

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await runtime.queue.get_job(job_id)
        if not job:
            raise HTTPException(404, "Job not found")
        return job.model_dump(mode="json")

    @app.post("/api/v1/jobs/cleanup")
    async def cleanup_jobs(max_age_hours: int = Query(24)):
        try:
            report = await cleanup(runtime.queue, max_age_hours, runtime.audit)
        except ValueError as e:
            raise HTTPException(422, str(e))
        return {"max_age_hours": max_age_hours, **report}

    # ══════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════

    @app.post("/api/v1/conversations", status_code=201)
    async def start_conversation(req: StartConversationRequest):
        conversation_id, context = await runtime.conversations.start(StartConversation(
            id=req.id,
            user_id=req.user_id,
            type=req.type,
            metadata=req.metadata,
            ai_rules=req.ai_rules,
            activity_data=req.activity_data,
        ))
        body: dict[str, Any] = {
            "conversation_id": conversation_id,
            "context": context.model_dump(mode="json"),
        }
        if req.generate_first_response:
            receipt = await runtime.queue.enqueue(JobSpec(
                type=JobType.FIRST_RESPONSE,
                conversation_id=conversation_id,
                user_id=req.user_id,
            ))
            body["job"] = receipt.model_dump()
        return body

    @app.get("/api/v1/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        context = await runtime.conversations.get(conversation_id)
        if not context:
            raise ConversationNotFound(conversation_id)
        return context.model_dump(mode="json")

    @app.post("/api/v1/conversations/{conversation_id}/messages", status_code=201)
    async def add_message(conversation_id: str, req: AddMessageRequest):
        message_id, context = await runtime.conversations.append_message(
            conversation_id,
            NewMessage(content=req.content, type=req.type, metadata=req.metadata),
        )
        body: dict[str, Any] = {"message_id": message_id, "message_count": len(context.messages)}
        if req.generate_reply and req.type == MessageType.USER:
            receipt = await runtime.queue.enqueue(JobSpec(
                type=JobType.RESPONSE,
                conversation_id=conversation_id,
                user_id=context.user_id,
                payload=JobPayload(user_message=req.content),
            ))
            body["job"] = receipt.model_dump()
        return body

    @app.post("/api/v1/conversations/{conversation_id}/complete")
    async def complete_conversation(conversation_id: str, req: CompleteConversationRequest = None):
        req = req or CompleteConversationRequest()
        context = await runtime.conversations.complete(conversation_id)
        body: dict[str, Any] = {"conversation_id": conversation_id, "status": context.status.value}
        if req.generate_summary:
            receipt = await runtime.queue.enqueue(JobSpec(
                type=JobType.SUMMARY,
                conversation_id=conversation_id,
                user_id=context.user_id,
            ))
            body["job"] = receipt.model_dump()
        return body

    @app.post("/api/v1/conversations/{conversation_id}/end")
    async def end_conversation(conversation_id: str):
        summary = await runtime.conversations.end(conversation_id)
        return summary.model_dump(mode="json")

    return app


app = create_app()
