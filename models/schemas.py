"""
Core data models for the conversation job system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:12]}"


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    FIRST_RESPONSE = "first_response"
    RESPONSE = "response"
    SUMMARY = "summary"
    UNFINISHED_EXCHANGE = "unfinished_exchange"


class JobPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConversationType(str, Enum):
    BILAN = "bilan"
    ACTIVITY = "activity"
    RECOMMENDATION = "recommendation"
    UNFINISHED_EXCHANGE = "unfinished_exchange"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MessageType(str, Enum):
    USER = "user"
    BOT = "bot"


# Used when a JobSpec does not name a priority.
DEFAULT_PRIORITY_BY_TYPE: dict[JobType, JobPriority] = {
    JobType.FIRST_RESPONSE: JobPriority.HIGH,
    JobType.RESPONSE: JobPriority.MEDIUM,
    JobType.SUMMARY: JobPriority.LOW,
    JobType.UNFINISHED_EXCHANGE: JobPriority.MEDIUM,
}


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

class JobPayload(BaseModel):
    """Type-specific input carried by a job."""
    user_message: str = ""
    last_answer: str = ""                     # unfinished_exchange: the user's last answer
    previous_response_id: str = ""            # linkage to a pre-created response row
    extra: dict[str, Any] = {}


class JobSpec(BaseModel):
    """What an external trigger submits to the queue."""
    type: JobType
    conversation_id: str
    user_id: str
    payload: JobPayload = Field(default_factory=JobPayload)
    priority: Optional[JobPriority] = None
    max_retries: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_payload(self) -> JobSpec:
        if self.type == JobType.RESPONSE and not self.payload.user_message.strip():
            raise ValueError("response jobs require payload.user_message")
        if self.type == JobType.UNFINISHED_EXCHANGE and not self.payload.last_answer.strip():
            raise ValueError("unfinished_exchange jobs require payload.last_answer")
        return self

    @property
    def effective_priority(self) -> JobPriority:
        return self.priority or DEFAULT_PRIORITY_BY_TYPE[self.type]


class Job(BaseModel):
    """A unit of asynchronous generation work."""
    id: str = Field(default_factory=new_job_id)
    type: JobType
    conversation_id: str
    user_id: str
    payload: JobPayload = Field(default_factory=JobPayload)
    priority: JobPriority = JobPriority.MEDIUM
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    sequence: int = 0                         # enqueue order, FIFO tie-break inside a band
    created_at: datetime = Field(default_factory=_utcnow)
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def retries_left(self) -> int:
        return max(self.max_retries - self.retry_count, 0)


class JobResult(BaseModel):
    """Structured outcome of a Worker execution."""
    job_type: JobType
    text: str
    message_id: Optional[str] = None
    worker_id: int
    elapsed_ms: float
    model: str = ""


class EnqueueReceipt(BaseModel):
    job_id: str
    priority: JobPriority
    queue_position: int
    estimated_wait_seconds: int


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class AIRule(BaseModel):
    id: str
    type: ConversationType
    name: str
    description: str = ""
    priority: int = 0
    is_active: bool = True


class ActivityData(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_message_id)
    content: str
    type: MessageType
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}             # source, model, linkage ids


class NewMessage(BaseModel):
    """Input for ConversationStore.append_message."""
    content: str
    type: MessageType
    metadata: dict[str, Any] = {}


class ConversationContext(BaseModel):
    """
    The mutable, TTL-bounded state of one ongoing exchange.
    `messages` is append-only; `version` increases on every write.
    """
    id: str
    user_id: str
    type: ConversationType
    start_time: datetime
    last_activity: datetime
    messages: list[ChatMessage] = []
    metadata: dict[str, Any] = {}
    status: ConversationStatus = ConversationStatus.ACTIVE
    ai_rules: Optional[list[AIRule]] = None
    activity_data: Optional[ActivityData] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    def messages_of(self, message_type: MessageType) -> list[ChatMessage]:
        return [m for m in self.messages if m.type == message_type]


class StartConversation(BaseModel):
    """Input for ConversationStore.start."""
    id: Optional[str] = None
    user_id: str
    type: ConversationType
    metadata: dict[str, Any] = {}
    ai_rules: Optional[list[AIRule]] = None
    activity_data: Optional[ActivityData] = None


class ConversationSummary(BaseModel):
    conversation_id: str
    user_id: str
    type: ConversationType
    start_time: datetime
    end_time: datetime
    duration_ms: int
    message_count: int
    user_message_count: int
    bot_message_count: int


class SweepReport(BaseModel):
    scanned: int = 0
    orphaned: int = 0
    expired: int = 0
    corrupted: int = 0

    @property
    def deleted(self) -> int:
        return self.orphaned + self.expired + self.corrupted


# ──────────────────────────────────────────────────────────────
#  Collaborator contracts
# ──────────────────────────────────────────────────────────────

class GenerationRequest(BaseModel):
    """Input to the text-generation collaborator."""
    job_type: JobType
    context: ConversationContext
    user_message: str = ""
    last_answer: str = ""


class GeneratedText(BaseModel):
    text: str
    model: str = ""


class AuditRecord(BaseModel):
    """A row written to the external record store after each generation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    user_id: str
    text: str
    message_type: str = "text"                # text | summary
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}
