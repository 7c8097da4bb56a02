"""Shared test fixtures for the conversation job system."""
import asyncio

import pytest

from backend.records import InMemoryAuditRecordStore
from core.engine import GenerationBackend
from database.conversation_store import ConversationStore
from database.kv_memory import InMemoryBackend
from job_queue.job_queue import JobQueue
from models.errors import GenerationBackendFailure
from models.schemas import (
    ConversationType, GeneratedText, GenerationRequest, JobSpec, JobType, JobPayload,
    StartConversation,
)


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerationBackend(GenerationBackend):
    """
    Returns canned text per job type. `fail_times` makes the next N calls
    raise; `delay` makes every call sleep (for timeout tests).
    """

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GeneratedText:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GenerationBackendFailure("model overloaded")
        text = {
            JobType.FIRST_RESPONSE: "Bonjour ! Parlons de votre parcours.",
            JobType.RESPONSE: f"Merci. Vous avez dit : {request.user_message}",
            JobType.UNFINISHED_EXCHANGE: f"Reprenons : {request.last_answer}",
            JobType.SUMMARY: "L'utilisateur souhaite se reconvertir.",
        }[request.job_type]
        return GeneratedText(text=text, model="fake-model")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryBackend(clock=clock)


@pytest.fixture
def audit():
    return InMemoryAuditRecordStore()


@pytest.fixture
def engine():
    return FakeGenerationBackend()


@pytest.fixture
def queue(backend, clock):
    return JobQueue(backend, namespace="test", capacity=2, clock=clock)


@pytest.fixture
def conversations(backend, audit, clock):
    return ConversationStore(backend, audit=audit, ttl_seconds=1800, namespace="test", clock=clock)


@pytest.fixture
def start_spec():
    return StartConversation(
        user_id="u_42",
        type=ConversationType.BILAN,
        metadata={"bilanId": "bilan_7"},
    )


def make_spec(job_type: JobType = JobType.FIRST_RESPONSE, conversation_id: str = "conv_1", **kwargs):
    payload = kwargs.pop("payload", None)
    if payload is None:
        payload = JobPayload(
            user_message="Je veux changer de métier" if job_type == JobType.RESPONSE else "",
            last_answer="J'aime enseigner" if job_type == JobType.UNFINISHED_EXCHANGE else "",
        )
    return JobSpec(
        type=job_type,
        conversation_id=conversation_id,
        user_id=kwargs.pop("user_id", "u_42"),
        payload=payload,
        **kwargs,
    )


@pytest.fixture
def job_spec():
    """Factory fixture: job_spec(JobType.RESPONSE, "conv_1", priority=...)."""
    return make_spec


@pytest.fixture
def make_engine():
    """Factory fixture: make_engine(fail_times=1) / make_engine(delay=1.0)."""
    return FakeGenerationBackend
