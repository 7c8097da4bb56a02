"""
Error taxonomy shared by the queue, the workers and the conversation store.

Per-job errors are caught inside the scheduler tick and routed to
JobQueue.mark_failed; none of them is process-fatal.
"""
from __future__ import annotations


class AsyncGenError(Exception):
    """Base class for every error raised by this system."""


class TransientInfraError(AsyncGenError):
    """The backing store is unreachable or timed out. Retry at the caller/poll level."""


class ConversationNotFound(AsyncGenError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationNotActive(AsyncGenError):
    def __init__(self, conversation_id: str, status: str):
        self.conversation_id = conversation_id
        self.status = status
        super().__init__(f"Conversation {conversation_id} is not active (status={status})")


class GenerationBackendFailure(AsyncGenError):
    """The text-generation collaborator failed, returned nothing, or timed out."""


class RetriesExhausted(AsyncGenError):
    """Terminal: the job failed on its last allowed attempt."""

    def __init__(self, job_id: str, attempts: int, last_error: str):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {last_error}")


class WorkerBusyError(AsyncGenError):
    def __init__(self, worker_id: int, job_id: str):
        self.worker_id = worker_id
        self.job_id = job_id
        super().__init__(f"Worker {worker_id} is already executing job {job_id}")


class InvalidJobPayload(AsyncGenError):
    """The job lacks the input its type needs. Retrying cannot fix it."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} is invalid: {reason}")
