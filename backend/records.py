"""
Audit Record Store — Adapter for the external persistent record store.

Every generated reply or summary is written as a row the frontend is
notified from. The store is an external service reached over REST; this
module only knows the narrow contract:

  create_record(record)              — write one row
  delete_for_conversation(conv_id)   — cascade cleanup when a conversation ends
  purge_older_than(hours)            — bound storage for terminal rows

Callers treat the store as fallible: the worker logs failed writes instead
of failing the job, and the conversation store logs failed cascades.
"""
from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import AuditConfig, get_settings
from models.schemas import AuditRecord

logger = structlog.get_logger()


class AuditRecordStore(abc.ABC):
    """Abstract base for all audit record stores."""

    @abc.abstractmethod
    async def create_record(self, record: AuditRecord) -> None:
        """Persist one audit row."""
        ...

    @abc.abstractmethod
    async def delete_for_conversation(self, conversation_id: str) -> int:
        """Delete every row tied to a conversation. Returns the count deleted."""
        ...

    @abc.abstractmethod
    async def purge_older_than(self, max_age_hours: int) -> int:
        """Delete rows older than the threshold. Returns the count deleted."""
        ...

    async def close(self) -> None:
        pass


class RESTAuditRecordStore(AuditRecordStore):
    """
    REST record store connector.
    Calls configured endpoints; endpoint values may contain {path} params.
    """

    def __init__(self, config: AuditConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().audit
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
                transport=self._transport,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def create_record(self, record: AuditRecord) -> None:
        await self._request("POST", "create_record", json=record.model_dump(mode="json"))

    async def delete_for_conversation(self, conversation_id: str) -> int:
        result = await self._request(
            "DELETE", "delete_for_conversation",
            path_params={"conversation_id": conversation_id},
        )
        return int(result.get("deleted", 0))

    async def purge_older_than(self, max_age_hours: int) -> int:
        result = await self._request(
            "POST", "purge", json={"max_age_hours": max_age_hours},
        )
        return int(result.get("deleted", 0))

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class InMemoryAuditRecordStore(AuditRecordStore):
    """Record store for development and testing. Rows kept in a list."""

    def __init__(self):
        self.records: list[AuditRecord] = []

    async def create_record(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def delete_for_conversation(self, conversation_id: str) -> int:
        before = len(self.records)
        self.records = [r for r in self.records if r.conversation_id != conversation_id]
        return before - len(self.records)

    async def purge_older_than(self, max_age_hours: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
        before = len(self.records)
        self.records = [r for r in self.records if r.created_at >= cutoff]
        return before - len(self.records)

    def for_conversation(self, conversation_id: str) -> list[AuditRecord]:
        return [r for r in self.records if r.conversation_id == conversation_id]


def create_audit_store(config: AuditConfig = None) -> AuditRecordStore:
    """Factory: pick the record store from configuration."""
    config = config or get_settings().audit
    if config.backend == "rest":
        logger.info("audit_store_created", backend="rest", base_url=config.base_url)
        return RESTAuditRecordStore(config)
    logger.info("audit_store_created", backend="memory")
    return InMemoryAuditRecordStore()
