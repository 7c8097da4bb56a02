"""
Tests for the audit record stores (REST via httpx.MockTransport, in-memory, factory).
"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from backend.records import (
    InMemoryAuditRecordStore, RESTAuditRecordStore, create_audit_store,
)
from config.settings import AuditConfig
from models.schemas import AuditRecord


def rest_config(**kwargs) -> AuditConfig:
    return AuditConfig(
        backend="rest",
        base_url="https://records.example.test",
        auth_type=kwargs.pop("auth_type", "bearer"),
        auth_credentials=kwargs.pop("auth_credentials", {"token": "secret"}),
        endpoints={
            "create_record": "/ai_responses",
            "delete_for_conversation": "/ai_responses/conversation/{conversation_id}",
            "purge": "/ai_responses/purge",
        },
    )


class TestRESTAuditRecordStore:
    @pytest.mark.asyncio
    async def test_create_record(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"ok": True})

        store = RESTAuditRecordStore(rest_config(), transport=httpx.MockTransport(handler))
        await store.create_record(AuditRecord(conversation_id="conv_1", user_id="u_1", text="Bonjour"))
        await store.close()

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/ai_responses"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["conversation_id"] == "conv_1"
        assert body["text"] == "Bonjour"
        assert body["message_type"] == "text"

    @pytest.mark.asyncio
    async def test_delete_for_conversation_substitutes_path(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"deleted": 3})

        store = RESTAuditRecordStore(rest_config(), transport=httpx.MockTransport(handler))
        assert await store.delete_for_conversation("conv_9") == 3
        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/ai_responses/conversation/conv_9"

    @pytest.mark.asyncio
    async def test_purge(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"max_age_hours": 48}
            return httpx.Response(200, json={"deleted": 12})

        store = RESTAuditRecordStore(rest_config(), transport=httpx.MockTransport(handler))
        assert await store.purge_older_than(48) == 12

    @pytest.mark.asyncio
    async def test_empty_body_counts_as_zero(self):
        store = RESTAuditRecordStore(
            rest_config(), transport=httpx.MockTransport(lambda r: httpx.Response(204)),
        )
        assert await store.delete_for_conversation("conv_1") == 0

    @pytest.mark.asyncio
    async def test_api_key_auth(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        config = rest_config(auth_type="api_key", auth_credentials={"header_name": "X-Key", "api_key": "k1"})
        store = RESTAuditRecordStore(config, transport=httpx.MockTransport(handler))
        await store.create_record(AuditRecord(conversation_id="c", user_id="u", text="t"))
        assert seen[0].headers["X-Key"] == "k1"
        assert "Authorization" not in seen[0].headers


class TestInMemoryAuditRecordStore:
    @pytest.mark.asyncio
    async def test_delete_for_conversation(self):
        store = InMemoryAuditRecordStore()
        await store.create_record(AuditRecord(conversation_id="a", user_id="u", text="1"))
        await store.create_record(AuditRecord(conversation_id="a", user_id="u", text="2"))
        await store.create_record(AuditRecord(conversation_id="b", user_id="u", text="3"))

        assert await store.delete_for_conversation("a") == 2
        assert [r.text for r in store.records] == ["3"]

    @pytest.mark.asyncio
    async def test_purge_older_than(self):
        store = InMemoryAuditRecordStore()
        old = datetime.now(timezone.utc) - timedelta(hours=30)
        await store.create_record(AuditRecord(conversation_id="a", user_id="u", text="old", created_at=old))
        await store.create_record(AuditRecord(conversation_id="a", user_id="u", text="new"))

        assert await store.purge_older_than(24) == 1
        assert [r.text for r in store.records] == ["new"]


class TestFactory:
    def test_memory(self):
        assert isinstance(create_audit_store(AuditConfig()), InMemoryAuditRecordStore)

    def test_rest(self):
        assert isinstance(create_audit_store(rest_config()), RESTAuditRecordStore)
