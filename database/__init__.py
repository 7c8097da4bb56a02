"""
Database layer — shared key-value store and the conversation state on it.

Backends:
  - Redis (redis.asyncio, for production and multi-process workers)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_backend, ConversationStore
  backend = create_backend({"backend": "memory"})
  conversations = ConversationStore(backend)
  conversation_id, context = await conversations.start(spec)
"""
from database.kv_base import KeyValueBackend
from database.kv_memory import InMemoryBackend
from database.kv_redis import RedisBackend
from database.kv_factory import create_backend
from database.conversation_store import ConversationStore, ConversationSweeper

__all__ = [
    # Backend interface
    "KeyValueBackend",
    # Backends
    "InMemoryBackend", "RedisBackend",
    # Factory
    "create_backend",
    # Conversation state
    "ConversationStore", "ConversationSweeper",
]
