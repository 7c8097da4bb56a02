"""
Abstract Key-Value Backend — Interface for the shared store used by the
job queue and the conversation store.

Implementations:
  - RedisBackend     (redis.asyncio, production, shared across processes)
  - InMemoryBackend  (dicts, single-process, development and tests)

The method names and return conventions follow Redis so the two backends
are interchangeable:
  - ttl() returns -2 for a missing key and -1 for a key without expiry
  - zrem()/hdel()/delete() return the number of entries actually removed
  - zrevrange(..., withscores=True) returns (member, score) tuples
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union


class KeyValueBackend(ABC):
    """Interface that all key-value backends must implement."""

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    # ── Strings ───────────────────────────────────────────────

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        """Write a value; `ex` sets a TTL in seconds, None leaves the key persistent."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        ...

    @abstractmethod
    def scan_iter(self, match: str) -> AsyncIterator[str]:
        """Iterate keys matching a glob pattern."""
        ...

    # ── Sorted sets ───────────────────────────────────────────

    @abstractmethod
    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int:
        ...

    @abstractmethod
    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False,
    ) -> list[Union[str, tuple[str, float]]]:
        ...

    @abstractmethod
    async def zrevrank(self, key: str, member: str) -> Optional[int]:
        ...

    @abstractmethod
    async def zcard(self, key: str) -> int:
        ...

    # ── Hashes ────────────────────────────────────────────────

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> int:
        ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]:
        ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int:
        ...

    @abstractmethod
    async def hlen(self, key: str) -> int:
        ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        ...
