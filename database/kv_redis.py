"""
RedisBackend — Production key-value backend on redis.asyncio.

The client handle is constructed here and owned by whoever calls
connect()/close() (the process entry point), never by a module-level
singleton. Connection and timeout errors surface as TransientInfraError so
callers can tell "store unreachable" apart from domain failures.
"""
from __future__ import annotations

import functools
from typing import AsyncIterator, Optional, Union

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from database.kv_base import KeyValueBackend
from models.errors import TransientInfraError

logger = structlog.get_logger()

_TRANSIENT = (RedisConnectionError, RedisTimeoutError, OSError)


def _transient(fn):
    """Re-raise connection-level failures as TransientInfraError."""
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except _TRANSIENT as e:
            logger.warning("redis_transient_error", op=fn.__name__, error=str(e))
            raise TransientInfraError(f"redis {fn.__name__} failed: {e}") from e
    return wrapper


class RedisBackend(KeyValueBackend):
    """Shared store backed by a Redis server (strings, sorted sets, hashes)."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 20,
        socket_timeout: float = 5.0,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._redis = None

    @property
    def client(self):
        if self._redis is None:
            raise TransientInfraError("RedisBackend is not connected")
        return self._redis

    # ── Lifecycle ─────────────────────────────────────────

    @_transient
    async def connect(self) -> None:
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=self._max_connections,
            socket_connect_timeout=self._socket_timeout,
            socket_timeout=self._socket_timeout,
            retry_on_timeout=True,
        )
        await self._redis.ping()
        logger.info("redis_backend_connected", url=self._redis_url)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_backend_closed")

    @_transient
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # ── Strings ───────────────────────────────────────────

    @_transient
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_transient
    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ex)

    @_transient
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    @_transient
    async def ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    @_transient
    async def incr(self, key: str) -> int:
        return await self.client.incr(key)

    async def scan_iter(self, match: str) -> AsyncIterator[str]:
        try:
            async for key in self.client.scan_iter(match=match, count=200):
                yield key
        except _TRANSIENT as e:
            raise TransientInfraError(f"redis scan failed: {e}") from e

    # ── Sorted sets ───────────────────────────────────────

    @_transient
    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return await self.client.zadd(key, mapping)

    @_transient
    async def zrem(self, key: str, *members: str) -> int:
        return await self.client.zrem(key, *members)

    @_transient
    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False,
    ) -> list[Union[str, tuple[str, float]]]:
        return await self.client.zrevrange(key, start, stop, withscores=withscores)

    @_transient
    async def zrevrank(self, key: str, member: str) -> Optional[int]:
        return await self.client.zrevrank(key, member)

    @_transient
    async def zcard(self, key: str) -> int:
        return await self.client.zcard(key)

    # ── Hashes ────────────────────────────────────────────

    @_transient
    async def hset(self, key: str, field: str, value: str) -> int:
        return await self.client.hset(key, field, value)

    @_transient
    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.client.hget(key, field)

    @_transient
    async def hdel(self, key: str, *fields: str) -> int:
        return await self.client.hdel(key, *fields)

    @_transient
    async def hlen(self, key: str) -> int:
        return await self.client.hlen(key)

    @_transient
    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.client.hgetall(key)
