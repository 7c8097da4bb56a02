"""
InMemoryBackend — Dict-backed key-value store for development and testing.

Features:
  - Zero dependencies (no Redis)
  - Same return conventions as RedisBackend (see kv_base)
  - Per-key TTL on string keys, evaluated lazily against an injectable clock
  - Each operation runs without yielding to the event loop, so every
    single-key call is atomic relative to other coroutines
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import fnmatch
import math
import time
from typing import AsyncIterator, Callable, Optional, Union

import structlog

from database.kv_base import KeyValueBackend

logger = structlog.get_logger()


class InMemoryBackend(KeyValueBackend):
    """
    Full-featured in-memory backend with the same interface as RedisBackend.
    `clock` returns epoch seconds; tests pass a fake clock to move time.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._strings: dict[str, str] = {}
        self._expiry: dict[str, float] = {}                 # key → absolute deadline
        self._zsets: dict[str, dict[str, float]] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._connected = False

    # ── Lifecycle ─────────────────────────────────────────

    async def connect(self) -> None:
        self._connected = True
        logger.info("inmemory_backend_connected")

    async def close(self) -> None:
        self._connected = False

    async def ping(self) -> bool:
        return True

    # ── Expiry helpers ────────────────────────────────────

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._strings.pop(key, None)
            self._expiry.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._strings or key in self._zsets or key in self._hashes

    # ── Strings ───────────────────────────────────────────

    async def get(self, key: str) -> Optional[str]:
        self._purge_if_expired(key)
        return self._strings.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._strings[key] = value
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self._strings.pop(key, None)
            self._expiry.pop(key, None)
            self._zsets.pop(key, None)
            self._hashes.pop(key, None)
        return removed

    async def ttl(self, key: str) -> int:
        if not self._exists(key):
            return -2
        deadline = self._expiry.get(key)
        if deadline is None:
            return -1
        return int(math.ceil(deadline - self._clock()))

    async def incr(self, key: str) -> int:
        self._purge_if_expired(key)
        value = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(value)
        return value

    async def scan_iter(self, match: str) -> AsyncIterator[str]:
        keys = [k for k in list(self._strings) + list(self._zsets) + list(self._hashes)]
        for key in keys:
            if fnmatch.fnmatchcase(key, match) and self._exists(key):
                yield key

    # ── Sorted sets ───────────────────────────────────────

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._zsets.get(key)
        if not zset:
            return 0
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        if not zset:
            self._zsets.pop(key, None)
        return removed

    def _ordered_desc(self, key: str) -> list[tuple[str, float]]:
        zset = self._zsets.get(key, {})
        # Redis orders equal scores by member, descending for ZREVRANGE
        return sorted(zset.items(), key=lambda item: (item[1], item[0]), reverse=True)

    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False,
    ) -> list[Union[str, tuple[str, float]]]:
        items = self._ordered_desc(key)
        if stop < 0:
            stop = len(items) + stop
        window = items[start:stop + 1]
        if withscores:
            return list(window)
        return [member for member, _ in window]

    async def zrevrank(self, key: str, member: str) -> Optional[int]:
        for rank, (candidate, _) in enumerate(self._ordered_desc(key)):
            if candidate == member:
                return rank
        return None

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    # ── Hashes ────────────────────────────────────────────

    async def hset(self, key: str, field: str, value: str) -> int:
        bucket = self._hashes.setdefault(key, {})
        is_new = field not in bucket
        bucket[field] = value
        return 1 if is_new else 0

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self._hashes.get(key, {}).get(field)

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self._hashes.get(key)
        if not bucket:
            return 0
        removed = 0
        for field in fields:
            if bucket.pop(field, None) is not None:
                removed += 1
        if not bucket:
            self._hashes.pop(key, None)
        return removed

    async def hlen(self, key: str) -> int:
        return len(self._hashes.get(key, {}))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "strings": len(self._strings),
            "sorted_sets": len(self._zsets),
            "hashes": len(self._hashes),
        }
