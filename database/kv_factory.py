"""
Backend Factory — Create the right key-value backend from configuration.

Configuration in settings.yaml:
    store:
      # Key-value backend shared by the job queue and the conversation store
      #   "redis"   — Redis server (production, multi-process)
      #   "memory"  — In-memory dicts (development, testing)
      backend: "memory"
      redis_url: "redis://localhost:6379"
      # Prefix for every key, so the shared store can hold unrelated data
      namespace: "ia"

Usage:
    from database.kv_factory import create_backend
    backend = create_backend({"backend": "redis", "redis_url": "..."})
    await backend.connect()

No instance is cached here: the process entry point constructs the backend,
injects it, and closes it.
"""
from __future__ import annotations

from typing import Any

import structlog

from database.kv_base import KeyValueBackend

logger = structlog.get_logger()


def create_backend(config: dict[str, Any] = None) -> KeyValueBackend:
    """
    Factory: create the appropriate key-value backend.

    Args:
        config: dict with keys:
            backend: "redis" | "memory"  (default: "memory")
            redis_url: str (for redis backend)
    """
    config = config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        from database.kv_redis import RedisBackend
        url = config.get("redis_url", "redis://localhost:6379")
        logger.info("backend_created", backend="redis", url=url)
        return RedisBackend(redis_url=url)

    if backend != "memory":
        raise ValueError(f"Unknown store backend: {backend!r}")

    from database.kv_memory import InMemoryBackend
    logger.info("backend_created", backend="memory")
    return InMemoryBackend()
