"""Shared Redis connection pool and key namespace.

All transient cross-process state (stage streams, unit markers, cancel
flags, usage counters, progress channels, upload sessions) lives under the
``scriber:`` prefix so a deployment can share one Redis with other services.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.scriber.config import get_settings

KEY_PREFIX = "scriber"

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


def make_key(*parts: object) -> str:
    """Build a namespaced key: scriber:{part}:{part}..."""
    return ":".join([KEY_PREFIX, *(str(p) for p in parts)])
