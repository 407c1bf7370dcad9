"""
Shared Redis connection.

The registry and the event bus both live in the same Redis instance.
Every invocation opens a connection pool lazily on first use; nothing
else is kept in process memory between invocations.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

from sentinel.config import get_settings
from sentinel.logging_config import get_logger

logger = get_logger(__name__)

_client: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Return the process-wide Redis client, creating it on first use."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            health_check_interval=30,
        )
        logger.info("redis_client_initialized")
    return _client


async def close_redis() -> None:
    """Release the connection pool."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("redis_client_closed")
