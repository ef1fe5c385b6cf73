"""
core/redis.py
-------------
Async Redis client shared by the cache layer, the job queue and the
/health endpoint.

One client (with its own connection pool) per process. Stale pool
connections are transparently reconnected via retry-on-error; anything
beyond that is the caller's problem (the cache swallows it, the queue
retries with its own backoff).
"""

from typing import Optional

import redis.asyncio as aioredis
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, TimeoutError
from redis.retry import Retry

from commerce.core.config import settings

_client: Optional[aioredis.Redis] = None

_RETRY = Retry(ExponentialBackoff(cap=2, base=0.1), retries=3)
_RETRY_ERRORS = [ConnectionError, TimeoutError, BusyLoadingError, OSError]


def get_redis() -> aioredis.Redis:
    """
    Return the process-wide Redis client, creating it on first use.
    Also usable as a FastAPI dependency.
    """
    global _client
    if _client is None:
        _client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20,
            health_check_interval=15,
            retry_on_timeout=True,
            retry_on_error=_RETRY_ERRORS,
            retry=_RETRY,
            socket_connect_timeout=5,
            socket_timeout=10,
            socket_keepalive=True,
        )
    return _client


async def close_redis() -> None:
    """Gracefully close the Redis connection pool."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def inject_redis_for_test(redis_instance: aioredis.Redis) -> None:
    """Inject a fake Redis instance (for testing only)."""
    global _client
    _client = redis_instance
