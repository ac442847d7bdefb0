# ==== REDIS CLIENT ==== #

"""
Redis client for shared coordination state.

Backs the distributed RTO rate limiter so every worker process observes the
same trigger window. Connection setup is wrapped in Redis resilience
(retry plus circuit breaker).
"""

from typing import Optional

import redis.asyncio as redis

from reverse_logistics.settings import settings
from reverse_logistics.resilience.decorators import redis_resilient


# ==== GLOBAL CLIENT INSTANCE ==== #

_redis_client: Optional[redis.Redis] = None


# ==== REDIS CLIENT FUNCTIONS ==== #

@redis_resilient("get_redis_client")
async def get_redis_client() -> redis.Redis:
    """
    Get the shared Redis client, connecting on first use.

    Returns:
        redis.Redis: Redis client instance

    Raises:
        CircuitBreakerError: If Redis circuit breaker is open
        redis.ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        # --► SSL CONFIGURATION FOR MANAGED REDIS
        ssl_config = {}
        if settings.REDIS_URL.startswith('rediss://'):
            ssl_config = {'ssl_cert_reqs': None}

        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            health_check_interval=30,
            **ssl_config
        )
        await client.ping()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    """Close Redis client connection and reset the global instance."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
