"""
Application State
=================

Process-wide Redis client shared across requests.

WHY this exists:
- The lock manager, aggregation store and join tracker are created per
  request, but the connection pool behind them must be shared
- Creating a pool per request would exhaust Redis connections under load

WHERE it's used:
- merchant_analytics/deps.py: get_redis dependency
- merchant_analytics/main.py: closes the client on shutdown

Note: the arq worker creates its own client in its startup hook and arq
manages a separate pool for job queuing (merchant_analytics/workers/arq_enqueue.py).
"""

import logging
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 20

redis_client: Optional[Redis] = None


def create_redis_client(redis_url: str, max_connections: int = MAX_CONNECTIONS) -> Redis:
    """Build a Redis client that returns str (not bytes) for our own keys.

    The client owns its pool, so aclose() also disconnects it.
    """
    return Redis.from_url(
        redis_url,
        max_connections=max_connections,
        decode_responses=True,
    )


def get_redis_client(redis_url: str) -> Redis:
    """Return the shared client, creating it on first use."""
    global redis_client
    if redis_client is None:
        redis_client = create_redis_client(redis_url)
        logger.info("[STATE] Shared Redis connection pool initialized (max_connections=%d)", MAX_CONNECTIONS)
    return redis_client


async def close_redis_client() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
        logger.info("[STATE] Shared Redis connection pool closed")
