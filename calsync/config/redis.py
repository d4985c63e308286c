# calsync/config/redis.py
"""Redis configuration and connection setup"""
from typing import Optional

import redis

from calsync.config.settings import get_settings

# Redis connection pool
_redis_pool: Optional[redis.ConnectionPool] = None


def get_redis_pool() -> redis.ConnectionPool:
    """Get or create Redis connection pool"""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=True,
            decode_responses=True,
        )
    return _redis_pool


def get_redis() -> redis.Redis:
    """Get Redis client from pool"""
    return redis.Redis(connection_pool=get_redis_pool())


# Redis key patterns for different data types
class RedisKeys:
    """Redis key patterns for consistent naming"""

    # OAuth state nonces (single use, TTL = state lifetime)
    OAUTH_STATE_NONCE = "calendar:oauth_state:{nonce}"

    # Serializes token refresh per connection
    TOKEN_REFRESH_LOCK = "calendar:token_refresh:{connection_id}"

    # Serializes sync operations per booking
    BOOKING_SYNC_LOCK = "calendar:booking_sync:{booking_id}"
