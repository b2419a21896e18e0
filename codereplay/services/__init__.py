"""External service clients."""

from codereplay.services.redis_client import (
    RedisClient,
    RedisConnectionError,
    RedisError,
    cache_key,
    close_redis_client,
    event_log_cache_key,
    get_redis_client,
)

__all__ = [
    "RedisClient",
    "RedisError",
    "RedisConnectionError",
    "get_redis_client",
    "close_redis_client",
    "cache_key",
    "event_log_cache_key",
]
