"""Redis Client for the Code Replay service.

Provides async Redis operations for the event log read-through cache:
- String and JSON get/set with TTL
- Key invalidation
- Health checks for the API
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from codereplay.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: RedisClient | None = None
_client_lock = asyncio.Lock()


class RedisError(Exception):
    """Base exception for Redis operations."""

    pass


class RedisConnectionError(RedisError):
    """Exception raised when Redis connection fails."""

    pass


class RedisClient:
    """Async Redis client wrapper.

    The connection pool is created lazily on first use so constructing the
    client never touches the network.
    """

    def __init__(
        self,
        url: str | None = None,
        max_connections: int | None = None,
        socket_timeout: float | None = None,
        retry_on_timeout: bool | None = None,
    ):
        """Initialize Redis client.

        Args:
            url: Redis connection URL. Uses REDIS_URL from config if not provided.
            max_connections: Maximum connections in pool.
            socket_timeout: Socket timeout in seconds.
            retry_on_timeout: Whether to retry on timeout.
        """
        settings = get_settings()

        self.url = url or settings.redis_url_str
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.socket_timeout = socket_timeout or settings.REDIS_SOCKET_TIMEOUT
        self.retry_on_timeout = (
            settings.REDIS_RETRY_ON_TIMEOUT if retry_on_timeout is None else retry_on_timeout
        )

        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the connection pool and verify the server answers."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            try:
                self._pool = ConnectionPool.from_url(
                    self.url,
                    max_connections=self.max_connections,
                    socket_timeout=self.socket_timeout,
                    retry_on_timeout=self.retry_on_timeout,
                    decode_responses=True,
                )
                self._client = redis.Redis(connection_pool=self._pool)
                await self._client.ping()
            except redis.ConnectionError as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise RedisConnectionError(f"Redis connection failed: {e}") from e
            except redis.RedisError as e:
                logger.error(f"Failed to initialize Redis client: {e}")
                raise RedisError(f"Redis initialization failed: {e}") from e

            self._initialized = True
            logger.info(
                "Redis client initialized",
                extra={"url": self._mask_url(self.url), "max_connections": self.max_connections},
            )

    def _mask_url(self, url: str) -> str:
        """Mask credentials in the URL for logging."""
        if "@" in url:
            return f"redis://***@{url.split('@')[-1]}"
        return url

    async def _ensure_initialized(self) -> redis.Redis:
        if not self._initialized or self._client is None:
            await self.initialize()
        return self._client  # type: ignore

    # ==================== Basic Operations ====================

    async def get(self, key: str) -> str | None:
        client = await self._ensure_initialized()
        try:
            return await client.get(key)
        except redis.RedisError as e:
            raise RedisError(f"GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Set a value, expiring after ``ttl`` seconds when given."""
        client = await self._ensure_initialized()
        try:
            result = await client.set(key, value, ex=ttl)
        except redis.RedisError as e:
            raise RedisError(f"SET {key} failed: {e}") from e
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        client = await self._ensure_initialized()
        try:
            return await client.delete(*keys)
        except redis.RedisError as e:
            raise RedisError(f"DEL failed: {e}") from e

    # ==================== JSON Operations ====================

    async def get_json(self, key: str) -> Any | None:
        """Get and deserialize a JSON value; undecodable values read as missing."""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Failed to decode JSON for key: {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize JSON for key {key}: {e}")
            return False
        return await self.set(key, serialized, ttl=ttl)

    # ==================== Health ====================

    async def health_check(self) -> dict[str, Any]:
        """Ping the server and report latency."""
        try:
            client = await self._ensure_initialized()
            start = time.perf_counter()
            await client.ping()
            latency = time.perf_counter() - start
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

        return {"status": "healthy", "latency_ms": round(latency * 1000, 2)}

    # ==================== Cleanup ====================

    async def close(self) -> None:
        """Close the client and its connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None

        self._initialized = False
        logger.info("Redis client closed")


# ==================== Singleton Factory ====================


async def get_redis_client() -> RedisClient:
    """Get or create the Redis client singleton."""
    global _redis_client

    if _redis_client is not None and _redis_client.initialized:
        return _redis_client

    async with _client_lock:
        if _redis_client is not None and _redis_client.initialized:
            return _redis_client

        client = RedisClient()
        await client.initialize()
        _redis_client = client
        return _redis_client


async def close_redis_client() -> None:
    """Close the singleton Redis client."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None


# ==================== Key Helpers ====================


def cache_key(*parts: str) -> str:
    """Join key parts with colons."""
    return ":".join(parts)


def event_log_cache_key(storage_key: str) -> str:
    """Cache key holding one session's serialized event log."""
    return cache_key("editor", "events", storage_key)


__all__ = [
    "RedisError",
    "RedisConnectionError",
    "RedisClient",
    "get_redis_client",
    "close_redis_client",
    "cache_key",
    "event_log_cache_key",
]
