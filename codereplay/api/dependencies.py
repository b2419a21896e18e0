"""FastAPI dependency providers.

The event store and replay service are process-wide singletons built on
first use; tests replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import Depends

from codereplay.config import Settings, get_settings
from codereplay.replay.service import ReplayService
from codereplay.services.redis_client import get_redis_client
from codereplay.storage.event_store import CachedEventStore, EventStore, PostgresEventStore

logger = logging.getLogger(__name__)


# =============================================================================
# Settings Dependency
# =============================================================================

SettingsDep = Annotated[Settings, Depends(get_settings)]


# =============================================================================
# Event Store Dependency
# =============================================================================

_event_store: EventStore | None = None
_event_store_lock = asyncio.Lock()


async def get_event_store(settings: SettingsDep) -> EventStore:
    """Provide the event store, cached in Redis.

    The Redis client is connected lazily; if Redis cannot be reached the
    store falls back to reading PostgreSQL directly.
    """
    global _event_store

    if _event_store is not None:
        return _event_store

    async with _event_store_lock:
        if _event_store is not None:
            return _event_store

        store = PostgresEventStore()
        if settings.EVENT_LOG_CACHE_TTL == 0:
            logger.info("Event log cache disabled by configuration")
            _event_store = store
            return _event_store

        try:
            redis_client = await get_redis_client()
        except Exception as e:
            logger.warning(f"Event log cache disabled, Redis unavailable: {e}")
            _event_store = store
        else:
            _event_store = CachedEventStore(store, redis_client, ttl=settings.EVENT_LOG_CACHE_TTL)
            logger.info(
                "Event store initialized with Redis cache",
                extra={"ttl": settings.EVENT_LOG_CACHE_TTL},
            )
        return _event_store


def reset_event_store() -> None:
    """Forget the cached store so the next request builds a new one."""
    global _event_store
    _event_store = None


EventStoreDep = Annotated[EventStore, Depends(get_event_store)]


# =============================================================================
# Replay Service Dependency
# =============================================================================


async def get_replay_service(store: EventStoreDep, settings: SettingsDep) -> ReplayService:
    return ReplayService(store, settings)


ReplayServiceDep = Annotated[ReplayService, Depends(get_replay_service)]


__all__ = [
    "SettingsDep",
    "get_event_store",
    "reset_event_store",
    "EventStoreDep",
    "get_replay_service",
    "ReplayServiceDep",
]
