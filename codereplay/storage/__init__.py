"""Event log storage backends."""

from codereplay.storage.event_store import (
    CachedEventStore,
    EventStore,
    PostgresEventStore,
    StorageError,
)

__all__ = [
    "StorageError",
    "EventStore",
    "PostgresEventStore",
    "CachedEventStore",
]
