"""Database Module.

Async PostgreSQL connection management for the event store.

Example:
    ```python
    from codereplay.db import get_async_connection, init_db

    await init_db()

    async with get_async_connection() as conn:
        cur = await conn.execute("SELECT * FROM editor_sessions LIMIT 5")
        sessions = await cur.fetchall()
    ```
"""

from codereplay.db.connection import (
    DatabaseConnectionError,
    DatabaseError,
    SchemaInitializationError,
    check_connection_health,
    close_pool,
    get_async_connection,
    get_async_pool,
    get_pool_stats,
    init_db,
    transaction,
)

__all__ = [
    "get_async_pool",
    "get_async_connection",
    "transaction",
    "check_connection_health",
    "init_db",
    "close_pool",
    "get_pool_stats",
    "DatabaseError",
    "DatabaseConnectionError",
    "SchemaInitializationError",
]
