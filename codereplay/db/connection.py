"""PostgreSQL connection management for the Code Replay service.

Async psycopg v3 utilities shared by the event store:
- A lazily opened connection pool singleton
- Context managers for pooled connections and explicit transactions
- Schema bootstrap from ``schemas/postgres_schema.sql``
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

if TYPE_CHECKING:
    from psycopg import AsyncConnection

from codereplay.config import get_settings

logger = logging.getLogger(__name__)

_pool: AsyncConnectionPool | None = None
_pool_lock = asyncio.Lock()

SCHEMA_TABLES = ("editor_sessions", "editor_events", "run_history")


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when a connection cannot be opened or acquired."""

    pass


class SchemaInitializationError(DatabaseError):
    """Raised when the schema cannot be created."""

    pass


async def get_async_pool() -> AsyncConnectionPool:
    """Return the connection pool, opening it on first use.

    Raises:
        DatabaseConnectionError: If the pool cannot be opened.
    """
    global _pool

    if _pool is not None and not _pool.closed:
        return _pool

    async with _pool_lock:
        if _pool is not None and not _pool.closed:
            return _pool

        settings = get_settings()
        try:
            pool = AsyncConnectionPool(
                conninfo=settings.database_url_str,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
                timeout=settings.DB_POOL_TIMEOUT,
                check=AsyncConnectionPool.check_connection,
                kwargs={
                    "autocommit": True,
                    "row_factory": dict_row,
                    # pgbouncer in transaction mode rejects prepared statements
                    "prepare_threshold": 0,
                },
                open=False,
            )
            await pool.open(wait=True, timeout=settings.DB_POOL_TIMEOUT)
        except psycopg.OperationalError as e:
            logger.error(f"Failed to open connection pool: {e}")
            raise DatabaseConnectionError(f"Failed to open database connection pool: {e}") from e

        _pool = pool
        logger.info(
            "Database connection pool opened",
            extra={
                "min_size": settings.DB_POOL_MIN_SIZE,
                "max_size": settings.DB_POOL_MAX_SIZE,
            },
        )
        return _pool


@asynccontextmanager
async def get_async_connection() -> AsyncGenerator[AsyncConnection[dict[str, Any]], None]:
    """Borrow an autocommit connection from the pool.

    Example:
        async with get_async_connection() as conn:
            cur = await conn.execute("SELECT count(*) AS n FROM editor_events")
            row = await cur.fetchone()
    """
    pool = await get_async_pool()

    try:
        async with pool.connection() as conn:
            yield conn
    except psycopg.OperationalError as e:
        logger.error(f"Database connection error: {e}")
        raise DatabaseConnectionError(f"Failed to acquire database connection: {e}") from e
    except psycopg.Error as e:
        logger.error(f"Database error: {e}")
        raise DatabaseError(f"Database operation failed: {e}") from e


@asynccontextmanager
async def transaction() -> AsyncGenerator[AsyncConnection[dict[str, Any]], None]:
    """Run statements in one transaction; commits on exit, rolls back on error.

    Example:
        async with transaction() as conn:
            await conn.execute("INSERT INTO editor_sessions ...", (...))
            await conn.execute("INSERT INTO editor_events ...", (...))
    """
    pool = await get_async_pool()

    try:
        async with pool.connection() as conn:
            await conn.set_autocommit(False)
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
            finally:
                await conn.set_autocommit(True)
    except psycopg.OperationalError as e:
        logger.error(f"Transaction connection error: {e}")
        raise DatabaseConnectionError(f"Transaction failed to connect: {e}") from e
    except psycopg.Error as e:
        logger.error(f"Transaction failed: {e}")
        raise DatabaseError(f"Transaction failed: {e}") from e


async def check_connection_health() -> bool:
    """Return True if a trivial query succeeds."""
    try:
        async with get_async_connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
            return row is not None and row.get("ok") == 1
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False


async def init_db(schema_path: str | Path | None = None) -> bool:
    """Create the editor session tables if they do not exist yet.

    Args:
        schema_path: SQL file to execute. Defaults to
            ``schemas/postgres_schema.sql`` at the project root.

    Returns:
        True once the schema is present.

    Raises:
        FileNotFoundError: If the schema file is missing.
        SchemaInitializationError: If executing the schema fails.
    """
    if schema_path is None:
        schema_path = Path(__file__).parent.parent.parent / "schemas" / "postgres_schema.sql"
    else:
        schema_path = Path(schema_path)

    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    try:
        async with get_async_connection() as conn:
            cur = await conn.execute(
                """
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public' AND table_name = %s
                ) AS present
                """,
                (SCHEMA_TABLES[0],),
            )
            row = await cur.fetchone()
            if row and row.get("present"):
                logger.info("Database schema already present, skipping initialization")
                return True

            logger.info(f"Initializing database schema from {schema_path}")
            await conn.execute(schema_path.read_text(encoding="utf-8"))
    except DatabaseError as e:
        raise SchemaInitializationError(f"Failed to initialize schema: {e}") from e
    except psycopg.Error as e:
        logger.error(f"Schema initialization failed: {e}")
        raise SchemaInitializationError(f"Failed to initialize schema: {e}") from e

    logger.info("Database schema initialized")
    return True


async def close_pool() -> None:
    """Close the pool during application shutdown."""
    global _pool

    if _pool is None:
        return
    try:
        await _pool.close()
        logger.info("Database connection pool closed")
    except Exception as e:
        logger.error(f"Error closing connection pool: {e}")
    finally:
        _pool = None


def get_pool_stats() -> dict[str, Any]:
    """Pool size and availability, for the health endpoint."""
    if _pool is None:
        return {"status": "not_initialized"}

    stats = _pool.get_stats()
    return {
        "status": "closed" if _pool.closed else "active",
        "size": stats.get("pool_size", 0),
        "available": stats.get("pool_available", 0),
        "requests_waiting": stats.get("requests_waiting", 0),
    }


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
