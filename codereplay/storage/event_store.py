"""Event log storage.

The recorder and the replay engine never talk to each other; they meet
only through an ``EventStore``:

- ``PostgresEventStore``: durable, append-only session logs and run history
- ``CachedEventStore``: Redis read-through cache of whole event logs in
  front of another store, invalidated on append
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from psycopg.types.json import Jsonb

from codereplay.db.connection import DatabaseError, get_async_connection, transaction
from codereplay.models.events import (
    EditorEvent,
    RunRecord,
    SessionKey,
    SessionRecord,
    parse_event_log,
)
from codereplay.observability.metrics import track_cache_lookup, track_events_appended
from codereplay.services.redis_client import RedisClient, RedisError, event_log_cache_key

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the event store cannot complete an operation."""

    pass


# =============================================================================
# Protocol
# =============================================================================


class EventStore(Protocol):
    """Storage collaborator for session event logs and run history."""

    async def append_events(
        self,
        key: SessionKey,
        batch: Sequence[EditorEvent],
        language_id: int | None = None,
    ) -> None: ...

    async def load_event_log(self, key: SessionKey) -> list[EditorEvent]: ...

    async def load_run_history(self, key: SessionKey) -> list[RunRecord]: ...

    async def get_session(self, key: SessionKey) -> SessionRecord | None: ...

    async def list_sessions(
        self,
        candidate_id: str | None = None,
        assessment_id: str | None = None,
        question_id: str | None = None,
        limit: int = 20,
    ) -> list[SessionRecord]: ...

    async def record_run(self, key: SessionKey, run: RunRecord) -> None: ...


# =============================================================================
# PostgreSQL
# =============================================================================

_KEY_WHERE = (
    "candidate_id = %(candidate_id)s "
    "AND assessment_id = %(assessment_id)s "
    "AND question_id = %(question_id)s"
)


def _key_params(key: SessionKey) -> dict[str, Any]:
    return {
        "candidate_id": key.candidate_id,
        "assessment_id": key.assessment_id,
        "question_id": key.question_id,
    }


def _session_from_row(row: dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        key=SessionKey(
            candidate_id=row["candidate_id"],
            assessment_id=row["assessment_id"],
            question_id=row["question_id"],
        ),
        language_id=row.get("language_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        event_count=row.get("event_count") or 0,
    )


class PostgresEventStore:
    """Event store backed by the ``editor_*`` and ``run_history`` tables."""

    async def append_events(
        self,
        key: SessionKey,
        batch: Sequence[EditorEvent],
        language_id: int | None = None,
    ) -> None:
        """Append a batch in one transaction, creating the session if needed.

        Raises:
            StorageError: If the transaction fails; nothing is appended.
        """
        if not batch:
            return

        params = _key_params(key)
        try:
            async with transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO editor_sessions (
                        candidate_id, assessment_id, question_id, language_id, event_count
                    ) VALUES (
                        %(candidate_id)s, %(assessment_id)s, %(question_id)s,
                        %(language_id)s, %(count)s
                    )
                    ON CONFLICT (candidate_id, assessment_id, question_id) DO UPDATE
                    SET event_count = editor_sessions.event_count + EXCLUDED.event_count,
                        updated_at = NOW()
                    """,
                    {**params, "language_id": language_id, "count": len(batch)},
                )
                async with conn.cursor() as cur:
                    await cur.executemany(
                        """
                        INSERT INTO editor_events (
                            candidate_id, assessment_id, question_id, ts_ms, kind, payload
                        ) VALUES (
                            %(candidate_id)s, %(assessment_id)s, %(question_id)s,
                            %(ts_ms)s, %(kind)s, %(payload)s
                        )
                        """,
                        [
                            {
                                **params,
                                "ts_ms": event.timestamp,
                                "kind": event.kind.value,
                                "payload": Jsonb(event.to_record()),
                            }
                            for event in batch
                        ],
                    )
        except DatabaseError as e:
            logger.error(f"Failed to append events for session {key}: {e}")
            raise StorageError(f"Failed to append events: {e}") from e

        track_events_appended(len(batch))
        logger.debug(
            f"Appended {len(batch)} event(s) to session {key}",
            extra={"session_key": key.storage_key, "batch_size": len(batch)},
        )

    async def load_event_log(self, key: SessionKey) -> list[EditorEvent]:
        """Return the session's events in storage (insertion) order."""
        try:
            async with get_async_connection() as conn:
                cur = await conn.execute(
                    f"SELECT payload FROM editor_events WHERE {_KEY_WHERE} ORDER BY id",
                    _key_params(key),
                )
                rows = await cur.fetchall()
        except DatabaseError as e:
            logger.error(f"Failed to load event log for session {key}: {e}")
            raise StorageError(f"Failed to load event log: {e}") from e

        return parse_event_log(row["payload"] for row in rows)

    async def load_run_history(self, key: SessionKey) -> list[RunRecord]:
        """Return the session's runs ordered by time."""
        try:
            async with get_async_connection() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT ts_ms, verdict, message, score_meta
                    FROM run_history
                    WHERE {_KEY_WHERE}
                    ORDER BY ts_ms, id
                    """,
                    _key_params(key),
                )
                rows = await cur.fetchall()
        except DatabaseError as e:
            logger.error(f"Failed to load run history for session {key}: {e}")
            raise StorageError(f"Failed to load run history: {e}") from e

        return [
            RunRecord(
                timestamp=row["ts_ms"],
                verdict=row["verdict"],
                message=row.get("message"),
                score_meta=row.get("score_meta"),
            )
            for row in rows
        ]

    async def get_session(self, key: SessionKey) -> SessionRecord | None:
        try:
            async with get_async_connection() as conn:
                cur = await conn.execute(
                    f"SELECT * FROM editor_sessions WHERE {_KEY_WHERE}",
                    _key_params(key),
                )
                row = await cur.fetchone()
        except DatabaseError as e:
            raise StorageError(f"Failed to load session: {e}") from e

        return _session_from_row(row) if row else None

    async def list_sessions(
        self,
        candidate_id: str | None = None,
        assessment_id: str | None = None,
        question_id: str | None = None,
        limit: int = 20,
    ) -> list[SessionRecord]:
        """List sessions matching the given identifiers, most recent first."""
        filters: dict[str, Any] = {
            "candidate_id": candidate_id,
            "assessment_id": assessment_id,
            "question_id": question_id,
        }
        clauses = [f"{column} = %({column})s" for column, value in filters.items() if value]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with get_async_connection() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT * FROM editor_sessions
                    {where}
                    ORDER BY updated_at DESC
                    LIMIT %(limit)s
                    """,
                    {**filters, "limit": limit},
                )
                rows = await cur.fetchall()
        except DatabaseError as e:
            raise StorageError(f"Failed to list sessions: {e}") from e

        return [_session_from_row(row) for row in rows]

    async def record_run(self, key: SessionKey, run: RunRecord) -> None:
        try:
            async with get_async_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO run_history (
                        candidate_id, assessment_id, question_id,
                        ts_ms, verdict, message, score_meta
                    ) VALUES (
                        %(candidate_id)s, %(assessment_id)s, %(question_id)s,
                        %(ts_ms)s, %(verdict)s, %(message)s, %(score_meta)s
                    )
                    """,
                    {
                        **_key_params(key),
                        "ts_ms": run.timestamp,
                        "verdict": run.verdict.value,
                        "message": run.message,
                        "score_meta": Jsonb(run.score_meta) if run.score_meta is not None else None,
                    },
                )
        except DatabaseError as e:
            logger.error(f"Failed to record run for session {key}: {e}")
            raise StorageError(f"Failed to record run: {e}") from e

        logger.info(
            f"Recorded {run.verdict.value} run for session {key}",
            extra={"session_key": key.storage_key, "verdict": run.verdict.value},
        )


# =============================================================================
# Redis read-through cache
# =============================================================================


class CachedEventStore:
    """Caches whole event logs in Redis in front of another store.

    Cache failures never fail a request: they are logged and the inner store
    is used directly.

    Each append bumps a per-session generation; a load only writes back to
    Redis if no append for that session completed while it read the inner
    store.
    """

    def __init__(self, inner: EventStore, redis_client: RedisClient, ttl: int = 900) -> None:
        self._inner = inner
        self._redis = redis_client
        self._ttl = ttl
        self._generations: dict[str, int] = {}

    @property
    def inner(self) -> EventStore:
        return self._inner

    async def append_events(
        self,
        key: SessionKey,
        batch: Sequence[EditorEvent],
        language_id: int | None = None,
    ) -> None:
        await self._inner.append_events(key, batch, language_id)
        await self._invalidate(key)

    async def load_event_log(self, key: SessionKey) -> list[EditorEvent]:
        cache_key = event_log_cache_key(key.storage_key)

        try:
            cached = await self._redis.get_json(cache_key)
        except RedisError as e:
            track_cache_lookup("error")
            logger.warning(f"Event log cache read failed for session {key}: {e}")
            cached = None
        else:
            track_cache_lookup("hit" if cached is not None else "miss")

        if isinstance(cached, list):
            return parse_event_log(cached)

        generation = self._generations.get(key.storage_key, 0)
        events = await self._inner.load_event_log(key)
        if self._generations.get(key.storage_key, 0) != generation:
            logger.debug(
                f"Not caching event log for session {key}, appended during load",
                extra={"session_key": key.storage_key},
            )
            return events

        try:
            await self._redis.set_json(
                cache_key, [event.to_record() for event in events], ttl=self._ttl
            )
        except RedisError as e:
            logger.warning(f"Event log cache write failed for session {key}: {e}")
        return events

    async def load_run_history(self, key: SessionKey) -> list[RunRecord]:
        return await self._inner.load_run_history(key)

    async def get_session(self, key: SessionKey) -> SessionRecord | None:
        return await self._inner.get_session(key)

    async def list_sessions(
        self,
        candidate_id: str | None = None,
        assessment_id: str | None = None,
        question_id: str | None = None,
        limit: int = 20,
    ) -> list[SessionRecord]:
        return await self._inner.list_sessions(candidate_id, assessment_id, question_id, limit)

    async def record_run(self, key: SessionKey, run: RunRecord) -> None:
        await self._inner.record_run(key, run)

    async def _invalidate(self, key: SessionKey) -> None:
        self._generations[key.storage_key] = self._generations.get(key.storage_key, 0) + 1
        try:
            await self._redis.delete(event_log_cache_key(key.storage_key))
        except RedisError as e:
            logger.warning(f"Event log cache invalidation failed for session {key}: {e}")


__all__ = [
    "StorageError",
    "EventStore",
    "PostgresEventStore",
    "CachedEventStore",
]
