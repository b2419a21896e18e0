"""
Event Store Tests.

Test Categories:
- Redis read-through cache in front of another store
- PostgreSQL store queries against a mock connection
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest

from conftest import InMemoryEventStore, MockRedisClient, insert
from codereplay.db.connection import DatabaseError
from codereplay.models.events import EditorEvent, RunRecord, RunVerdict, SessionKey
from codereplay.services.redis_client import event_log_cache_key
from codereplay.storage import event_store as event_store_module
from codereplay.storage.event_store import CachedEventStore, PostgresEventStore, StorageError


# =============================================================================
# Pytest Configuration
# =============================================================================


pytestmark = [
    pytest.mark.asyncio,
]


# =============================================================================
# Mock Classes
# =============================================================================


class GatedLoadStore(InMemoryEventStore):
    """In-memory store whose loads read the log, then wait for ``gate``."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = asyncio.Event()
        self.gate = asyncio.Event()

    async def load_event_log(self, key: SessionKey) -> list[EditorEvent]:
        events = await super().load_event_log(key)
        self.reading.set()
        await self.gate.wait()
        return events


class MockCursor:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows
        self.executemany_calls: list[tuple[str, list[dict[str, Any]]]] = []

    async def fetchall(self) -> list[dict[str, Any]]:
        return self._rows

    async def fetchone(self) -> dict[str, Any] | None:
        return self._rows[0] if self._rows else None

    async def executemany(self, query: str, params: list[dict[str, Any]]) -> None:
        self.executemany_calls.append((query, params))

    async def __aenter__(self) -> MockCursor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class MockConnection:
    """Records executed statements and returns canned rows."""

    def __init__(self, rows: list[dict[str, Any]] | None = None, fail: bool = False) -> None:
        self.rows = rows or []
        self.fail = fail
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.cursor_obj = MockCursor(self.rows)

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> MockCursor:
        if self.fail:
            raise DatabaseError("connection reset")
        self.executed.append((query, params or {}))
        return self.cursor_obj

    def cursor(self) -> MockCursor:
        return self.cursor_obj


@pytest.fixture
def mock_conn(monkeypatch: pytest.MonkeyPatch) -> MockConnection:
    conn = MockConnection()

    @asynccontextmanager
    async def connection():
        yield conn

    monkeypatch.setattr(event_store_module, "get_async_connection", connection)
    monkeypatch.setattr(event_store_module, "transaction", connection)
    return conn


# =============================================================================
# Cached store
# =============================================================================


class TestCachedEventStore:
    """Tests for the Redis read-through cache."""

    @pytest.fixture
    def cached(
        self,
        store: InMemoryEventStore,
        redis_client: MockRedisClient,
    ) -> CachedEventStore:
        return CachedEventStore(store, redis_client, ttl=60)

    async def test_miss_then_hit(
        self,
        cached: CachedEventStore,
        store: InMemoryEventStore,
        redis_client: MockRedisClient,
        session_key: SessionKey,
    ) -> None:
        await store.append_events(session_key, [insert(0, 1, 1, "a"), insert(5, 1, 2, "b")])

        first = await cached.load_event_log(session_key)
        second = await cached.load_event_log(session_key)

        assert first == second
        assert [event.inserted_text for event in second] == ["a", "b"]
        assert store.load_calls == 1
        assert redis_client.keys() == [event_log_cache_key(session_key.storage_key)]

    async def test_append_invalidates(
        self,
        cached: CachedEventStore,
        store: InMemoryEventStore,
        redis_client: MockRedisClient,
        session_key: SessionKey,
    ) -> None:
        await cached.append_events(session_key, [insert(0, 1, 1, "a")])
        await cached.load_event_log(session_key)
        assert redis_client.keys()

        await cached.append_events(session_key, [insert(10, 1, 2, "b")])
        assert redis_client.keys() == []

        events = await cached.load_event_log(session_key)
        assert [event.inserted_text for event in events] == ["a", "b"]
        assert store.load_calls == 2

    async def test_append_during_load_is_not_masked_by_cache(
        self,
        redis_client: MockRedisClient,
        session_key: SessionKey,
    ) -> None:
        inner = GatedLoadStore()
        cached = CachedEventStore(inner, redis_client, ttl=60)
        await cached.append_events(session_key, [insert(0, 1, 1, "a")])

        loading = asyncio.create_task(cached.load_event_log(session_key))
        await inner.reading.wait()
        await cached.append_events(session_key, [insert(10, 1, 2, "b")])
        inner.gate.set()

        assert [event.inserted_text for event in await loading] == ["a"]
        assert redis_client.keys() == []

        events = await cached.load_event_log(session_key)
        assert [event.inserted_text for event in events] == ["a", "b"]
        assert redis_client.keys() == [event_log_cache_key(session_key.storage_key)]

    async def test_redis_failure_falls_back_to_inner_store(
        self,
        cached: CachedEventStore,
        store: InMemoryEventStore,
        redis_client: MockRedisClient,
        session_key: SessionKey,
    ) -> None:
        redis_client.fail = True

        await cached.append_events(session_key, [insert(0, 1, 1, "a")])
        events = await cached.load_event_log(session_key)

        assert [event.inserted_text for event in events] == ["a"]
        assert store.load_calls == 1

    async def test_inner_failure_propagates(
        self,
        cached: CachedEventStore,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        store.fail = True
        with pytest.raises(StorageError):
            await cached.load_event_log(session_key)

    async def test_delegates_runs_and_sessions(
        self,
        cached: CachedEventStore,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await cached.append_events(session_key, [insert(0, 1, 1, "a")], language_id=71)
        await cached.record_run(session_key, RunRecord(timestamp=3, verdict=RunVerdict.PASSED))

        assert (await cached.get_session(session_key)).language_id == 71
        assert len(await cached.list_sessions(candidate_id="cand-1")) == 1
        assert await cached.list_sessions(candidate_id="someone-else") == []
        assert [run.timestamp for run in await cached.load_run_history(session_key)] == [3]


# =============================================================================
# PostgreSQL store
# =============================================================================


class TestPostgresEventStore:
    """Tests for the SQL issued by the PostgreSQL store."""

    async def test_append_upserts_session_and_inserts_events(
        self,
        mock_conn: MockConnection,
        session_key: SessionKey,
    ) -> None:
        await PostgresEventStore().append_events(
            session_key, [insert(0, 1, 1, "a"), insert(7, 1, 2, "b")], language_id=71
        )

        query, params = mock_conn.executed[0]
        assert "ON CONFLICT" in query
        assert params["count"] == 2
        assert params["language_id"] == 71

        _, rows = mock_conn.cursor_obj.executemany_calls[0]
        assert [row["ts_ms"] for row in rows] == [0, 7]
        assert [row["kind"] for row in rows] == ["change", "change"]

    async def test_empty_batch_is_noop(
        self,
        mock_conn: MockConnection,
        session_key: SessionKey,
    ) -> None:
        await PostgresEventStore().append_events(session_key, [])
        assert mock_conn.executed == []

    async def test_load_event_log_parses_payloads(
        self,
        mock_conn: MockConnection,
        session_key: SessionKey,
    ) -> None:
        mock_conn.rows.extend([
            {"payload": insert(0, 1, 1, "a").to_record()},
            {"payload": {"garbage": True}},
        ])

        events = await PostgresEventStore().load_event_log(session_key)

        assert [event.inserted_text for event in events] == ["a"]
        assert "ORDER BY id" in mock_conn.executed[0][0]

    async def test_database_error_becomes_storage_error(
        self,
        mock_conn: MockConnection,
        session_key: SessionKey,
    ) -> None:
        mock_conn.fail = True
        with pytest.raises(StorageError):
            await PostgresEventStore().load_run_history(session_key)
        with pytest.raises(StorageError):
            await PostgresEventStore().append_events(session_key, [insert(0, 1, 1, "a")])

    async def test_list_sessions_filters(self, mock_conn: MockConnection) -> None:
        now = datetime.now(timezone.utc)
        mock_conn.rows.append({
            "candidate_id": "c",
            "assessment_id": "a",
            "question_id": "q",
            "language_id": None,
            "event_count": 4,
            "created_at": now,
            "updated_at": now,
        })

        records = await PostgresEventStore().list_sessions(assessment_id="a", limit=5)

        query, params = mock_conn.executed[0]
        assert "assessment_id = %(assessment_id)s" in query
        assert "candidate_id = %(candidate_id)s" not in query
        assert params["limit"] == 5
        assert records[0].key.storage_key == "c:a:q"
        assert records[0].event_count == 4

    async def test_record_run(self, mock_conn: MockConnection, session_key: SessionKey) -> None:
        await PostgresEventStore().record_run(
            session_key,
            RunRecord(timestamp=42, verdict=RunVerdict.COMPILE_ERROR, message="oops"),
        )

        _, params = mock_conn.executed[0]
        assert params["verdict"] == "compile_error"
        assert params["score_meta"] is None
