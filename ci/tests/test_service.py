"""
Replay Service Tests.
"""

from __future__ import annotations

import pytest

from conftest import InMemoryEventStore, ManualClock, ManualScheduler, cursor, insert
from codereplay.config import Settings
from codereplay.models.events import (
    EditorEvent,
    MarkerVerdict,
    PauseMarker,
    RunRecord,
    RunVerdict,
    SessionKey,
)
from codereplay.replay.player import PlaybackState
from codereplay.replay.service import ReplayService
from codereplay.storage.event_store import StorageError


pytestmark = [
    pytest.mark.asyncio,
]

ORIGIN = 1_700_000_000_000


@pytest.fixture
def service(store: InMemoryEventStore) -> ReplayService:
    return ReplayService(store, Settings(PAUSE_THRESHOLD_MS=10000, REPLAY_SNAPSHOT_INTERVAL=2))


async def seed_abc(store: InMemoryEventStore, key: SessionKey) -> None:
    await store.append_events(key, [
        insert(ORIGIN, 1, 1, "a"),
        insert(ORIGIN + 1000, 1, 2, "b"),
        cursor(ORIGIN + 1500, 1, 3),
        insert(ORIGIN + 20000, 1, 3, "c"),
    ])


class TestLoad:
    async def test_builds_relative_timeline_and_markers(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await seed_abc(store, session_key)
        await store.record_run(
            session_key, RunRecord(timestamp=ORIGIN + 5000, verdict=RunVerdict.RUNTIME_ERROR)
        )

        session = await service.load(session_key)

        assert session.has_activity
        assert session.timeline.offsets == (0, 1000, 1500, 20000)
        assert session.pause_markers == (PauseMarker(start=1000, end=20000, duration=19000),)
        assert [(m.timestamp, m.verdict) for m in session.run_markers] == [
            (5000, MarkerVerdict.FAILED)
        ]

    async def test_falls_back_to_log_annotations_for_runs(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await store.append_events(session_key, [
            insert(ORIGIN, 1, 1, "a"),
            EditorEvent.run_result(ORIGIN + 800, RunVerdict.COMPILE_ERROR, "missing ;"),
        ])

        session = await service.load(session_key)

        assert [(m.timestamp, m.verdict, m.message) for m in session.run_markers] == [
            (800, MarkerVerdict.COMPILE_ERROR, "missing ;")
        ]

    async def test_storage_errors_propagate(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        store.fail = True
        with pytest.raises(StorageError):
            await service.load(session_key)


class TestSnapshotAt:
    async def test_renders_at_offset(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await seed_abc(store, session_key)

        state = await service.snapshot_at(session_key, 1200)

        assert state.document_text == "ab"
        assert state.playback_state is PlaybackState.PAUSED
        assert state.progress_ms == 1200

    async def test_defaults_to_end(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await seed_abc(store, session_key)

        state = await service.snapshot_at(session_key)

        assert state.document_text == "abc"
        assert state.playback_state is PlaybackState.ENDED
        assert state.progress_ms == 20000

    async def test_clamps_out_of_range(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
    ) -> None:
        await seed_abc(store, session_key)

        assert (await service.snapshot_at(session_key, -5)).document_text == "a"
        assert (await service.snapshot_at(session_key, 10**9)).progress_ms == 20000

    async def test_missing_session_has_no_activity(
        self,
        service: ReplayService,
        session_key: SessionKey,
    ) -> None:
        state = await service.snapshot_at(session_key, 100)

        assert state.playback_state is PlaybackState.NO_ACTIVITY
        assert not state.has_activity
        assert state.document_text == ""
        assert state.duration_ms == 0


class TestOpenSession:
    async def test_engine_carries_markers_and_plays(
        self,
        service: ReplayService,
        store: InMemoryEventStore,
        session_key: SessionKey,
        clock: ManualClock,
        scheduler: ManualScheduler,
    ) -> None:
        await seed_abc(store, session_key)
        await store.record_run(
            session_key, RunRecord(timestamp=ORIGIN + 30000, verdict=RunVerdict.PASSED)
        )

        engine = await service.open_session(
            session_key, clock=clock, scheduler=scheduler, speed=2.0
        )
        state = engine.get_renderable_state()

        assert state.playback_state is PlaybackState.STOPPED
        assert state.speed == 2.0
        assert [m.timestamp for m in state.run_markers] == [20000]

        engine.play()
        scheduler.advance(10000)
        assert engine.playback_state is PlaybackState.ENDED
        assert engine.document_text == "abc"

    async def test_empty_session_engine(
        self,
        service: ReplayService,
        session_key: SessionKey,
        clock: ManualClock,
        scheduler: ManualScheduler,
    ) -> None:
        engine = await service.open_session(session_key, clock=clock, scheduler=scheduler)
        assert engine.playback_state is PlaybackState.NO_ACTIVITY
