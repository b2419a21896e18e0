"""Replay session loading.

Pulls a session's event log and run history from the event store and
assembles the timeline, the marker overlays and a playback engine.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from codereplay.config import Settings, get_settings
from codereplay.models.events import PauseMarker, RunMarker, SessionKey
from codereplay.observability.metrics import track_replay_opened
from codereplay.replay.clock import Clock, Scheduler
from codereplay.replay.document import reconstruct_up_to
from codereplay.replay.markers import (
    build_run_markers,
    derive_pause_markers,
    run_records_from_events,
)
from codereplay.replay.player import PlaybackEngine, PlaybackState, RenderableState
from codereplay.replay.timeline import Timeline
from codereplay.storage.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedSession:
    """A session's timeline with its marker overlays."""

    key: SessionKey
    timeline: Timeline
    pause_markers: tuple[PauseMarker, ...]
    run_markers: tuple[RunMarker, ...]

    @property
    def has_activity(self) -> bool:
        return not self.timeline.is_empty


class ReplayService:
    """Builds replays of recorded sessions.

    Example:
        service = ReplayService(store)
        engine = await service.open_session(key)
        engine.play()
    """

    def __init__(self, store: EventStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    async def load(self, key: SessionKey) -> LoadedSession:
        """Load and prepare a session for replay.

        The event log and run history are fetched concurrently. When the
        run history feed is empty, run results annotated in the log are used
        instead.

        Raises:
            StorageError: If either feed cannot be loaded.
        """
        events, runs = await asyncio.gather(
            self._store.load_event_log(key),
            self._store.load_run_history(key),
        )

        timeline = Timeline(events)
        if not runs:
            runs = run_records_from_events(events)

        session = LoadedSession(
            key=key,
            timeline=timeline,
            pause_markers=tuple(
                derive_pause_markers(timeline.events, self._settings.PAUSE_THRESHOLD_MS)
            ),
            run_markers=tuple(build_run_markers(runs, timeline)),
        )

        track_replay_opened(session.has_activity)
        logger.info(
            f"Loaded replay for session {key}",
            extra={
                "session_key": key.storage_key,
                "events": len(timeline),
                "duration_ms": timeline.duration_ms,
                "pause_markers": len(session.pause_markers),
                "run_markers": len(session.run_markers),
            },
        )
        return session

    async def open_session(
        self,
        key: SessionKey,
        *,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        speed: float | None = None,
    ) -> PlaybackEngine:
        """Load a session and return a stopped playback engine for it."""
        session = await self.load(key)
        return PlaybackEngine(
            session.timeline,
            pause_markers=session.pause_markers,
            run_markers=session.run_markers,
            clock=clock,
            scheduler=scheduler,
            speed=speed if speed is not None else self._settings.REPLAY_DEFAULT_SPEED,
            snapshot_interval=self._settings.REPLAY_SNAPSHOT_INTERVAL,
            progress_tick_ms=self._settings.REPLAY_PROGRESS_TICK_MS,
        )

    async def snapshot_at(self, key: SessionKey, at_ms: float | None = None) -> RenderableState:
        """Render a session at a timeline offset without playing it.

        ``at_ms`` is clamped into ``[0, duration]``; None means the end.
        """
        session = await self.load(key)
        timeline = session.timeline

        if timeline.is_empty:
            playback_state = PlaybackState.NO_ACTIVITY
            progress = 0.0
        else:
            progress = timeline.clamp(timeline.duration_ms if at_ms is None else at_ms)
            playback_state = (
                PlaybackState.ENDED if progress >= timeline.duration_ms else PlaybackState.PAUSED
            )

        document = reconstruct_up_to(timeline.events, progress)
        return RenderableState(
            document_text=document.text,
            cursor=document.cursor,
            selection=document.selection,
            progress_ms=progress,
            duration_ms=timeline.duration_ms,
            pause_markers=session.pause_markers,
            run_markers=session.run_markers,
            playback_state=playback_state,
            speed=self._settings.REPLAY_DEFAULT_SPEED,
        )


__all__ = ["LoadedSession", "ReplayService"]
