"""Playback Engine for recorded editor sessions.

Drives a virtual clock through a loaded timeline, applying each event at
the moment it happened in the recording, scaled by the playback speed.

The virtual clock is kept as two reference points taken at the last state
transition::

    virtual_ms = base_virtual_ms + (now_ms - wall_start_ms) * speed

so pausing, changing speed or seeking only has to rebase those points.

Edits reach the document through exactly one path, the scheduling step,
which applies every due event and arms a one-shot timer for the next one.
A separate progress tick only samples the clock for display. Every timer
captures the playback generation it was armed under; any transition bumps
the generation so a timer that fires late is a no-op.

States:
- STOPPED: virtual time 0, nothing applied
- PLAYING: virtual clock advancing
- PAUSED: virtual clock frozen
- ENDED: every event applied, virtual time pinned at the duration
- NO_ACTIVITY: the session has no events; controls do nothing
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from codereplay.models.events import (
    EditorEvent,
    PauseMarker,
    Position,
    RunMarker,
    TextRange,
)
from codereplay.observability.metrics import track_seek
from codereplay.replay.clock import Clock, LoopScheduler, MonotonicClock, Scheduler, TimerHandle
from codereplay.replay.document import EditorState, SnapshotIndex
from codereplay.replay.markers import derive_pause_markers
from codereplay.replay.timeline import Timeline

logger = logging.getLogger(__name__)


# =============================================================================
# Enums and snapshots
# =============================================================================


class PlaybackState(str, Enum):
    """Playback engine state."""

    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    NO_ACTIVITY = "no_activity"


@dataclass(frozen=True)
class RenderableState:
    """Read-only snapshot of everything a replay surface draws."""

    document_text: str
    cursor: Position | None
    selection: TextRange | None
    progress_ms: float
    duration_ms: int
    pause_markers: tuple[PauseMarker, ...]
    run_markers: tuple[RunMarker, ...]
    playback_state: PlaybackState
    speed: float

    @property
    def has_activity(self) -> bool:
        return self.playback_state is not PlaybackState.NO_ACTIVITY

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_text": self.document_text,
            "cursor": self.cursor.model_dump(by_alias=True) if self.cursor else None,
            "selection": self.selection.model_dump(by_alias=True) if self.selection else None,
            "progress_ms": self.progress_ms,
            "duration_ms": self.duration_ms,
            "pause_markers": [marker.to_dict() for marker in self.pause_markers],
            "run_markers": [marker.to_dict() for marker in self.run_markers],
            "playback_state": self.playback_state.value,
            "speed": self.speed,
        }


StateListener = Callable[[RenderableState], None]
AppliedListener = Callable[[int, EditorEvent], None]


# =============================================================================
# PlaybackEngine
# =============================================================================


class PlaybackEngine:
    """Virtual-clock player for one session timeline.

    The engine owns its document buffer; the timeline it is given is never
    modified. Create one engine per open replay.

    Example:
        engine = PlaybackEngine(timeline, speed=2.0)
        engine.play()
        ...
        engine.seek(30_000)
        state = engine.get_renderable_state()
    """

    # Events due within this many virtual ms are applied in the current step
    SCHEDULE_TOLERANCE_MS = 1.0

    def __init__(
        self,
        timeline: Timeline,
        *,
        pause_markers: Sequence[PauseMarker] | None = None,
        run_markers: Sequence[RunMarker] = (),
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        speed: float = 1.0,
        snapshot_interval: int = 0,
        progress_tick_ms: float = 50.0,
        on_event_applied: AppliedListener | None = None,
    ) -> None:
        """Initialize the engine in STOPPED (or NO_ACTIVITY) state.

        Args:
            timeline: The loaded, ordered session timeline.
            pause_markers: Precomputed pause bands; derived from the
                timeline with the default threshold when omitted.
            run_markers: Run markers already anchored onto the timeline.
            clock: Time source for the virtual clock.
            scheduler: Timer source; defaults to the running asyncio loop.
            speed: Initial speed multiplier.
            snapshot_interval: Events between seek snapshots (0 disables).
            progress_tick_ms: Period of the display progress tick.
            on_event_applied: Called with (index, event) each time the
                scheduling path applies an event.
        """
        _validate_speed(speed)

        self._timeline = timeline
        self._pause_markers = tuple(
            pause_markers if pause_markers is not None else derive_pause_markers(timeline.events)
        )
        self._run_markers = tuple(run_markers)
        self._clock = clock or MonotonicClock()
        self._scheduler = scheduler or LoopScheduler()
        self._speed = speed
        self._progress_tick_ms = progress_tick_ms
        self._on_event_applied = on_event_applied
        self._listeners: list[StateListener] = []

        self._snapshots = SnapshotIndex(timeline.events, snapshot_interval)
        self._editor = EditorState()
        self._index = 0
        self._base_virtual_ms = 0.0
        self._wall_start_ms = self._clock.now_ms()
        self._generation = 0
        self._event_timer: TimerHandle | None = None
        self._progress_timer: TimerHandle | None = None
        self._progress_ms = 0.0

        self._playback = (
            PlaybackState.NO_ACTIVITY if timeline.is_empty else PlaybackState.STOPPED
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def playback_state(self) -> PlaybackState:
        return self._playback

    @property
    def has_activity(self) -> bool:
        return self._playback is not PlaybackState.NO_ACTIVITY

    @property
    def timeline(self) -> Timeline:
        return self._timeline

    @property
    def duration_ms(self) -> int:
        return self._timeline.duration_ms

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def index(self) -> int:
        """Index of the next event to apply."""
        return self._index

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def document_text(self) -> str:
        return self._editor.document.text

    @property
    def progress_ms(self) -> float:
        """Current position on the timeline, clamped into [0, duration]."""
        if self._playback is PlaybackState.PLAYING:
            return self._timeline.clamp(self._virtual_now())
        return self._progress_ms

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        """Start or resume playback; restarts from the beginning after ENDED."""
        if self._playback is PlaybackState.NO_ACTIVITY:
            logger.debug("Ignoring play on a session with no activity")
            return
        if self._playback is PlaybackState.PLAYING:
            return
        if self._playback is PlaybackState.ENDED:
            self._reset()

        self._invalidate()
        self._playback = PlaybackState.PLAYING
        self._wall_start_ms = self._clock.now_ms()

        logger.debug(
            "Playback started",
            extra={"virtual_ms": self._base_virtual_ms, "index": self._index, "speed": self._speed},
        )

        generation = self._generation
        self._arm_progress_tick(generation)
        self._run_scheduler(generation)

    def pause(self) -> None:
        """Freeze the virtual clock at its current value."""
        if self._playback is not PlaybackState.PLAYING:
            return

        self._base_virtual_ms = self._timeline.clamp(self._virtual_now())
        self._invalidate()
        self._playback = PlaybackState.PAUSED
        self._progress_ms = self._base_virtual_ms

        logger.debug("Playback paused", extra={"virtual_ms": self._base_virtual_ms})
        self._notify()

    def toggle(self) -> None:
        """Pause when playing, play otherwise."""
        if self._playback is PlaybackState.PLAYING:
            self.pause()
        else:
            self.play()

    def stop(self) -> None:
        """Cancel playback and return to the empty document at time 0."""
        if self._playback is PlaybackState.NO_ACTIVITY:
            return
        self._reset()
        self._playback = PlaybackState.STOPPED
        self._notify()

    def seek(self, target_ms: float) -> None:
        """Jump to ``target_ms``, leaving the engine PAUSED there.

        Out-of-range targets are clamped into ``[0, duration]``. The document
        is rebuilt from the nearest snapshot so the result is identical to a
        fresh reconstruction up to the target.
        """
        if self._playback is PlaybackState.NO_ACTIVITY:
            return
        if self._playback is PlaybackState.PLAYING:
            self.pause()

        target = self._timeline.clamp(target_ms)
        found = self._timeline.index_at(target)

        self._invalidate()
        self._editor = self._snapshots.state_through(found)
        self._index = found + 1
        self._base_virtual_ms = target
        self._wall_start_ms = self._clock.now_ms()
        self._progress_ms = target
        self._playback = PlaybackState.PAUSED

        track_seek()
        logger.debug("Seeked", extra={"target_ms": target, "index": self._index})
        self._notify()

    def seek_by(self, delta_ms: float) -> None:
        """Seek relative to the current position."""
        self.seek(self.progress_ms + delta_ms)

    def seek_to_fraction(self, fraction: float) -> None:
        """Seek to a fraction of the duration (0.0 to 1.0)."""
        fraction = min(max(fraction, 0.0), 1.0)
        self.seek(round(self.duration_ms * fraction))

    def set_speed(self, multiplier: float) -> None:
        """Change the speed multiplier without a discontinuity.

        While playing, elapsed wall time is first folded into the virtual
        base at the old speed, then scheduling resumes at the new speed.

        Raises:
            ValueError: If ``multiplier`` is not a positive finite number.
        """
        _validate_speed(multiplier)

        if self._playback is not PlaybackState.PLAYING:
            self._speed = multiplier
            return

        self._base_virtual_ms = self._virtual_now()
        self._wall_start_ms = self._clock.now_ms()
        self._invalidate()
        self._speed = multiplier

        logger.debug(
            "Playback speed changed",
            extra={"speed": multiplier, "virtual_ms": self._base_virtual_ms},
        )

        generation = self._generation
        self._arm_progress_tick(generation)
        self._run_scheduler(generation)

    def close(self) -> None:
        """Cancel outstanding timers; the engine keeps its last state."""
        self._invalidate()
        if self._playback is PlaybackState.PLAYING:
            self._base_virtual_ms = self._timeline.clamp(self._virtual_now())
            self._progress_ms = self._base_virtual_ms
            self._playback = PlaybackState.PAUSED

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def get_renderable_state(self) -> RenderableState:
        """Snapshot the engine for rendering. Never mutates the engine."""
        return RenderableState(
            document_text=self._editor.document.text,
            cursor=self._editor.cursor,
            selection=self._editor.selection,
            progress_ms=self.progress_ms,
            duration_ms=self.duration_ms,
            pause_markers=self._pause_markers,
            run_markers=self._run_markers,
            playback_state=self._playback,
            speed=self._speed,
        )

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Scheduling internals
    # ------------------------------------------------------------------

    def _virtual_now(self) -> float:
        if self._playback is PlaybackState.PLAYING:
            elapsed = self._clock.now_ms() - self._wall_start_ms
            return self._base_virtual_ms + elapsed * self._speed
        return self._base_virtual_ms

    def _invalidate(self) -> None:
        """Bump the generation and cancel both timers."""
        self._generation += 1
        if self._event_timer is not None:
            self._event_timer.cancel()
            self._event_timer = None
        if self._progress_timer is not None:
            self._progress_timer.cancel()
            self._progress_timer = None

    def _reset(self) -> None:
        self._invalidate()
        self._editor.reset()
        self._index = 0
        self._base_virtual_ms = 0.0
        self._wall_start_ms = self._clock.now_ms()
        self._progress_ms = 0.0

    def _run_scheduler(self, generation: int) -> None:
        """Apply every due event, then arm the timer for the next one."""
        if generation != self._generation or self._playback is not PlaybackState.PLAYING:
            logger.debug(
                "Ignoring stale playback timer",
                extra={"timer_generation": generation, "generation": self._generation},
            )
            return

        self._event_timer = None
        now_virtual = self._virtual_now()
        offsets = self._timeline.offsets

        applied = 0
        while (
            self._index < len(offsets)
            and offsets[self._index] <= now_virtual + self.SCHEDULE_TOLERANCE_MS
        ):
            self._apply_next()
            applied += 1

        if self._index >= len(offsets):
            self._finish()
            return

        if applied:
            self._notify()

        delay_ms = max(offsets[self._index] - now_virtual, 0.0) / self._speed
        self._event_timer = self._scheduler.call_later(
            delay_ms, lambda: self._run_scheduler(generation)
        )

    def _apply_next(self) -> None:
        event = self._timeline.events[self._index]
        self._editor.apply(event)
        if self._on_event_applied is not None:
            self._on_event_applied(self._index, event)
        self._index += 1

    def _finish(self) -> None:
        self._invalidate()
        self._playback = PlaybackState.ENDED
        self._base_virtual_ms = float(self.duration_ms)
        self._progress_ms = self._base_virtual_ms

        logger.debug("Playback ended", extra={"events": len(self._timeline)})
        self._notify()

    def _arm_progress_tick(self, generation: int) -> None:
        def tick() -> None:
            if generation != self._generation or self._playback is not PlaybackState.PLAYING:
                return
            self._progress_ms = self.progress_ms
            self._notify()
            self._progress_timer = self._scheduler.call_later(self._progress_tick_ms, tick)

        self._progress_timer = self._scheduler.call_later(self._progress_tick_ms, tick)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_renderable_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Replay state listener failed: {e}", exc_info=True)

    def __repr__(self) -> str:
        return (
            f"PlaybackEngine(state={self._playback.value}, index={self._index}/"
            f"{len(self._timeline)}, speed={self._speed})"
        )


def _validate_speed(multiplier: float) -> None:
    if not (isinstance(multiplier, (int, float)) and math.isfinite(multiplier) and multiplier > 0):
        raise ValueError(f"Playback speed must be a positive number, got {multiplier!r}")


__all__ = [
    "PlaybackState",
    "RenderableState",
    "PlaybackEngine",
]
