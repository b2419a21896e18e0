"""Event Recording for editor sessions.

Provides the EventRecorder class, which captures a candidate's live editor
activity into an in-memory buffer and delivers it to durable storage in
ordered batches.

The recorder is designed for:
- Low overhead: recording is a synchronous append, never I/O
- At-least-once delivery: a failed batch is put back in front of the buffer
- Ordering: batches are delivered one at a time, in capture order
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from codereplay.config import Settings, get_settings
from codereplay.models.events import EditorEvent, Position, SessionKey, TextRange
from codereplay.observability.metrics import track_event_recorded, track_flush
from codereplay.replay.clock import Clock, WallClock
from codereplay.replay.markers import DEFAULT_PAUSE_THRESHOLD_MS, pause_between

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_MS = 3_000


# =============================================================================
# Sink Protocol
# =============================================================================


class EventSink(Protocol):
    """Durable destination of recorded batches.

    Implementations append the batch to the session's log in order and raise
    on failure.
    """

    async def append_events(
        self,
        key: SessionKey,
        batch: Sequence[EditorEvent],
        language_id: int | None = None,
    ) -> None: ...


class RecorderError(Exception):
    """Raised when the recorder is used outside its lifecycle."""

    pass


# =============================================================================
# EventRecorder Class
# =============================================================================


class EventRecorder:
    """Buffers one session's editor events and flushes them periodically.

    One recorder owns one buffer for one session. The flush loop swaps the
    buffer out without yielding, so events recorded while a delivery is in
    flight always land in the next batch.

    Example:
        recorder = EventRecorder(key, store, language_id=71)
        recorder.start()

        recorder.record_change(TextRange.of(1, 1, 1, 1), "a")
        recorder.record_cursor(Position(line_number=1, column=2))

        # On session end
        recorder.close()
    """

    def __init__(
        self,
        session_key: SessionKey,
        sink: EventSink,
        *,
        clock: Clock | None = None,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
        pause_threshold_ms: int = DEFAULT_PAUSE_THRESHOLD_MS,
        language_id: int | None = None,
    ) -> None:
        """Initialize the EventRecorder.

        Args:
            session_key: Identity of the session being recorded.
            sink: Storage collaborator receiving the batches.
            clock: Time source stamping events; wall-clock ms by default.
            flush_interval_ms: Delay between periodic flushes.
            pause_threshold_ms: Idle gap between text changes that is
                annotated with a pause event.
            language_id: Language active when the session was created.
        """
        if flush_interval_ms <= 0:
            raise ValueError("flush_interval_ms must be positive")

        self.session_key = session_key
        self.language_id = language_id
        self._sink = sink
        self._clock = clock or WallClock()
        self._flush_interval_ms = flush_interval_ms
        self._pause_threshold_ms = pause_threshold_ms

        self._buffer: list[EditorEvent] = []
        self._last_change_ms: int | None = None
        self._in_flight = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._flush_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        session_key: SessionKey,
        sink: EventSink,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        language_id: int | None = None,
    ) -> EventRecorder:
        """Build a recorder using the configured flush interval and pause threshold."""
        settings = settings or get_settings()
        return cls(
            session_key,
            sink,
            clock=clock,
            flush_interval_ms=settings.FLUSH_INTERVAL_MS,
            pause_threshold_ms=settings.PAUSE_THRESHOLD_MS,
            language_id=language_id,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def pending(self) -> tuple[EditorEvent, ...]:
        """Events buffered but not yet delivered, in capture order."""
        return tuple(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_change(
        self,
        text_range: TextRange,
        inserted_text: str,
        deleted_length: int = 0,
    ) -> None:
        """Record a text edit, annotating the idle gap before it if any."""
        now = self._now()
        if now is None:
            return

        if self._last_change_ms is not None:
            marker = pause_between(self._last_change_ms, now, self._pause_threshold_ms)
            if marker is not None:
                self._append(EditorEvent.pause(now, marker.duration))
        self._last_change_ms = now

        self._append(EditorEvent.text_change(now, text_range, inserted_text, deleted_length))

    def record_cursor(self, position: Position) -> None:
        """Record a cursor move."""
        now = self._now()
        if now is not None:
            self._append(EditorEvent.cursor_move(now, position))

    def record_selection(self, selection: TextRange) -> None:
        """Record a selection change."""
        now = self._now()
        if now is not None:
            self._append(EditorEvent.selection_change(now, selection))

    def _now(self) -> int | None:
        if self._closed:
            logger.warning(
                f"Ignoring event recorded after close for session {self.session_key}",
                extra={"session_key": self.session_key.storage_key},
            )
            return None
        return int(self._clock.now_ms())

    def _append(self, event: EditorEvent) -> None:
        self._buffer.append(event)
        track_event_recorded(event.kind.value)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def flush(self) -> bool:
        """Deliver the buffered events as one batch.

        The buffer is swapped out before the delivery is awaited. On failure
        the batch is prepended back onto whatever was recorded meanwhile.

        Returns:
            True if there was nothing to send or the batch was delivered,
            False if delivery failed or another delivery is still in flight.
        """
        if self._in_flight:
            logger.debug(
                "Skipping flush while a delivery is in flight",
                extra={"session_key": self.session_key.storage_key},
            )
            return False
        if not self._buffer:
            return True

        batch, self._buffer = self._buffer, []
        self._in_flight = True
        self._idle.clear()
        try:
            await self._sink.append_events(self.session_key, batch, self.language_id)
        except asyncio.CancelledError:
            self._buffer[:0] = batch
            raise
        except Exception as e:
            self._buffer[:0] = batch
            track_flush("failed", len(batch))
            logger.warning(
                f"Failed to deliver {len(batch)} event(s) for session {self.session_key}: {e}",
                extra={
                    "session_key": self.session_key.storage_key,
                    "batch_size": len(batch),
                    "buffered": len(self._buffer),
                },
            )
            return False
        finally:
            self._in_flight = False
            self._idle.set()

        track_flush("delivered", len(batch))
        logger.debug(
            f"Delivered {len(batch)} event(s) for session {self.session_key}",
            extra={"session_key": self.session_key.storage_key, "batch_size": len(batch)},
        )
        return True

    async def _flush_loop(self) -> None:
        interval = self._flush_interval_ms / 1000.0
        while not self._closed:
            await asyncio.sleep(interval)
            if self._closed:
                break
            await self.flush()

    def start(self) -> None:
        """Start the periodic flush loop on the running event loop."""
        if self._closed:
            raise RecorderError(f"Recorder for session {self.session_key} is closed")
        if self.is_running:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())
        logger.info(
            f"Recording session {self.session_key}",
            extra={
                "session_key": self.session_key.storage_key,
                "flush_interval_ms": self._flush_interval_ms,
            },
        )

    def close(self) -> asyncio.Task[None] | None:
        """Stop recording and attempt a final, best-effort delivery.

        The final delivery is scheduled without being awaited; a failure is
        logged and the remaining events are dropped. A delivery already in
        flight is left to finish, and the final batch is sent after it
        together with anything that delivery put back on failure.

        Returns:
            The task running the final delivery, or None if nothing was
            buffered or in flight.
        """
        if self._closed:
            return None
        self._closed = True

        # The loop exits on its own once an in-flight flush returns.
        if self._flush_task is not None:
            if not self._in_flight:
                self._flush_task.cancel()
            self._flush_task = None

        if not self._buffer and not self._in_flight:
            return None

        return asyncio.get_running_loop().create_task(self._final_delivery())

    async def _final_delivery(self) -> None:
        await self._idle.wait()
        if not self._buffer:
            return

        batch, self._buffer = self._buffer, []
        try:
            await self._sink.append_events(self.session_key, batch, self.language_id)
        except Exception as e:
            track_flush("dropped", len(batch))
            logger.error(
                f"Dropped {len(batch)} event(s) on close of session {self.session_key}: {e}",
                extra={"session_key": self.session_key.storage_key, "batch_size": len(batch)},
            )
            return
        track_flush("delivered", len(batch))

    async def __aenter__(self) -> EventRecorder:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        task = self.close()
        if task is not None:
            await task


__all__ = [
    "DEFAULT_FLUSH_INTERVAL_MS",
    "EventSink",
    "RecorderError",
    "EventRecorder",
]
