"""Replay timeline: the loaded event log in playback order.

The log is sorted once at load time and re-stamped relative to its first
event, so offsets start at 0 whatever clock the recorder used. Seeking is a
binary search over the ascending offsets.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from collections.abc import Iterable, Mapping
from typing import Any

from codereplay.models.events import EditorEvent, EventKind, parse_event_log

logger = logging.getLogger(__name__)


def sort_events(events: Iterable[EditorEvent]) -> list[EditorEvent]:
    """Order events by timestamp, keeping insertion order among ties."""
    return sorted(events, key=lambda event: event.timestamp)


class Timeline:
    """An immutable, timestamp-ordered event log with relative offsets.

    Attributes:
        origin_ms: Timestamp of the first event on the recording clock
            (0 for an empty log).
        events: Events re-stamped to offsets from ``origin_ms``.
        offsets: Ascending offsets, parallel to ``events``.
    """

    def __init__(self, events: Iterable[EditorEvent]) -> None:
        ordered = sort_events(events)
        self.origin_ms: int = ordered[0].timestamp if ordered else 0
        self.events: tuple[EditorEvent, ...] = tuple(
            event.restamped(event.timestamp - self.origin_ms) for event in ordered
        )
        self.offsets: tuple[int, ...] = tuple(event.timestamp for event in self.events)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any] | EditorEvent]) -> Timeline:
        """Build a timeline from raw storage records, skipping malformed ones."""
        return cls(parse_event_log(records))

    def __len__(self) -> int:
        return len(self.events)

    @property
    def is_empty(self) -> bool:
        return not self.events

    @property
    def duration_ms(self) -> int:
        return self.offsets[-1] if self.offsets else 0

    def clamp(self, offset_ms: float) -> float:
        """Clamp an offset into ``[0, duration_ms]``; NaN maps to 0."""
        if math.isnan(offset_ms):
            return 0
        return min(max(offset_ms, 0), self.duration_ms)

    def index_at(self, offset_ms: float) -> int:
        """Index of the last event at or before ``offset_ms``, or -1 if none."""
        return bisect_right(self.offsets, offset_ms) - 1

    def to_relative(self, timestamp_ms: int) -> int:
        """Express a timestamp from the recording clock as a timeline offset."""
        return timestamp_ms - self.origin_ms

    def text_change_offsets(self) -> list[int]:
        return [event.timestamp for event in self.events if event.kind is EventKind.TEXT_CHANGE]

    def __repr__(self) -> str:
        return f"Timeline(events={len(self.events)}, duration_ms={self.duration_ms})"


__all__ = ["Timeline", "sort_events"]
