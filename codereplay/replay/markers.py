"""Timeline marker derivation.

Markers are read-only overlays computed from a loaded log; nothing here
mutates events. Pause bands come from gaps between consecutive text
changes. The same gap test is used by the recorder when it annotates the
live stream with pause events, so both views always agree.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from codereplay.models.events import (
    EditorEvent,
    EventKind,
    PauseMarker,
    RunMarker,
    RunRecord,
)
from codereplay.replay.timeline import Timeline
from codereplay.replay.verdicts import display_verdict

logger = logging.getLogger(__name__)

DEFAULT_PAUSE_THRESHOLD_MS = 10_000


def pause_between(
    previous_ms: int,
    current_ms: int,
    threshold_ms: int = DEFAULT_PAUSE_THRESHOLD_MS,
) -> PauseMarker | None:
    """Return the pause band between two text changes, if the gap is idle."""
    gap = current_ms - previous_ms
    if gap >= threshold_ms:
        return PauseMarker(start=previous_ms, end=current_ms, duration=gap)
    return None


def derive_pause_markers(
    events: Iterable[EditorEvent],
    threshold_ms: int = DEFAULT_PAUSE_THRESHOLD_MS,
) -> list[PauseMarker]:
    """Compute pause bands from the text changes of an ordered event log.

    Cursor, selection and annotation events are ignored; a band is emitted
    for every adjacent pair of text changes at least ``threshold_ms`` apart.
    """
    markers: list[PauseMarker] = []
    previous: int | None = None
    for event in events:
        if event.kind is not EventKind.TEXT_CHANGE:
            continue
        if previous is not None:
            marker = pause_between(previous, event.timestamp, threshold_ms)
            if marker is not None:
                markers.append(marker)
        previous = event.timestamp
    return markers


def run_records_from_events(events: Iterable[EditorEvent]) -> list[RunRecord]:
    """Extract run history from run-result annotations found in a log."""
    return [
        RunRecord(
            timestamp=event.timestamp,
            verdict=event.verdict,  # type: ignore[arg-type]
            message=event.message,
            score_meta=event.score_meta,
        )
        for event in events
        if event.kind is EventKind.RUN_RESULT and event.is_complete
    ]


def build_run_markers(runs: Sequence[RunRecord], timeline: Timeline) -> list[RunMarker]:
    """Anchor run history onto a replay timeline.

    Each run timestamp is translated to a timeline offset and clamped into
    ``[0, duration]``; verdicts are collapsed to the display categories.

    Args:
        runs: Run records on the recording clock.
        timeline: The loaded session timeline.

    Returns:
        Markers ordered by offset.
    """
    markers = [
        RunMarker(
            timestamp=int(timeline.clamp(timeline.to_relative(run.timestamp))),
            verdict=display_verdict(run.verdict),
            message=run.message,
            score_meta=run.score_meta,
        )
        for run in runs
    ]
    markers.sort(key=lambda marker: marker.timestamp)

    logger.debug(
        f"Anchored {len(markers)} run marker(s) onto timeline",
        extra={"duration_ms": timeline.duration_ms},
    )
    return markers


__all__ = [
    "DEFAULT_PAUSE_THRESHOLD_MS",
    "pause_between",
    "derive_pause_markers",
    "run_records_from_events",
    "build_run_markers",
]
