"""Session recording and replay.

Components:
- EventRecorder: buffers live editor events and flushes them to storage
- Timeline / reconstruct_up_to: ordered log and document reconstruction
- PlaybackEngine: virtual-clock player with pause, speed and seek
- Markers: pause bands and run verdicts overlaid on the timeline
- ReplayService: loads a stored session into a playback engine
"""

from codereplay.replay.clock import (
    Clock,
    LoopScheduler,
    MonotonicClock,
    Scheduler,
    TimerHandle,
    WallClock,
)
from codereplay.replay.document import (
    DocumentState,
    EditorState,
    SnapshotIndex,
    TextDocument,
    apply_event,
    reconstruct_up_to,
)
from codereplay.replay.markers import (
    DEFAULT_PAUSE_THRESHOLD_MS,
    build_run_markers,
    derive_pause_markers,
    pause_between,
    run_records_from_events,
)
from codereplay.replay.player import PlaybackEngine, PlaybackState, RenderableState
from codereplay.replay.recorder import EventRecorder, EventSink, RecorderError
from codereplay.replay.service import LoadedSession, ReplayService
from codereplay.replay.timeline import Timeline, sort_events
from codereplay.replay.verdicts import (
    display_verdict,
    verdict_from_case_statuses,
    verdict_from_judge_status,
)

__all__ = [
    # Clocks
    "Clock",
    "TimerHandle",
    "Scheduler",
    "MonotonicClock",
    "WallClock",
    "LoopScheduler",
    # Document
    "TextDocument",
    "DocumentState",
    "EditorState",
    "SnapshotIndex",
    "apply_event",
    "reconstruct_up_to",
    # Timeline
    "Timeline",
    "sort_events",
    # Markers
    "DEFAULT_PAUSE_THRESHOLD_MS",
    "pause_between",
    "derive_pause_markers",
    "run_records_from_events",
    "build_run_markers",
    # Verdicts
    "verdict_from_case_statuses",
    "verdict_from_judge_status",
    "display_verdict",
    # Playback
    "PlaybackState",
    "RenderableState",
    "PlaybackEngine",
    # Recording
    "EventSink",
    "RecorderError",
    "EventRecorder",
    # Service
    "LoadedSession",
    "ReplayService",
]
