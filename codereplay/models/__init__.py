"""
Code Replay Models Package - Data models for recorded editor sessions.

This package provides the event records exchanged with storage and the
values derived from them during replay:
- Editor events and their positions/ranges
- Session identity and stored session metadata
- Run history records and timeline markers
"""

from .events import (
    # Enums
    EventKind,
    RunVerdict,
    MarkerVerdict,
    # Records
    Position,
    TextRange,
    EditorEvent,
    SessionKey,
    SessionRecord,
    RunRecord,
    # Derived markers
    PauseMarker,
    RunMarker,
    # Parsing
    parse_event,
    parse_event_log,
)

__all__ = [
    # Enums
    "EventKind",
    "RunVerdict",
    "MarkerVerdict",
    # Records
    "Position",
    "TextRange",
    "EditorEvent",
    "SessionKey",
    "SessionRecord",
    "RunRecord",
    # Derived markers
    "PauseMarker",
    "RunMarker",
    # Parsing
    "parse_event",
    "parse_event_log",
]
