"""Editor event records and the values derived from them.

Events travel as structurally typed records whose field names follow the
editor's own vocabulary (``t``, ``type``, ``range``, ``text``,
``rangeLength``...). The models accept either the wire names or the Python
attribute names and always dump back to the wire names.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class EventKind(str, Enum):
    """Kinds of events found in a session's event log."""

    TEXT_CHANGE = "change"
    CURSOR_MOVE = "cursor"
    SELECTION_CHANGE = "selection"
    PAUSE = "pause"
    RUN_RESULT = "run_result"


class RunVerdict(str, Enum):
    """Outcome of one run of the candidate's code against the judge."""

    PASSED = "passed"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    FAILED = "failed"


class MarkerVerdict(str, Enum):
    """Verdict categories shown on the replay timeline."""

    PASSED = "Passed"
    COMPILE_ERROR = "CompileError"
    FAILED = "Failed"


# =============================================================================
# Positions and ranges
# =============================================================================


class Position(BaseModel):
    """A 1-based line/column position in the document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    line_number: int = Field(..., alias="lineNumber", ge=1)
    column: int = Field(..., ge=1)


class TextRange(BaseModel):
    """A 1-based span of the document, end exclusive on the column."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    start_line_number: int = Field(..., alias="startLineNumber", ge=1)
    start_column: int = Field(..., alias="startColumn", ge=1)
    end_line_number: int = Field(..., alias="endLineNumber", ge=1)
    end_column: int = Field(..., alias="endColumn", ge=1)

    @classmethod
    def of(cls, start_line: int, start_col: int, end_line: int, end_col: int) -> TextRange:
        """Build a range from four positional coordinates."""
        return cls(
            start_line_number=start_line,
            start_column=start_col,
            end_line_number=end_line,
            end_column=end_col,
        )

    @property
    def start(self) -> tuple[int, int]:
        return (self.start_line_number, self.start_column)

    @property
    def end(self) -> tuple[int, int]:
        return (self.end_line_number, self.end_column)


# =============================================================================
# EditorEvent
# =============================================================================


class EditorEvent(BaseModel):
    """One observed or derived action in a candidate's editing session.

    Payload fields are optional at the model level so that a log containing a
    truncated record can still be loaded; ``is_complete`` tells whether the
    payload required by ``kind`` is present.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    timestamp: int = Field(..., alias="t", description="Milliseconds")
    kind: EventKind = Field(..., alias="type")

    # TextChange
    range: TextRange | None = None
    inserted_text: str | None = Field(default=None, alias="text")
    deleted_length: int | None = Field(default=None, alias="rangeLength")

    # CursorMove / SelectionChange
    position: Position | None = None
    selection: TextRange | None = None

    # Pause
    duration_ms: int | None = Field(default=None, alias="durationMs")

    # RunResult
    verdict: RunVerdict | None = Field(default=None, alias="status")
    message: str | None = None
    score_meta: dict[str, Any] | None = Field(default=None, alias="scoreMeta")

    @field_validator("timestamp", "duration_ms", mode="before")
    @classmethod
    def _round_milliseconds(cls, value: Any) -> Any:
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError("milliseconds must be finite")
            return int(round(value))
        return value

    @field_validator("verdict", mode="before")
    @classmethod
    def _drop_pause_status(cls, value: Any) -> Any:
        # Server-annotated pause records carry status="pause".
        if value == "pause":
            return None
        return value

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def text_change(
        cls,
        timestamp: int,
        range: TextRange,
        inserted_text: str,
        deleted_length: int = 0,
    ) -> EditorEvent:
        return cls(
            timestamp=timestamp,
            kind=EventKind.TEXT_CHANGE,
            range=range,
            inserted_text=inserted_text,
            deleted_length=deleted_length,
        )

    @classmethod
    def cursor_move(cls, timestamp: int, position: Position) -> EditorEvent:
        return cls(timestamp=timestamp, kind=EventKind.CURSOR_MOVE, position=position)

    @classmethod
    def selection_change(cls, timestamp: int, selection: TextRange) -> EditorEvent:
        return cls(timestamp=timestamp, kind=EventKind.SELECTION_CHANGE, selection=selection)

    @classmethod
    def pause(cls, timestamp: int, duration_ms: int) -> EditorEvent:
        return cls(
            timestamp=timestamp,
            kind=EventKind.PAUSE,
            duration_ms=duration_ms,
            message=f"Pause of {duration_ms / 1000:g}s",
        )

    @classmethod
    def run_result(
        cls,
        timestamp: int,
        verdict: RunVerdict,
        message: str | None = None,
        score_meta: dict[str, Any] | None = None,
    ) -> EditorEvent:
        return cls(
            timestamp=timestamp,
            kind=EventKind.RUN_RESULT,
            verdict=verdict,
            message=message,
            score_meta=score_meta,
        )

    # ------------------------------------------------------------------
    # Introspection / serialization
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        """Whether the payload required by this event's kind is present."""
        match self.kind:
            case EventKind.TEXT_CHANGE:
                return self.range is not None
            case EventKind.CURSOR_MOVE:
                return self.position is not None
            case EventKind.SELECTION_CHANGE:
                return self.selection is not None
            case EventKind.PAUSE:
                return self.duration_ms is not None
            case EventKind.RUN_RESULT:
                return self.verdict is not None
        return False

    def restamped(self, timestamp: int) -> EditorEvent:
        """Return a copy of this event carrying a different timestamp."""
        return self.model_copy(update={"timestamp": timestamp})

    def to_record(self) -> dict[str, Any]:
        """Serialize to the wire record."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_event(raw: Mapping[str, Any] | EditorEvent) -> EditorEvent | None:
    """Parse one wire record, returning None when it is not an event at all."""
    if isinstance(raw, EditorEvent):
        return raw
    try:
        return EditorEvent.model_validate(raw)
    except ValidationError as e:
        logger.debug(
            f"Skipping malformed editor event: {e.error_count()} validation error(s)",
            extra={"record_keys": sorted(raw.keys()) if isinstance(raw, Mapping) else None},
        )
        return None


def parse_event_log(raws: Iterable[Mapping[str, Any] | EditorEvent]) -> list[EditorEvent]:
    """Parse a sequence of wire records, dropping the ones that are not events."""
    events: list[EditorEvent] = []
    skipped = 0
    for raw in raws:
        event = parse_event(raw)
        if event is None:
            skipped += 1
            continue
        events.append(event)
    if skipped:
        logger.warning(
            f"Dropped {skipped} malformed event record(s) while parsing event log",
            extra={"skipped": skipped, "kept": len(events)},
        )
    return events


# =============================================================================
# Sessions
# =============================================================================


class SessionKey(BaseModel):
    """Identity of one candidate's attempt at one question of one assessment."""

    model_config = ConfigDict(frozen=True)

    candidate_id: str = Field(..., min_length=1)
    assessment_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)

    @property
    def storage_key(self) -> str:
        return f"{self.candidate_id}:{self.assessment_id}:{self.question_id}"

    def __str__(self) -> str:
        return self.storage_key


class SessionRecord(BaseModel):
    """Stored metadata of a session's event log."""

    key: SessionKey
    language_id: int | None = None
    created_at: datetime
    updated_at: datetime
    event_count: int = 0


class RunRecord(BaseModel):
    """One entry of the scoring subsystem's submission history."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: int = Field(..., description="Milliseconds, same clock as the event log")
    verdict: RunVerdict
    message: str | None = None
    score_meta: dict[str, Any] | None = Field(default=None, alias="scoreMeta")


# =============================================================================
# Derived markers
# =============================================================================


@dataclass(frozen=True)
class PauseMarker:
    """An idle band between two text changes."""

    start: int
    end: int
    duration: int

    @property
    def midpoint(self) -> float:
        return self.start + self.duration / 2

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end, "duration": self.duration}


@dataclass(frozen=True)
class RunMarker:
    """A run verdict anchored onto the replay timeline."""

    timestamp: int
    verdict: MarkerVerdict
    message: str | None = None
    score_meta: dict[str, Any] | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "verdict": self.verdict.value,
            "message": self.message,
            "score_meta": self.score_meta,
        }


__all__ = [
    "EventKind",
    "RunVerdict",
    "MarkerVerdict",
    "Position",
    "TextRange",
    "EditorEvent",
    "parse_event",
    "parse_event_log",
    "SessionKey",
    "SessionRecord",
    "RunRecord",
    "PauseMarker",
    "RunMarker",
]
