"""API request and response models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from codereplay.models.events import (
    EditorEvent,
    RunVerdict,
    SessionKey,
    SessionRecord,
)
from codereplay.replay.player import RenderableState

# =============================================================================
# Request Models
# =============================================================================


class SessionKeyModel(BaseModel):
    """Identifiers of a recorded session, as sent by clients."""

    model_config = ConfigDict(populate_by_name=True)

    candidate_id: str = Field(..., alias="candidateId", min_length=1, max_length=128)
    assessment_id: str = Field(..., alias="assessmentId", min_length=1, max_length=128)
    question_id: str = Field(..., alias="questionId", min_length=1, max_length=128)

    def to_key(self) -> SessionKey:
        return SessionKey(
            candidate_id=self.candidate_id,
            assessment_id=self.assessment_id,
            question_id=self.question_id,
        )


class AppendEventsRequest(SessionKeyModel):
    """A recorder batch delivered by the editor.

    ``events`` holds raw wire records; records that are not events are
    dropped while the rest of the batch is kept.
    """

    language_id: int | None = Field(default=None, alias="languageId")
    events: list[dict[str, Any]] = Field(..., max_length=10_000)


class RecordRunRequest(SessionKeyModel):
    """A run of the candidate's code, reported by the scoring subsystem.

    Exactly one of ``verdict``, ``case_statuses`` or ``judge_status_id``
    decides the verdict, in that order of precedence.
    """

    timestamp: int = Field(..., alias="t", ge=0, description="Milliseconds, recording clock")
    verdict: RunVerdict | None = None
    case_statuses: list[str] | None = Field(default=None, alias="caseStatuses")
    judge_status_id: int | None = Field(default=None, alias="judgeStatusId")
    message: str | None = Field(default=None, max_length=4_000)
    score_meta: dict[str, Any] | None = Field(default=None, alias="scoreMeta")

    @model_validator(mode="after")
    def _require_outcome(self) -> RecordRunRequest:
        if self.verdict is None and self.case_statuses is None and self.judge_status_id is None:
            raise ValueError("one of verdict, caseStatuses or judgeStatusId is required")
        return self


# =============================================================================
# Response Models
# =============================================================================


class AppendEventsResponse(BaseModel):
    accepted: int
    skipped: int


class SessionResponse(BaseModel):
    """Metadata of one recorded session."""

    candidate_id: str
    assessment_id: str
    question_id: str
    language_id: int | None = None
    event_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: SessionRecord) -> SessionResponse:
        return cls(
            candidate_id=record.key.candidate_id,
            assessment_id=record.key.assessment_id,
            question_id=record.key.question_id,
            language_id=record.language_id,
            event_count=record.event_count,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class EventLogResponse(BaseModel):
    """Full event log of one session, in wire format and capture order."""

    candidate_id: str
    assessment_id: str
    question_id: str
    language_id: int | None = None
    events: list[dict[str, Any]]
    total: int

    @classmethod
    def from_events(
        cls,
        record: SessionRecord,
        events: list[EditorEvent],
    ) -> EventLogResponse:
        return cls(
            candidate_id=record.key.candidate_id,
            assessment_id=record.key.assessment_id,
            question_id=record.key.question_id,
            language_id=record.language_id,
            events=[event.to_record() for event in events],
            total=len(events),
        )


class ReplaySnapshotResponse(BaseModel):
    """Rendered state of a session at one timeline offset."""

    document_text: str
    cursor: dict[str, int] | None = None
    selection: dict[str, int] | None = None
    progress_ms: float
    duration_ms: int
    pause_markers: list[dict[str, int]]
    run_markers: list[dict[str, Any]]
    playback_state: str
    has_activity: bool

    @classmethod
    def from_state(cls, state: RenderableState) -> ReplaySnapshotResponse:
        payload = state.to_dict()
        payload.pop("speed")
        return cls(**payload, has_activity=state.has_activity)


class RunRecordedResponse(BaseModel):
    verdict: RunVerdict
    timestamp: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    version: str
    timestamp: datetime
    checks: dict[str, dict[str, Any]]


class ErrorResponse(BaseModel):
    """Standard API error response."""

    error: str
    detail: Any | None = None
    code: str
    request_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
    # Requests
    "SessionKeyModel",
    "AppendEventsRequest",
    "RecordRunRequest",
    # Responses
    "AppendEventsResponse",
    "SessionResponse",
    "SessionListResponse",
    "EventLogResponse",
    "ReplaySnapshotResponse",
    "RunRecordedResponse",
    "HealthResponse",
    "ErrorResponse",
]
