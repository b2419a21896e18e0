"""API routes for event ingestion and session replay."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Path, Query, Response, status

from codereplay import __version__
from codereplay.api.dependencies import EventStoreDep, ReplayServiceDep, SettingsDep
from codereplay.api.models import (
    AppendEventsRequest,
    AppendEventsResponse,
    ErrorResponse,
    EventLogResponse,
    HealthResponse,
    RecordRunRequest,
    ReplaySnapshotResponse,
    RunRecordedResponse,
    SessionListResponse,
    SessionResponse,
)
from codereplay.db.connection import check_connection_health, get_pool_stats
from codereplay.models.events import RunRecord, SessionKey, parse_event_log
from codereplay.observability.metrics import get_metrics, get_metrics_content_type
from codereplay.replay.verdicts import verdict_from_case_statuses, verdict_from_judge_status
from codereplay.services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

IdParam = Annotated[str, Path(min_length=1, max_length=128)]

STORAGE_UNAVAILABLE = {503: {"model": ErrorResponse, "description": "Storage unavailable"}}


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(tags=["replay"])
metrics_router = APIRouter(tags=["system"])


# =============================================================================
# Health Check Endpoint
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check API health and dependencies status",
    tags=["system"],
)
async def health_check() -> HealthResponse:
    """Report database and Redis reachability."""
    checks: dict[str, dict[str, Any]] = {}

    checks["database"] = {
        "status": "healthy" if await check_connection_health() else "unhealthy",
        "pool": get_pool_stats(),
    }

    try:
        redis_client = await get_redis_client()
        checks["redis"] = await redis_client.health_check()
    except Exception as e:
        checks["redis"] = {"status": "unhealthy", "error": str(e)}

    all_healthy = all(check.get("status") == "healthy" for check in checks.values())

    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus exposition endpoint."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Event Ingestion
# =============================================================================


@router.post(
    "/editor-events",
    response_model=AppendEventsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Append editor events",
    description="Append a recorder batch to a session's event log",
    responses=STORAGE_UNAVAILABLE,
)
async def append_editor_events(
    request: AppendEventsRequest,
    store: EventStoreDep,
) -> AppendEventsResponse:
    """Append one batch, in order, creating the session on first delivery."""
    key = request.to_key()
    events = parse_event_log(request.events)

    await store.append_events(key, events, request.language_id)

    logger.info(
        f"Accepted {len(events)} editor event(s) for session {key}",
        extra={
            "session_key": key.storage_key,
            "accepted": len(events),
            "skipped": len(request.events) - len(events),
        },
    )
    return AppendEventsResponse(
        accepted=len(events),
        skipped=len(request.events) - len(events),
    )


@router.post(
    "/run-results",
    response_model=RunRecordedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a run",
    description="Record a run of the candidate's code in the session's run history",
    responses=STORAGE_UNAVAILABLE,
)
async def record_run_result(
    request: RecordRunRequest,
    store: EventStoreDep,
) -> RunRecordedResponse:
    if request.verdict is not None:
        verdict = request.verdict
    elif request.case_statuses is not None:
        verdict = verdict_from_case_statuses(request.case_statuses)
    else:
        verdict = verdict_from_judge_status(request.judge_status_id)

    run = RunRecord(
        timestamp=request.timestamp,
        verdict=verdict,
        message=request.message,
        score_meta=request.score_meta,
    )
    await store.record_run(request.to_key(), run)

    return RunRecordedResponse(verdict=verdict, timestamp=run.timestamp)


# =============================================================================
# Sessions
# =============================================================================


@router.get(
    "/editor-sessions",
    response_model=SessionListResponse,
    summary="List sessions",
    description="List recorded sessions, most recently updated first",
    responses=STORAGE_UNAVAILABLE,
)
async def list_editor_sessions(
    store: EventStoreDep,
    settings: SettingsDep,
    candidate_id: Annotated[str | None, Query(alias="candidateId")] = None,
    assessment_id: Annotated[str | None, Query(alias="assessmentId")] = None,
    question_id: Annotated[str | None, Query(alias="questionId")] = None,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> SessionListResponse:
    records = await store.list_sessions(
        candidate_id=candidate_id,
        assessment_id=assessment_id,
        question_id=question_id,
        limit=limit or settings.SESSION_LIST_LIMIT,
    )
    sessions = [SessionResponse.from_record(record) for record in records]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get(
    "/editor-sessions/{candidate_id}/{assessment_id}/{question_id}",
    response_model=SessionResponse,
    summary="Get session",
    responses={
        404: {"model": ErrorResponse, "description": "No events recorded for this session"},
        **STORAGE_UNAVAILABLE,
    },
)
async def get_editor_session(
    candidate_id: IdParam,
    assessment_id: IdParam,
    question_id: IdParam,
    store: EventStoreDep,
) -> SessionResponse:
    key = SessionKey(candidate_id=candidate_id, assessment_id=assessment_id, question_id=question_id)
    record = await store.get_session(key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No events recorded for session {key}",
        )
    return SessionResponse.from_record(record)


@router.get(
    "/editor-sessions/{candidate_id}/{assessment_id}/{question_id}/events",
    response_model=EventLogResponse,
    summary="Get session event log",
    description="Return every recorded event of the session, oldest first, for client-side playback.",
    responses={
        404: {"model": ErrorResponse, "description": "No events recorded for this session"},
        **STORAGE_UNAVAILABLE,
    },
)
async def get_event_log(
    candidate_id: IdParam,
    assessment_id: IdParam,
    question_id: IdParam,
    store: EventStoreDep,
) -> EventLogResponse:
    key = SessionKey(candidate_id=candidate_id, assessment_id=assessment_id, question_id=question_id)
    record = await store.get_session(key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No events recorded for session {key}",
        )
    events = await store.load_event_log(key)
    return EventLogResponse.from_events(record, events)


@router.get(
    "/editor-sessions/{candidate_id}/{assessment_id}/{question_id}/replay",
    response_model=ReplaySnapshotResponse,
    summary="Render a replay snapshot",
    description=(
        "Reconstruct the document at a timeline offset, with pause and run "
        "markers. Sessions without events report the no_activity state."
    ),
    responses=STORAGE_UNAVAILABLE,
)
async def get_replay_snapshot(
    candidate_id: IdParam,
    assessment_id: IdParam,
    question_id: IdParam,
    replay: ReplayServiceDep,
    at_ms: Annotated[float | None, Query(description="Offset in ms; defaults to the end")] = None,
) -> ReplaySnapshotResponse:
    key = SessionKey(candidate_id=candidate_id, assessment_id=assessment_id, question_id=question_id)
    state = await replay.snapshot_at(key, at_ms)
    return ReplaySnapshotResponse.from_state(state)


__all__ = ["router", "metrics_router"]
