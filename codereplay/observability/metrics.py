"""
Prometheus Metrics for the Code Replay service.

Provides metrics collection for monitoring event recording, event log
ingestion, replay sessions and API latency.
"""

from __future__ import annotations

import re
import time
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    Info,
    generate_latest,
)

# =============================================================================
# Core Metrics Definitions
# =============================================================================

# Request latency
REQUEST_LATENCY = Histogram(
    "codereplay_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint", "method", "status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Recorder
EVENTS_RECORDED = Counter(
    "codereplay_events_recorded_total",
    "Editor events captured by recorders",
    ["kind"],
)

RECORDER_FLUSHES = Counter(
    "codereplay_recorder_flushes_total",
    "Recorder batch deliveries",
    ["outcome"],  # outcome: delivered/failed/dropped
)

# Storage
EVENTS_APPENDED = Counter(
    "codereplay_events_appended_total",
    "Editor events appended to session logs",
)

EVENT_LOG_CACHE = Counter(
    "codereplay_event_log_cache_total",
    "Event log cache lookups",
    ["result"],  # result: hit/miss/error
)

# Replay
REPLAY_SESSIONS_OPENED = Counter(
    "codereplay_replay_sessions_opened_total",
    "Replay sessions loaded",
    ["activity"],  # activity: recorded/empty
)

REPLAY_SEEKS = Counter(
    "codereplay_replay_seeks_total",
    "Seeks performed by playback engines",
)

# Application info
APP_INFO = Info(
    "codereplay_app",
    "Code Replay application information",
)


# =============================================================================
# Metrics Helpers
# =============================================================================


def track_event_recorded(kind: str) -> None:
    """Track one event captured by a recorder."""
    EVENTS_RECORDED.labels(kind=kind).inc()


def track_flush(outcome: str, count: int = 1) -> None:
    """Track a recorder delivery attempt."""
    RECORDER_FLUSHES.labels(outcome=outcome).inc(count)


def track_events_appended(count: int) -> None:
    """Track events durably appended to a session log."""
    EVENTS_APPENDED.inc(count)


def track_cache_lookup(result: str) -> None:
    """Track an event log cache lookup."""
    EVENT_LOG_CACHE.labels(result=result).inc()


def track_replay_opened(has_activity: bool) -> None:
    """Track a replay session being loaded."""
    REPLAY_SESSIONS_OPENED.labels(activity="recorded" if has_activity else "empty").inc()


def track_seek() -> None:
    """Track a seek on a playback engine."""
    REPLAY_SEEKS.inc()


# =============================================================================
# Metrics Endpoint
# =============================================================================


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics in the standard exposition format.

    Returns:
        Prometheus-formatted metrics as bytes
    """
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info labels."""
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })


# =============================================================================
# FastAPI Integration
# =============================================================================


class MetricsMiddleware:
    """
    FastAPI/Starlette middleware for automatic request metrics.

    Usage:
        app.add_middleware(MetricsMiddleware)
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "/")
        method = scope.get("method", "GET")

        # Skip metrics endpoint itself
        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = "500"

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = str(message.get("status", 500))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            latency = time.perf_counter() - start
            REQUEST_LATENCY.labels(
                endpoint=self._normalize_path(path),
                method=method,
                status=status_code,
            ).observe(latency)

    def _normalize_path(self, path: str) -> str:
        """Normalize path to reduce cardinality."""
        # Session routes carry three identifiers
        path = re.sub(
            r"(/editor-sessions)/[^/]+/[^/]+/[^/]+",
            r"\1/{candidate}/{assessment}/{question}",
            path,
        )
        return re.sub(r"/\d+(?=/|$)", "/{id}", path)


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Metrics
    "REQUEST_LATENCY",
    "EVENTS_RECORDED",
    "RECORDER_FLUSHES",
    "EVENTS_APPENDED",
    "EVENT_LOG_CACHE",
    "REPLAY_SESSIONS_OPENED",
    "REPLAY_SEEKS",
    "APP_INFO",
    # Helper functions
    "track_event_recorded",
    "track_flush",
    "track_events_appended",
    "track_cache_lookup",
    "track_replay_opened",
    "track_seek",
    # Endpoint
    "get_metrics",
    "get_metrics_content_type",
    "set_app_info",
    # Middleware
    "MetricsMiddleware",
]
