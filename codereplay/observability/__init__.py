"""
Code Replay Observability Package.

Prometheus metrics for recorders, storage and replay sessions, plus the
request-latency middleware used by the API.
"""

from codereplay.observability.metrics import (
    MetricsMiddleware,
    get_metrics,
    get_metrics_content_type,
    set_app_info,
    track_cache_lookup,
    track_event_recorded,
    track_events_appended,
    track_flush,
    track_replay_opened,
    track_seek,
)

__all__ = [
    "MetricsMiddleware",
    "get_metrics",
    "get_metrics_content_type",
    "set_app_info",
    "track_cache_lookup",
    "track_event_recorded",
    "track_events_appended",
    "track_flush",
    "track_replay_opened",
    "track_seek",
]
