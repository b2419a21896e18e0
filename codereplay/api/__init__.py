"""HTTP API for event ingestion and replay snapshots."""

from codereplay.api.main import app, create_app

__all__ = ["app", "create_app"]
