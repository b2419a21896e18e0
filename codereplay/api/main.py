"""FastAPI Application Setup for the Code Replay API.

Provides the FastAPI application factory with middleware, exception handlers
and lifespan management.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codereplay import __version__
from codereplay.api.dependencies import reset_event_store
from codereplay.api.models import ErrorResponse
from codereplay.api.routes import metrics_router, router
from codereplay.config import Settings, get_settings, validate_required_settings
from codereplay.db.connection import close_pool as close_db_pool
from codereplay.db.connection import get_async_pool, init_db
from codereplay.observability.metrics import MetricsMiddleware, set_app_info
from codereplay.services.redis_client import RedisError, close_redis_client
from codereplay.storage.event_store import StorageError

logger = logging.getLogger(__name__)


# =============================================================================
# Application Metadata
# =============================================================================

API_TITLE = "Code Replay API"
API_DESCRIPTION = """
## Code Replay

Records candidates' editor activity during coding assessments and serves
replays of it to reviewers.

- **Event ingestion**: ordered batches from the in-browser recorder
- **Run history**: verdicts of the candidate's code runs
- **Replay snapshots**: the document at any offset, with pause bands and
  run markers
"""

TAGS_METADATA = [
    {
        "name": "replay",
        "description": "Event recording and session replay",
    },
    {
        "name": "system",
        "description": "Health checks and metrics",
    },
]


# =============================================================================
# Lifespan Management
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool on startup; close pools on shutdown."""
    settings = get_settings()
    logger.info(f"Starting {API_TITLE} v{__version__}")
    logger.info(f"Environment: {settings.APP_ENV}")

    for problem in validate_required_settings():
        logger.warning(f"Configuration problem: {problem}")

    try:
        await get_async_pool()
        logger.info("Database pool initialized")

        if settings.is_development:
            try:
                await init_db()
            except FileNotFoundError:
                logger.warning("Schema file not found, skipping initialization")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    set_app_info(__version__, settings.APP_ENV)
    logger.info(f"{API_TITLE} started successfully")

    yield

    logger.info("Shutting down...")

    reset_event_store()
    try:
        await close_redis_client()
    except Exception as e:
        logger.warning(f"Redis shutdown error: {e}")

    await close_db_pool()
    logger.info(f"{API_TITLE} shutdown complete")


# =============================================================================
# Exception Handlers
# =============================================================================


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    code: str,
    detail: object | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        detail=detail,
        code=code,
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent error format."""
    return _error_response(
        request,
        exc.status_code,
        error=exc.detail if isinstance(exc.detail, str) else "Error",
        code=f"HTTP_{exc.status_code}",
        detail=None if isinstance(exc.detail, str) else exc.detail,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request validation errors."""
    errors = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        error="Validation error",
        code="VALIDATION_ERROR",
        detail="; ".join(errors),
    )


async def storage_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map storage and cache failures to 503."""
    logger.error(
        f"Storage unavailable: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="Storage unavailable",
        code="STORAGE_UNAVAILABLE",
        detail=None if get_settings().is_production else str(exc),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions; details are hidden in production."""
    request_id = getattr(request.state, "request_id", None)
    logger.exception(f"Unhandled exception: {exc}", extra={"request_id": request_id})

    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="Internal server error",
        code="INTERNAL_ERROR",
        detail="An internal error occurred" if get_settings().is_production else str(exc),
    )


# =============================================================================
# Middleware
# =============================================================================


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    """Attach a request ID, reusing the caller's X-Request-ID when sent."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


async def timing_middleware(request: Request, call_next: Callable) -> Response:
    """Add X-Response-Time and log slow requests."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    if duration_ms > 1000:
        logger.warning(
            f"Slow request: {request.method} {request.url.path} took {duration_ms:.2f}ms"
        )
    return response


# =============================================================================
# Application Factory
# =============================================================================


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override. Uses get_settings() if not provided.
    """
    if settings is None:
        settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
        debug=settings.DEBUG,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Response-Time"],
    )
    app.add_middleware(MetricsMiddleware)

    # Last added is outermost
    app.middleware("http")(timing_middleware)
    app.middleware("http")(request_id_middleware)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorageError, storage_exception_handler)
    app.add_exception_handler(RedisError, storage_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(router, prefix=settings.API_PREFIX)
    app.include_router(metrics_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return JSONResponse(
            content={
                "name": API_TITLE,
                "version": __version__,
                "health": f"{settings.API_PREFIX}/health",
            }
        )

    logger.info(f"Created {API_TITLE} application")
    return app


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "codereplay.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.DEBUG,
        timeout_keep_alive=30,
    )


if __name__ == "__main__":
    main()
