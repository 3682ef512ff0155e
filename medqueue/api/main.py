"""
medqueue/api/main.py — FastAPI application entry point.

Configures logging and middleware, mounts the queue router, and maps queue
errors onto HTTP status codes.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from medqueue.api.rate_limit import limiter
from medqueue.api.routers import queues
from medqueue.config import get_settings
from medqueue.db.session import engine as db_engine
from medqueue.logging_config import configure_logging
from medqueue.queue.errors import QueueError, StoreIOError

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: runs at startup and shutdown."""
    logger.info("event", message="Starting Patient Queue API", env=settings.environment)
    yield
    await db_engine.dispose()
    logger.info("event", message="Shutting down API")


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if isinstance(exc, StoreIOError):
        # Details stay in the logs
        logger.error("queue_storage_failure", path=request.url.path, error=exc.message)
        message = "Queue storage is temporarily unavailable."
    else:
        message = exc.message
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind.value, "message": message},
    )


def create_app() -> FastAPI:
    configure_logging(settings.log_level, json_logs=settings.is_production)

    app = FastAPI(
        title="Patient Queue API",
        description=(
            "Per-organization patient queue: admission, call-next, consultation "
            "state transitions, renumbering and queue statistics."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware ────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(o) for o in settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Queue errors → HTTP
    app.add_exception_handler(QueueError, queue_error_handler)

    # ── Routers ───────────────────────────────────────────────────────────────
    API_PREFIX = "/api/v1"
    app.include_router(queues.router, prefix=f"{API_PREFIX}/queues", tags=["Queues"])

    # ── Health Check ──────────────────────────────────────────────────────────
    @app.get("/health", tags=["System"])
    async def health_check() -> dict:
        return {"status": "healthy", "version": "1.0.0", "environment": settings.environment}

    return app


app = create_app()
