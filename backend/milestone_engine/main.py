"""Sew4Mi milestone engine: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from milestone_engine.core.logging import configure_structlog
from milestone_engine.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from milestone_engine.api.routes import api_router
from milestone_engine.core.config import get_settings
from milestone_engine.core.exceptions import (
    InvalidAmount,
    InvalidTransition,
    MilestoneEngineError,
    MilestoneNotFound,
    NotApproved,
    OrderNotActive,
    OrderNotFound,
    SettlementRejected,
    SettlementTransient,
    ValidationError,
)
from milestone_engine.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from milestone_engine.domain.stages import validate_stage_weights
from milestone_engine.integrations.blob_store import S3BlobStore
from milestone_engine.integrations.settlement import get_settlement_backend
from milestone_engine.middleware.correlation import get_correlation_id, setup_correlation_middleware
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.scheduler import AutoApprovalScheduler
from milestone_engine.services.escrow_release import EscrowReleaseProcessor
from milestone_engine.services.milestone_service import MilestoneService
from milestone_engine.services.notifications import NotificationFanout

logger = structlog.get_logger(__name__)

# Lookup walks the exception's MRO, so subclasses share their parent's code.
ERROR_STATUS_CODES: dict[type[MilestoneEngineError], int] = {
    ValidationError: 422,
    MilestoneNotFound: 404,
    OrderNotFound: 404,
    OrderNotActive: 409,
    InvalidTransition: 409,
    NotApproved: 409,
    InvalidAmount: 500,
    SettlementRejected: 502,
    SettlementTransient: 503,
}


def status_code_for(exc: MilestoneEngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_stage_weights()
    logger.info("stage_weights_validated")

    await init_db(create_tables=settings.database_create_tables)
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    redis = get_redis()
    session_factory = get_session_factory()
    fanout = NotificationFanout(redis)
    release_queue = ReleaseQueue(redis)
    app.state.fanout = fanout

    app.state.settlement = get_settlement_backend(settings)
    app.state.blob_store = (
        S3BlobStore(
            bucket=settings.blob_bucket,
            region=settings.blob_region,
            public_base_url=settings.blob_public_base_url,
        )
        if settings.blob_bucket
        else None
    )

    processor = EscrowReleaseProcessor(session_factory, app.state.settlement, fanout, settings)
    app.state.scheduler = AutoApprovalScheduler(
        session_factory,
        MilestoneService(session_factory, release_queue, fanout, settings),
        fanout,
        release_queue,
        settings,
        processor=processor,
    )

    stop_event = asyncio.Event()
    scheduler_task: asyncio.Task | None = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(app.state.scheduler.run(stop_event))
        logger.info("scheduler_started", interval_seconds=settings.sweep_interval_seconds)

    yield

    logger.info("shutdown_begin")
    stop_event.set()
    if scheduler_task is not None:
        await scheduler_task
    await fanout.drain()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def engine_exception_handler(request: Request, exc: MilestoneEngineError) -> JSONResponse:
    """Map domain errors to HTTP responses with debug_id tracking."""
    debug_id = str(uuid.uuid4())
    status_code = status_code_for(exc)

    log = logger.error if status_code >= 500 else logger.info
    log(
        "milestone_engine_error",
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "debug_id": debug_id},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Order milestone approval and escrow release for Sew4Mi",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_correlation_middleware(app)

    app.exception_handler(MilestoneEngineError)(engine_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "milestone_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
