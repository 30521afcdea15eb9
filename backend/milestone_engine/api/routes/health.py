"""Liveness and readiness probes."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from milestone_engine.core.logging import SERVICE_NAME
from milestone_engine.db.base import get_session_factory
from milestone_engine.db.redis import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness. 503 once SIGTERM is received so the load balancer drains us."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down", "service": SERVICE_NAME})
    return {"status": "healthy", "service": SERVICE_NAME}


async def _check_database() -> None:
    async with get_session_factory()() as session:
        await session.execute(text("SELECT 1"))


async def _check_redis() -> None:
    await get_redis().ping()


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness: database and Redis reachable. Reports the scheduler's last tick when one is running."""
    checks: dict[str, bool] = {}
    for name, probe in (("database", _check_database), ("redis", _check_redis)):
        try:
            await probe()
            checks[name] = True
        except Exception as exc:
            checks[name] = False
            logger.error("readiness_check_failed", dependency=name, error=str(exc), error_type=type(exc).__name__)

    scheduler = getattr(request.app.state, "scheduler", None)
    last_tick_at = scheduler.last_tick_at.isoformat() if scheduler and scheduler.last_tick_at else None

    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "degraded", "checks": checks, "scheduler_last_tick_at": last_tick_at},
    )
