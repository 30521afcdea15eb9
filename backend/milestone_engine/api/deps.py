"""FastAPI dependencies: services wired to the shared DB/Redis pools, actor identity, cron auth."""

import secrets

from fastapi import Depends, Header, HTTPException, Request

from milestone_engine.core.config import Settings, get_settings
from milestone_engine.db.base import get_session_factory
from milestone_engine.db.redis import get_redis
from milestone_engine.integrations.blob_store import BlobStore
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.scheduler import AutoApprovalScheduler
from milestone_engine.services.escrow_release import EscrowReleaseProcessor
from milestone_engine.services.milestone_service import MilestoneService
from milestone_engine.services.notifications import NotificationFanout


def get_release_queue() -> ReleaseQueue:
    return ReleaseQueue(get_redis())


def get_fanout(request: Request) -> NotificationFanout:
    """Process-wide fanout, so shutdown can drain the notifications it still has in flight."""
    return request.app.state.fanout


def get_milestone_service(
    release_queue: ReleaseQueue = Depends(get_release_queue),
    fanout: NotificationFanout = Depends(get_fanout),
    settings: Settings = Depends(get_settings),
) -> MilestoneService:
    return MilestoneService(get_session_factory(), release_queue, fanout, settings)


def get_release_processor(
    request: Request,
    fanout: NotificationFanout = Depends(get_fanout),
    settings: Settings = Depends(get_settings),
) -> EscrowReleaseProcessor:
    return EscrowReleaseProcessor(get_session_factory(), request.app.state.settlement, fanout, settings)


def get_scheduler(request: Request) -> AutoApprovalScheduler:
    return request.app.state.scheduler


def get_blob_store(request: Request) -> BlobStore:
    blob_store = getattr(request.app.state, "blob_store", None)
    if blob_store is None:
        raise HTTPException(status_code=503, detail="Photo storage is not configured")
    return blob_store


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """Caller identity, set by the API gateway after authentication."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return x_actor_id.strip()


def require_cron_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Bearer check for the internal cron endpoints."""
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Cron secret is not configured")
    expected = f"Bearer {settings.cron_secret}"
    if authorization is None or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
