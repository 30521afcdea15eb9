from fastapi import APIRouter

from milestone_engine.api.routes import health, internal, milestones

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(milestones.router, prefix="/orders", tags=["milestones"])
api_router.include_router(internal.router, prefix="/internal", tags=["internal"])
