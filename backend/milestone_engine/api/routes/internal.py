"""Internal routes for the cron trigger and operators. Bearer-protected with ``cron_secret``."""

from fastapi import APIRouter, BackgroundTasks, Depends

from milestone_engine.api.deps import (
    get_release_processor,
    get_release_queue,
    get_scheduler,
    require_cron_secret,
)
from milestone_engine.api.schemas.milestones import (
    AutoApprovalResultResponse,
    EscrowTransactionResponse,
    SchedulerHealthResponse,
)
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.scheduler import AutoApprovalScheduler
from milestone_engine.queue.worker import drain_release_queue
from milestone_engine.services.escrow_release import EscrowReleaseProcessor

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.post("/auto-approve", response_model=AutoApprovalResultResponse)
async def trigger_auto_approval(
    background_tasks: BackgroundTasks,
    scheduler: AutoApprovalScheduler = Depends(get_scheduler),
    processor: EscrowReleaseProcessor = Depends(get_release_processor),
    release_queue: ReleaseQueue = Depends(get_release_queue),
):
    """Run one sweep now (external cron). Releases drain after the response."""
    result = await scheduler.tick()
    background_tasks.add_task(drain_release_queue, processor, release_queue)
    return AutoApprovalResultResponse.model_validate(result)


@router.get("/auto-approval-health", response_model=SchedulerHealthResponse)
async def auto_approval_health(scheduler: AutoApprovalScheduler = Depends(get_scheduler)):
    return await scheduler.health()


@router.get("/escrow/unsettled", response_model=list[EscrowTransactionResponse])
async def list_unsettled_releases(processor: EscrowReleaseProcessor = Depends(get_release_processor)):
    """FAILED and stale PROCESSING releases awaiting reconciliation."""
    return await processor.list_unsettled()
