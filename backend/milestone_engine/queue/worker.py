"""Release worker: pulls jobs from the release queue and hands them to the processor."""

import uuid

import structlog

from milestone_engine.core.exceptions import MilestoneEngineError, NotApproved, SettlementRejected
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.services.escrow_release import EscrowReleaseProcessor, ReleaseOutcome

logger = structlog.get_logger(__name__)


async def process_next_release(processor: EscrowReleaseProcessor, queue: ReleaseQueue) -> bool:
    """Pull the oldest release job and process it.

    Called by FastAPI BackgroundTasks after an approval and by the scheduler
    loop. A failed job is logged and dropped: the ledger row (FAILED or
    PROCESSING) is what the reconciler works from, and a milestone with no
    row at all is re-enqueued by the scheduler's unreleased-approval pass.

    Returns:
        True if a job was taken from the queue, False if the queue was empty
    """
    job = await queue.dequeue()
    if job is None:
        return False

    log = logger.bind(milestone_id=str(job.milestone_id), release_reason=job.reason.value)
    try:
        outcome: ReleaseOutcome = await processor.release(job.milestone_id, job.reason)
    except SettlementRejected as exc:
        log.error("release_job_settlement_rejected", reason=exc.reason, transaction_id=exc.transaction_id)
    except NotApproved as exc:
        log.warning("release_job_not_approved", error=str(exc))
    except MilestoneEngineError as exc:
        log.error("release_job_failed", error=str(exc), error_type=type(exc).__name__)
    except Exception as exc:
        debug_id = str(uuid.uuid4())
        log.error(
            "release_job_crashed",
            debug_id=debug_id,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
    else:
        log.info("release_job_processed", status=outcome.status.value)
    return True


async def drain_release_queue(
    processor: EscrowReleaseProcessor,
    queue: ReleaseQueue,
    max_jobs: int = 100,
) -> int:
    """Process queued releases until the queue is empty or ``max_jobs`` is reached.

    Returns:
        Number of jobs taken from the queue
    """
    processed = 0
    while processed < max_jobs:
        if not await process_next_release(processor, queue):
            break
        processed += 1
    if processed:
        logger.info("release_queue_drained", processed=processed)
    return processed
