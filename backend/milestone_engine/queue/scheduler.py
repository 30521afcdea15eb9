"""Auto-approval scheduler.

Each tick:
  1. auto-approves PENDING milestones whose review deadline has passed
  2. sends deadline warnings as each threshold (default 24h, 6h) is crossed
  3. re-enqueues APPROVED milestones that never got an escrow row

The tick is safe to run from several processes at once: every write is a
conditional update, and losing one is a skip, not an error.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from milestone_engine.core.config import Settings, get_settings
from milestone_engine.db.models.milestone import Milestone
from milestone_engine.db.models.order import Order
from milestone_engine.domain.approval import SYSTEM_ACTOR_ID, due_warning_thresholds
from milestone_engine.domain.escrow import ReleaseReason
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.worker import drain_release_queue
from milestone_engine.services.escrow_release import EscrowReleaseProcessor
from milestone_engine.services.milestone_service import MilestoneService
from milestone_engine.services.milestone_store import MilestoneStore
from milestone_engine.services.notifications import MilestoneEvent, MilestoneEventType, NotificationFanout

logger = structlog.get_logger(__name__)


@dataclass
class AutoApprovalResult:
    """Summary of one scheduler tick."""

    processed: int = 0
    auto_approved: int = 0
    skipped: int = 0
    failed: int = 0
    warnings_sent: int = 0
    releases_enqueued: int = 0
    approved_milestone_ids: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


class AutoApprovalScheduler:
    """Periodic sweep over pending milestones."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        milestone_service: MilestoneService,
        fanout: NotificationFanout,
        release_queue: ReleaseQueue,
        settings: Settings | None = None,
        processor: EscrowReleaseProcessor | None = None,
    ):
        self.session_factory = session_factory
        self.milestone_service = milestone_service
        self.fanout = fanout
        self.release_queue = release_queue
        self.settings = settings or get_settings()
        self.processor = processor
        self.last_tick_at: datetime | None = None
        self.last_result: AutoApprovalResult | None = None
        self._log = logger.bind(component="auto_approval_scheduler")

    async def tick(self, now: datetime | None = None) -> AutoApprovalResult:
        """Run one sweep. Per-milestone failures are recorded, never raised."""
        now = now or datetime.now(UTC)
        result = AutoApprovalResult()

        await self._sweep_overdue(now, result)
        await self._send_warnings(now, result)
        await self._requeue_unreleased(now, result)

        self.last_tick_at = now
        self.last_result = result
        self._log.info(
            "auto_approval_tick_complete",
            processed=result.processed,
            auto_approved=result.auto_approved,
            skipped=result.skipped,
            failed=result.failed,
            warnings_sent=result.warnings_sent,
            releases_enqueued=result.releases_enqueued,
        )
        return result

    async def health(self, now: datetime | None = None) -> dict:
        """Backlog snapshot for the internal health endpoint.

        Unhealthy when something has been overdue for longer than two sweep
        intervals, which means ticks are not running or not keeping up.
        """
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            pending, overdue, oldest_overdue = await MilestoneStore(session).count_pending(now)

        try:
            queued_releases = await self.release_queue.get_length()
        except Exception as exc:
            self._log.warning("release_queue_length_failed", error=str(exc), error_type=type(exc).__name__)
            queued_releases = None

        max_lag = timedelta(seconds=2 * self.settings.sweep_interval_seconds)
        return {
            "healthy": oldest_overdue is None or now - oldest_overdue <= max_lag,
            "pending": pending,
            "overdue": overdue,
            "oldest_overdue_deadline": oldest_overdue.isoformat() if oldest_overdue else None,
            "queued_releases": queued_releases,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick every ``sweep_interval_seconds`` until ``stop_event`` is set."""
        interval = self.settings.sweep_interval_seconds
        self._log.info("auto_approval_scheduler_started", interval_seconds=interval)

        while not stop_event.is_set():
            try:
                await self.tick()
                if self.processor is not None:
                    await drain_release_queue(self.processor, self.release_queue)
            except Exception as exc:
                self._log.error(
                    "auto_approval_tick_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass

        self._log.info("auto_approval_scheduler_stopped")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _sweep_overdue(self, now: datetime, result: AutoApprovalResult) -> None:
        async with self.session_factory() as session:
            overdue = await MilestoneStore(session).find_overdue(now, self.settings.sweep_batch_size)

        for milestone_id in overdue:
            result.processed += 1
            try:
                milestone = await self.milestone_service.auto_approve(milestone_id, now=now)
            except Exception as exc:
                result.failed += 1
                result.errors.append({"milestone_id": str(milestone_id), "error": str(exc)})
                self._log.error(
                    "auto_approve_failed",
                    milestone_id=str(milestone_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            if milestone is None:
                result.skipped += 1
            else:
                result.auto_approved += 1
                result.approved_milestone_ids.append(str(milestone_id))

    async def _send_warnings(self, now: datetime, result: AutoApprovalResult) -> None:
        thresholds = list(self.settings.warning_thresholds_hours)
        if not thresholds:
            return
        horizon = timedelta(hours=max(thresholds))
        batch_size = max(1, self.settings.sweep_batch_size)

        # Already-warned rows stay in the window until their deadline, so the
        # whole window is paged through; a single batch could starve later rows.
        after = None
        while True:
            async with self.session_factory() as session:
                candidates = await MilestoneStore(session).find_warning_candidates(now, horizon, batch_size, after)
            for milestone, order in candidates:
                await self._warn_if_due(milestone, order, thresholds, now, result)
            if len(candidates) < batch_size:
                break
            last = candidates[-1][0]
            after = (last.auto_approval_deadline, last.id)

    async def _warn_if_due(
        self,
        milestone: Milestone,
        order: Order,
        thresholds: list[int],
        now: datetime,
        result: AutoApprovalResult,
    ) -> None:
        plan = due_warning_thresholds(
            milestone.auto_approval_deadline,
            now,
            thresholds,
            list(milestone.warnings_sent or []),
        )
        if not plan.is_due:
            return

        try:
            async with self.session_factory() as session:
                recorded = await MilestoneStore(session).record_warnings(
                    milestone.id,
                    milestone.version,
                    list(milestone.warnings_sent or []) + plan.record_thresholds,
                    now,
                )
                await session.commit()
        except Exception as exc:
            self._log.warning(
                "deadline_warning_record_failed",
                milestone_id=str(milestone.id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return

        if not recorded:
            self._log.info("deadline_warning_already_recorded", milestone_id=str(milestone.id))
            return

        await self._notify_warning(milestone, order, plan.notify_threshold, now)
        result.warnings_sent += 1

    async def _notify_warning(self, milestone: Milestone, order: Order, threshold: int, now: datetime) -> None:
        remaining = milestone.auto_approval_deadline - now
        hours_remaining = max(1, int(remaining.total_seconds() // 3600))
        await self.fanout.dispatch(
            MilestoneEvent(
                type=MilestoneEventType.DEADLINE_WARNING,
                order_id=str(order.id),
                milestone_id=str(milestone.id),
                stage=milestone.stage,
                customer_id=order.customer_id,
                tailor_id=order.tailor_id,
                actor_id=None,
                payload={
                    "hours_remaining": hours_remaining,
                    "threshold_hours": threshold,
                    "deadline": milestone.auto_approval_deadline.isoformat(),
                },
                occurred_at=now,
            )
        )

    async def _requeue_unreleased(self, now: datetime, result: AutoApprovalResult) -> None:
        async with self.session_factory() as session:
            orphans = await MilestoneStore(session).find_unreleased_approvals(self.settings.sweep_batch_size)

        for milestone_id, reviewed_by in orphans:
            reason = ReleaseReason.AUTO_APPROVAL if reviewed_by == SYSTEM_ACTOR_ID else ReleaseReason.MANUAL_APPROVAL
            try:
                added = await self.release_queue.enqueue(milestone_id, reason, now=now)
            except Exception as exc:
                self._log.warning(
                    "release_requeue_failed",
                    milestone_id=str(milestone_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if added:
                result.releases_enqueued += 1
                self._log.info("unreleased_approval_requeued", milestone_id=str(milestone_id))
