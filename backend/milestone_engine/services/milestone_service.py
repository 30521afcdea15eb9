"""MilestoneService: the operations exposed to the HTTP layer and the scheduler.

Orchestrates the pure state machine (domain.approval), the conditional writes
in MilestoneStore, the release queue and notification fan-out. Each operation
runs in its own transaction; side effects (release enqueue, notifications)
happen only after the commit. Notifications are dispatched in the background
so a slow Redis never holds up the caller.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from milestone_engine.core.config import Settings, get_settings
from milestone_engine.core.exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    MilestoneNotFound,
    NotPending,
    OrderNotActive,
    OrderNotFound,
    ValidationError,
)
from milestone_engine.db.models.milestone import Milestone
from milestone_engine.db.models.order import Order
from milestone_engine.domain.approval import (
    ApprovalStatus,
    ResolutionPlan,
    ResolveEvent,
    plan_rejection,
    plan_resolution,
    plan_submission,
)
from milestone_engine.domain.escrow import ReleaseReason
from milestone_engine.domain.stages import (
    MilestoneStage,
    calculate_progress,
    next_stage,
    parse_stage,
    requires_photo,
)
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.services.milestone_store import MilestoneStore
from milestone_engine.services.notifications import MilestoneEvent, MilestoneEventType, NotificationFanout

logger = structlog.get_logger(__name__)


@dataclass
class OrderProgress:
    """All milestones of an order with derived progress."""

    order_id: uuid.UUID
    milestones: list[Milestone]
    progress_percent: int
    next_stage: MilestoneStage | None


def _as_stage(stage: MilestoneStage | str) -> MilestoneStage:
    return stage if isinstance(stage, MilestoneStage) else parse_stage(stage)


def _as_uuid(value: uuid.UUID | str, what: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}") from None


def _event(
    event_type: MilestoneEventType,
    milestone: Milestone,
    order: Order,
    actor_id: str | None,
    occurred_at: datetime,
    **payload,
) -> MilestoneEvent:
    return MilestoneEvent(
        type=event_type,
        order_id=str(order.id),
        milestone_id=str(milestone.id),
        stage=milestone.stage,
        customer_id=order.customer_id,
        tailor_id=order.tailor_id,
        actor_id=actor_id,
        payload=payload,
        occurred_at=occurred_at,
    )


class MilestoneService:
    """Submit, approve, reject, timeout and inspect order milestones."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        release_queue: ReleaseQueue,
        fanout: NotificationFanout,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.release_queue = release_queue
        self.fanout = fanout
        self.settings = settings or get_settings()

    @property
    def approval_window(self) -> timedelta:
        return timedelta(hours=self.settings.auto_approval_window_hours)

    async def submit_milestone(
        self,
        order_id: uuid.UUID | str,
        stage: MilestoneStage | str,
        photo_url: str | None,
        notes: str,
        actor_id: str,
        now: datetime | None = None,
    ) -> Milestone:
        """Record a tailor's proof of work and open (or reopen) the review window.

        Raises:
            ValidationError: unknown stage, or missing photo for a stage that needs one
            OrderNotFound / OrderNotActive: order missing or not in production
            InvalidTransition: milestone already PENDING or APPROVED
        """
        now = now or datetime.now(UTC)
        order_uuid = _as_uuid(order_id, "order id")
        stage = _as_stage(stage)
        photo_url = (photo_url or "").strip() or None
        if requires_photo(stage) and photo_url is None:
            raise ValidationError(f"A photo is required to submit the {stage.value} milestone")

        async with self.session_factory() as session:
            store = MilestoneStore(session)
            order = await self._load_order(store, order_uuid)
            if not order.is_in_production:
                raise OrderNotActive(str(order.id), order.status)

            existing = await store.get(order_uuid, stage)
            current = ApprovalStatus(existing.approval_status) if existing else None
            plan = plan_submission(current, now, self.approval_window)

            try:
                if existing is None:
                    milestone = await store.insert_pending(order_uuid, stage, plan, photo_url, notes or "", actor_id)
                else:
                    await store.resubmit(existing.id, plan, photo_url, notes or "", actor_id)
                    milestone = await store.get_by_id(existing.id)
            except ConcurrencyConflict as exc:
                await session.rollback()
                raise InvalidTransition(f"Milestone {stage.value} was submitted concurrently") from exc

            await session.commit()

        logger.info(
            "milestone_submitted",
            order_id=str(order_uuid),
            milestone_id=str(milestone.id),
            stage=stage.value,
            resubmission=existing is not None,
            deadline=plan.auto_approval_deadline.isoformat(),
        )
        self.fanout.dispatch_in_background(_event(MilestoneEventType.SUBMITTED, milestone, order, actor_id, now))
        return milestone

    async def approve_milestone(
        self,
        order_id: uuid.UUID | str,
        stage: MilestoneStage | str,
        actor_id: str,
        now: datetime | None = None,
    ) -> Milestone:
        """Customer approval. Enqueues the escrow release for the stage.

        Raises:
            MilestoneNotFound: no submission for this stage
            NotPending: milestone already approved or rejected (including by a racing sweep)
        """
        now = now or datetime.now(UTC)
        order_uuid = _as_uuid(order_id, "order id")
        stage = _as_stage(stage)

        async with self.session_factory() as session:
            store = MilestoneStore(session)
            order = await self._load_order(store, order_uuid)
            milestone = await self._load_milestone(store, order_uuid, stage)
            plan = plan_resolution(
                ApprovalStatus(milestone.approval_status),
                milestone.auto_approval_deadline,
                ResolveEvent.approve(actor_id),
                now,
            )
            milestone = await self._apply(session, store, milestone, plan)

        await self._after_approval(milestone, order, ReleaseReason.MANUAL_APPROVAL, actor_id, now)
        return milestone

    async def reject_milestone(
        self,
        order_id: uuid.UUID | str,
        stage: MilestoneStage | str,
        actor_id: str,
        reason: str | None,
        now: datetime | None = None,
    ) -> Milestone:
        """Customer rejection; the tailor may resubmit immediately.

        Raises:
            MilestoneNotFound: no submission for this stage
            NotPending: milestone no longer PENDING
            ValidationError: empty reason
        """
        now = now or datetime.now(UTC)
        order_uuid = _as_uuid(order_id, "order id")
        stage = _as_stage(stage)

        async with self.session_factory() as session:
            store = MilestoneStore(session)
            order = await self._load_order(store, order_uuid)
            milestone = await self._load_milestone(store, order_uuid, stage)
            plan = plan_rejection(ApprovalStatus(milestone.approval_status), actor_id, reason, now)
            milestone = await self._apply(session, store, milestone, plan, comment=plan.rejection_reason)

        logger.info("milestone_rejected", order_id=str(order_uuid), milestone_id=str(milestone.id), stage=stage.value)
        self.fanout.dispatch_in_background(
            _event(MilestoneEventType.REJECTED, milestone, order, actor_id, now, reason=plan.rejection_reason)
        )
        return milestone

    async def auto_approve(self, milestone_id: uuid.UUID, now: datetime | None = None) -> Milestone | None:
        """Deadline timeout, driven by the scheduler sweep.

        Idempotent: a milestone that was resolved in the meantime (by the
        customer or another sweep) is skipped and None is returned.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(milestone_id=str(milestone_id))

        async with self.session_factory() as session:
            store = MilestoneStore(session)
            milestone = await store.get_by_id(milestone_id)
            if milestone is None:
                log.warning("auto_approve_milestone_missing")
                return None

            try:
                plan = plan_resolution(
                    ApprovalStatus(milestone.approval_status),
                    milestone.auto_approval_deadline,
                    ResolveEvent.timeout(),
                    now,
                )
            except NotPending:
                log.info("auto_approve_skipped_already_resolved", status=milestone.approval_status)
                return None

            try:
                await store.resolve(milestone, plan, comment="Automatically approved after the review deadline")
            except ConcurrencyConflict:
                await session.rollback()
                log.info("auto_approve_lost_race")
                return None

            await session.commit()
            milestone = await store.get_by_id(milestone_id)
            order = await self._load_order(store, milestone.order_id)

        await self._after_approval(milestone, order, ReleaseReason.AUTO_APPROVAL, None, now)
        return milestone

    async def get_milestone_status(self, order_id: uuid.UUID | str, stage: MilestoneStage | str) -> Milestone:
        """Current state of one milestone.

        Raises:
            MilestoneNotFound: no submission for this stage
        """
        order_uuid = _as_uuid(order_id, "order id")
        stage = _as_stage(stage)
        async with self.session_factory() as session:
            return await self._load_milestone(MilestoneStore(session), order_uuid, stage)

    async def list_order_milestones(self, order_id: uuid.UUID | str) -> OrderProgress:
        order_uuid = _as_uuid(order_id, "order id")
        async with self.session_factory() as session:
            store = MilestoneStore(session)
            await self._load_order(store, order_uuid)
            milestones = await store.list_for_order(order_uuid)

        approved = [
            MilestoneStage(m.stage) for m in milestones if m.approval_status == ApprovalStatus.APPROVED.value
        ]
        return OrderProgress(
            order_id=order_uuid,
            milestones=milestones,
            progress_percent=calculate_progress(approved),
            next_stage=next_stage(approved),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_order(self, store: MilestoneStore, order_id: uuid.UUID) -> Order:
        order = await store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def _load_milestone(self, store: MilestoneStore, order_id: uuid.UUID, stage: MilestoneStage) -> Milestone:
        milestone = await store.get(order_id, stage)
        if milestone is None:
            raise MilestoneNotFound(f"No {stage.value} milestone submitted for order {order_id}")
        return milestone

    async def _apply(
        self,
        session: AsyncSession,
        store: MilestoneStore,
        milestone: Milestone,
        plan: ResolutionPlan,
        comment: str | None = None,
    ) -> Milestone:
        """Run the conditional resolution; a lost race surfaces as NotPending for human actors."""
        # Rollback expires loaded instances, so the id is read up front.
        milestone_id = milestone.id
        try:
            await store.resolve(milestone, plan, comment=comment)
        except ConcurrencyConflict:
            await session.rollback()
            current = await store.get_by_id(milestone_id)
            raise NotPending(current.approval_status if current else None) from None

        await session.commit()
        return await store.get_by_id(milestone_id)

    async def _after_approval(
        self,
        milestone: Milestone,
        order: Order,
        reason: ReleaseReason,
        actor_id: str | None,
        now: datetime,
    ) -> None:
        log = logger.bind(order_id=str(order.id), milestone_id=str(milestone.id), stage=milestone.stage)
        log.info("milestone_approved", release_reason=reason.value, reviewed_by=milestone.reviewed_by)

        # A lost enqueue is recovered by the scheduler's unreleased-approval pass.
        try:
            await self.release_queue.enqueue(milestone.id, reason, now=now)
        except Exception as exc:
            log.warning("release_enqueue_failed", error=str(exc), error_type=type(exc).__name__)

        event_type = MilestoneEventType.AUTO_APPROVED if reason == ReleaseReason.AUTO_APPROVAL else MilestoneEventType.APPROVED
        self.fanout.dispatch_in_background(_event(event_type, milestone, order, actor_id, now))
