"""MilestoneStore: persistence and conditional mutation of milestone rows.

Every state change is a single conditional UPDATE ("... WHERE approval_status =
<expected>"). That statement is the serialization point between the interactive
approval path and the scheduler sweep, which may run in different processes.
Zero rows affected means another actor changed the row first.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from milestone_engine.core.exceptions import ConcurrencyConflict
from milestone_engine.db.models.escrow_transaction import EscrowTransaction
from milestone_engine.db.models.milestone import Milestone
from milestone_engine.db.models.milestone_approval import MilestoneApproval
from milestone_engine.db.models.order import Order
from milestone_engine.domain.approval import SYSTEM_ACTOR_ID, ApprovalStatus, ResolutionPlan, SubmissionPlan
from milestone_engine.domain.stages import MilestoneStage

logger = structlog.get_logger(__name__)


class MilestoneStore:
    """Repository for milestones and their audit trail, bound to one session.

    The caller owns the transaction (commit/rollback).
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        return await self.session.get(Order, order_id)

    async def get(self, order_id: uuid.UUID, stage: MilestoneStage) -> Milestone | None:
        result = await self.session.execute(
            select(Milestone)
            .where(Milestone.order_id == order_id, Milestone.stage == stage.value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        """Load a milestone, overwriting any stale copy in the identity map."""
        result = await self.session.execute(
            select(Milestone).where(Milestone.id == milestone_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, order_id: uuid.UUID) -> list[Milestone]:
        result = await self.session.execute(
            select(Milestone).where(Milestone.order_id == order_id).order_by(Milestone.created_at)
        )
        return list(result.scalars().all())

    async def list_approvals(self, milestone_id: uuid.UUID) -> list[MilestoneApproval]:
        result = await self.session.execute(
            select(MilestoneApproval)
            .where(MilestoneApproval.milestone_id == milestone_id)
            .order_by(MilestoneApproval.reviewed_at)
        )
        return list(result.scalars().all())

    async def find_overdue(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """IDs of PENDING milestones whose auto-approval deadline has passed, oldest first."""
        result = await self.session.execute(
            select(Milestone.id)
            .where(
                Milestone.approval_status == ApprovalStatus.PENDING.value,
                Milestone.auto_approval_deadline <= now,
            )
            .order_by(Milestone.auto_approval_deadline)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_warning_candidates(
        self,
        now: datetime,
        horizon: timedelta,
        limit: int,
        after: tuple[datetime, uuid.UUID] | None = None,
    ) -> list[tuple[Milestone, Order]]:
        """PENDING milestones whose deadline falls within ``horizon`` from now (and is still ahead).

        Ordered by (deadline, id). Pass the last row's ``(deadline, id)`` as
        ``after`` to fetch the next page.
        """
        query = (
            select(Milestone, Order)
            .join(Order, Order.id == Milestone.order_id)
            .where(
                Milestone.approval_status == ApprovalStatus.PENDING.value,
                Milestone.auto_approval_deadline > now,
                Milestone.auto_approval_deadline <= now + horizon,
            )
            .order_by(Milestone.auto_approval_deadline, Milestone.id)
            .limit(limit)
        )
        if after is not None:
            deadline, milestone_id = after
            query = query.where(
                or_(
                    Milestone.auto_approval_deadline > deadline,
                    and_(Milestone.auto_approval_deadline == deadline, Milestone.id > milestone_id),
                )
            )
        result = await self.session.execute(query)
        return [(row[0], row[1]) for row in result.all()]

    async def find_unreleased_approvals(self, limit: int) -> list[tuple[uuid.UUID, str | None]]:
        """(id, reviewed_by) of APPROVED milestones with no escrow transaction row at all."""
        has_txn = exists().where(EscrowTransaction.milestone_id == Milestone.id)
        result = await self.session.execute(
            select(Milestone.id, Milestone.reviewed_by)
            .where(Milestone.approval_status == ApprovalStatus.APPROVED.value, ~has_txn)
            .order_by(Milestone.reviewed_at)
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def count_pending(self, now: datetime) -> tuple[int, int, datetime | None]:
        """(pending, overdue, oldest overdue deadline) for health reporting."""
        pending = await self.session.execute(
            select(Milestone.auto_approval_deadline).where(
                Milestone.approval_status == ApprovalStatus.PENDING.value
            )
        )
        deadlines = [d for d in pending.scalars().all() if d is not None]
        overdue = sorted(d for d in deadlines if d <= now)
        return len(deadlines), len(overdue), overdue[0] if overdue else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_pending(
        self,
        order_id: uuid.UUID,
        stage: MilestoneStage,
        plan: SubmissionPlan,
        photo_url: str | None,
        notes: str,
        submitted_by: str,
    ) -> Milestone:
        """Create the milestone row on first submission.

        Raises:
            ConcurrencyConflict: if a row for (order, stage) was created concurrently
        """
        milestone = Milestone(
            order_id=order_id,
            stage=stage.value,
            photo_url=photo_url,
            notes=notes,
            submitted_by=submitted_by,
            submitted_at=plan.submitted_at,
            approval_status=plan.status.value,
            auto_approval_deadline=plan.auto_approval_deadline,
            warnings_sent=list(plan.warnings_sent),
            version=1,
            created_at=plan.submitted_at,
            updated_at=plan.submitted_at,
        )
        self.session.add(milestone)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConcurrencyConflict(f"Milestone {stage.value} already exists for order {order_id}") from exc
        return milestone

    async def resubmit(
        self,
        milestone_id: uuid.UUID,
        plan: SubmissionPlan,
        photo_url: str | None,
        notes: str,
        submitted_by: str,
    ) -> None:
        """Move a REJECTED milestone back to PENDING with a fresh deadline.

        Raises:
            ConcurrencyConflict: if the row is no longer REJECTED
        """
        await self._conditional_update(
            milestone_id,
            ApprovalStatus.REJECTED,
            photo_url=photo_url,
            notes=notes,
            submitted_by=submitted_by,
            submitted_at=plan.submitted_at,
            approval_status=plan.status.value,
            auto_approval_deadline=plan.auto_approval_deadline,
            reviewed_at=None,
            reviewed_by=None,
            rejection_reason=None,
            warnings_sent=list(plan.warnings_sent),
            updated_at=plan.submitted_at,
        )

    async def resolve(self, milestone: Milestone, plan: ResolutionPlan, comment: str | None = None) -> None:
        """Apply an approval/rejection to a PENDING milestone and append the audit row.

        Raises:
            ConcurrencyConflict: if the row is no longer PENDING
        """
        await self._conditional_update(
            milestone.id,
            ApprovalStatus.PENDING,
            approval_status=plan.status.value,
            reviewed_at=plan.reviewed_at,
            reviewed_by=plan.reviewed_by,
            rejection_reason=plan.rejection_reason,
            updated_at=plan.reviewed_at,
        )
        self.session.add(
            MilestoneApproval(
                milestone_id=milestone.id,
                order_id=milestone.order_id,
                actor_id=None if plan.reviewed_by == SYSTEM_ACTOR_ID else plan.reviewed_by,
                action=plan.action.value,
                comment=comment,
                reviewed_at=plan.reviewed_at,
            )
        )
        await self.session.flush()

    async def record_warnings(
        self,
        milestone_id: uuid.UUID,
        expected_version: int,
        warnings_sent: list[int],
        now: datetime,
    ) -> bool:
        """Persist sent warning thresholds if nobody else touched the row since it was read.

        Returns:
            True if this caller recorded the warnings (and should notify)
        """
        result = await self.session.execute(
            update(Milestone)
            .where(
                Milestone.id == milestone_id,
                Milestone.version == expected_version,
                Milestone.approval_status == ApprovalStatus.PENDING.value,
            )
            .values(warnings_sent=sorted(warnings_sent), version=Milestone.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _conditional_update(
        self,
        milestone_id: uuid.UUID,
        expected: ApprovalStatus,
        **values,
    ) -> None:
        result = await self.session.execute(
            update(Milestone)
            .where(Milestone.id == milestone_id, Milestone.approval_status == expected.value)
            .values(version=Milestone.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "milestone_conditional_update_lost",
                milestone_id=str(milestone_id),
                expected_status=expected.value,
            )
            raise ConcurrencyConflict(f"Milestone {milestone_id} is no longer {expected.value}")
