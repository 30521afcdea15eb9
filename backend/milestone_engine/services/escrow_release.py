"""Escrow release processor: the only component that moves money.

Flow for one approved milestone:
  1. Idempotency guard: COMPLETED row -> ALREADY_RELEASED, PROCESSING row -> IN_FLIGHT
  2. Insert a PROCESSING ledger row and commit (the partial unique index on
     (order_id, milestone_id) rejects a second active row; the loser reports
     the winner's row like step 1)
  3. Call the settlement backend with the row id as idempotency key
  4. COMPLETED on success, FAILED on refusal, untouched on timeout/transient error.
     FUNDS_RELEASED goes out only when this call moved the row to COMPLETED.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from milestone_engine.core.config import Settings, get_settings
from milestone_engine.core.exceptions import (
    ConcurrencyConflict,
    InvalidAmount,
    MilestoneNotFound,
    NotApproved,
    OrderNotFound,
    SettlementRejected,
    SettlementTransient,
)
from milestone_engine.db.models.escrow_transaction import EscrowTransaction
from milestone_engine.db.models.milestone import Milestone
from milestone_engine.db.models.order import Order
from milestone_engine.domain.approval import ApprovalStatus
from milestone_engine.domain.escrow import EscrowStatus, ReleaseReason, ReleaseStatus, compute_release_amount
from milestone_engine.domain.stages import MilestoneStage
from milestone_engine.integrations.settlement import SettlementBackend
from milestone_engine.services.milestone_store import MilestoneStore
from milestone_engine.services.notifications import MilestoneEvent, MilestoneEventType, NotificationFanout

logger = structlog.get_logger(__name__)

_ACTIVE_STATUSES = (EscrowStatus.PROCESSING.value, EscrowStatus.COMPLETED.value)


@dataclass(frozen=True)
class ReleaseOutcome:
    status: ReleaseStatus
    milestone_id: uuid.UUID
    transaction_id: uuid.UUID | None = None
    amount: Decimal | None = None
    settlement_reference: str | None = None


@dataclass
class EscrowSummary:
    """Money position of one order across its release ledger."""

    order_id: uuid.UUID
    total_amount: Decimal
    released: Decimal
    in_flight: Decimal
    failed: Decimal
    transactions: list[EscrowTransaction] = field(default_factory=list)

    @property
    def remaining(self) -> Decimal:
        return self.total_amount - self.released - self.in_flight


def _skipped(existing: EscrowTransaction, log) -> ReleaseOutcome:
    """Outcome for a milestone whose release is already claimed by ``existing``."""
    status = (
        ReleaseStatus.ALREADY_RELEASED
        if existing.status == EscrowStatus.COMPLETED.value
        else ReleaseStatus.IN_FLIGHT
    )
    log.info("escrow_release_skipped", status=status.value, transaction_id=str(existing.id))
    return ReleaseOutcome(
        status=status,
        milestone_id=existing.milestone_id,
        transaction_id=existing.id,
        amount=Decimal(existing.amount),
        settlement_reference=existing.settlement_reference,
    )


class EscrowLedger:
    """Repository for escrow_transactions, bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active(self, order_id: uuid.UUID, milestone_id: uuid.UUID) -> EscrowTransaction | None:
        result = await self.session.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.order_id == order_id,
                EscrowTransaction.milestone_id == milestone_id,
                EscrowTransaction.status.in_(_ACTIVE_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, order_id: uuid.UUID) -> list[EscrowTransaction]:
        result = await self.session.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.order_id == order_id)
            .order_by(EscrowTransaction.created_at)
        )
        return list(result.scalars().all())

    async def committed_total(self, order_id: uuid.UUID) -> Decimal:
        """Sum of PROCESSING and COMPLETED amounts for an order."""
        result = await self.session.execute(
            select(EscrowTransaction.amount).where(
                EscrowTransaction.order_id == order_id,
                EscrowTransaction.status.in_(_ACTIVE_STATUSES),
            )
        )
        return sum((Decimal(a) for a in result.scalars().all()), Decimal("0"))

    async def open_release(
        self,
        order: Order,
        milestone: Milestone,
        amount: Decimal,
        reason: ReleaseReason,
        now: datetime,
    ) -> EscrowTransaction:
        """Insert the PROCESSING row that claims this milestone's release.

        Raises:
            ConcurrencyConflict: another active row exists for (order, milestone)
        """
        # Rollback expires loaded instances, so the id is read up front.
        milestone_id = milestone.id
        transaction = EscrowTransaction(
            order_id=order.id,
            milestone_id=milestone_id,
            payee_id=order.tailor_id,
            amount=amount,
            status=EscrowStatus.PROCESSING.value,
            release_reason=reason.value,
            created_at=now,
        )
        self.session.add(transaction)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConcurrencyConflict(f"Release for milestone {milestone_id} already claimed") from exc
        return transaction

    async def mark_completed(self, transaction_id: uuid.UUID, reference: str | None, now: datetime) -> bool:
        return await self._settle_row(
            transaction_id,
            status=EscrowStatus.COMPLETED.value,
            settlement_reference=reference,
            processed_at=now,
        )

    async def mark_failed(self, transaction_id: uuid.UUID, reason: str, now: datetime) -> bool:
        return await self._settle_row(
            transaction_id,
            status=EscrowStatus.FAILED.value,
            failure_reason=reason,
            processed_at=now,
        )

    async def list_unsettled(self, stale_before: datetime, limit: int) -> list[EscrowTransaction]:
        """FAILED rows, plus PROCESSING rows created before ``stale_before``."""
        result = await self.session.execute(
            select(EscrowTransaction)
            .where(
                or_(
                    EscrowTransaction.status == EscrowStatus.FAILED.value,
                    (EscrowTransaction.status == EscrowStatus.PROCESSING.value)
                    & (EscrowTransaction.created_at <= stale_before),
                )
            )
            .order_by(EscrowTransaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _settle_row(self, transaction_id: uuid.UUID, **values) -> bool:
        # Only a PROCESSING row may be settled; a reconciler may have got there first.
        result = await self.session.execute(
            update(EscrowTransaction)
            .where(
                EscrowTransaction.id == transaction_id,
                EscrowTransaction.status == EscrowStatus.PROCESSING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class EscrowReleaseProcessor:
    """Releases the stage share of an order's escrow for approved milestones."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settlement: SettlementBackend,
        fanout: NotificationFanout,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settlement = settlement
        self.fanout = fanout
        self.settings = settings or get_settings()

    async def release(
        self,
        milestone_id: uuid.UUID,
        reason: ReleaseReason,
        now: datetime | None = None,
    ) -> ReleaseOutcome:
        """Release funds for one APPROVED milestone, at most once.

        Raises:
            MilestoneNotFound / OrderNotFound: referenced rows missing
            NotApproved: milestone is not APPROVED
            InvalidAmount: computed amount is not positive
            SettlementRejected: backend refused the payout (row marked FAILED)
        """
        now = now or datetime.now(UTC)
        log = logger.bind(milestone_id=str(milestone_id), release_reason=reason.value)

        async with self.session_factory() as session:
            store = MilestoneStore(session)
            ledger = EscrowLedger(session)

            milestone = await store.get_by_id(milestone_id)
            if milestone is None:
                raise MilestoneNotFound(f"Milestone {milestone_id} not found")
            if milestone.approval_status != ApprovalStatus.APPROVED.value:
                raise NotApproved(f"Milestone {milestone_id} is {milestone.approval_status}, not APPROVED")

            order = await store.get_order(milestone.order_id)
            if order is None:
                raise OrderNotFound(f"Order {milestone.order_id} not found")
            log = log.bind(order_id=str(order.id), stage=milestone.stage)

            order_id = order.id
            existing = await ledger.get_active(order_id, milestone_id)
            if existing is not None:
                return _skipped(existing, log)

            amount = compute_release_amount(order.total_amount, MilestoneStage(milestone.stage))
            # Rounding each stage half-up can overshoot the order total by a few cents.
            remaining = Decimal(order.total_amount) - await ledger.committed_total(order.id)
            if amount > remaining:
                log.info("escrow_release_capped", computed=str(amount), remaining=str(remaining))
                amount = remaining
            if amount <= 0:
                raise InvalidAmount(f"Nothing left in escrow for milestone {milestone.id}")

            try:
                transaction = await ledger.open_release(order, milestone, amount, reason, now)
            except ConcurrencyConflict:
                log.info("escrow_release_claimed_concurrently")
                winner = await ledger.get_active(order_id, milestone_id)
                if winner is None:
                    return ReleaseOutcome(status=ReleaseStatus.IN_FLIGHT, milestone_id=milestone_id, amount=amount)
                return _skipped(winner, log)
            await session.commit()

        transaction_id = transaction.id
        log = log.bind(transaction_id=str(transaction_id), amount=str(amount))
        log.info("escrow_release_started", payee_id=order.tailor_id)

        try:
            async with asyncio.timeout(self.settings.settlement_timeout_seconds):
                result = await self.settlement.settle(amount, order.tailor_id, str(transaction_id))
        except (TimeoutError, SettlementTransient) as exc:
            # Outcome unknown: leave the row PROCESSING for reconciliation.
            log.warning("escrow_release_pending_reconciliation", error=str(exc), error_type=type(exc).__name__)
            return ReleaseOutcome(
                status=ReleaseStatus.PENDING_RECONCILIATION,
                milestone_id=milestone_id,
                transaction_id=transaction_id,
                amount=amount,
            )

        async with self.session_factory() as session:
            ledger = EscrowLedger(session)
            if not result.success:
                failure = result.reason or "settlement refused"
                await ledger.mark_failed(transaction_id, failure, now)
                await session.commit()
                log.error("escrow_release_failed", reason=failure)
                raise SettlementRejected(failure, str(transaction_id))

            completed = await ledger.mark_completed(transaction_id, result.reference, now)
            await session.commit()

        if not completed:
            # The row left PROCESSING while the payout was in flight; its new state is not ours to announce.
            log.error("escrow_release_completion_conflict", settlement_reference=result.reference)
            return ReleaseOutcome(
                status=ReleaseStatus.COMPLETION_CONFLICT,
                milestone_id=milestone_id,
                transaction_id=transaction_id,
                amount=amount,
                settlement_reference=result.reference,
            )

        log.info("escrow_release_completed", settlement_reference=result.reference)
        await self.fanout.dispatch(
            MilestoneEvent(
                type=MilestoneEventType.FUNDS_RELEASED,
                order_id=str(order.id),
                milestone_id=str(milestone_id),
                stage=milestone.stage,
                customer_id=order.customer_id,
                tailor_id=order.tailor_id,
                actor_id=None,
                payload={
                    "amount": str(amount),
                    "transaction_id": str(transaction_id),
                    "release_reason": reason.value,
                },
                occurred_at=now,
            )
        )
        return ReleaseOutcome(
            status=ReleaseStatus.RELEASED,
            milestone_id=milestone_id,
            transaction_id=transaction_id,
            amount=amount,
            settlement_reference=result.reference,
        )

    async def summarize_order(self, order_id: uuid.UUID) -> EscrowSummary:
        """Released, in-flight and failed totals for an order.

        Raises:
            OrderNotFound: unknown order
        """
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            transactions = await EscrowLedger(session).list_for_order(order_id)

        totals = {status: Decimal("0") for status in EscrowStatus}
        for txn in transactions:
            totals[EscrowStatus(txn.status)] += Decimal(txn.amount)

        return EscrowSummary(
            order_id=order_id,
            total_amount=Decimal(order.total_amount),
            released=totals[EscrowStatus.COMPLETED],
            in_flight=totals[EscrowStatus.PROCESSING],
            failed=totals[EscrowStatus.FAILED],
            transactions=transactions,
        )

    async def list_unsettled(
        self,
        now: datetime | None = None,
        older_than: timedelta | None = None,
        limit: int = 100,
    ) -> list[EscrowTransaction]:
        """Rows an external reconciler should look at: FAILED, or PROCESSING for too long."""
        now = now or datetime.now(UTC)
        older_than = older_than or timedelta(minutes=self.settings.stale_processing_minutes)
        async with self.session_factory() as session:
            return await EscrowLedger(session).list_unsettled(now - older_than, limit)
