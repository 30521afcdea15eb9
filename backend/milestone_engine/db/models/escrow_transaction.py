"""EscrowTransaction model: append-only release ledger."""

import uuid

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Numeric, String, Text, Uuid, text

from milestone_engine.db.base import Base
from milestone_engine.db.types import UTCDateTime, utcnow

_ACTIVE_RELEASE = text("status IN ('PROCESSING', 'COMPLETED')")


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_escrow_transactions_amount_positive"),
        # At most one in-flight or completed release per milestone. FAILED rows
        # are excluded so a failed attempt can be superseded.
        Index(
            "uq_escrow_transactions_active_release",
            "order_id",
            "milestone_id",
            unique=True,
            postgresql_where=_ACTIVE_RELEASE,
            sqlite_where=_ACTIVE_RELEASE,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    milestone_id = Column(Uuid(as_uuid=True), ForeignKey("milestones.id"), nullable=False, index=True)
    payee_id = Column(String(255), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="PROCESSING")  # PROCESSING, COMPLETED, FAILED
    release_reason = Column(String(50), nullable=False)  # manual_approval, auto_approval

    settlement_reference = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    processed_at = Column(UTCDateTime, nullable=True)
