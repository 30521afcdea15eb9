"""MilestoneApproval model: append-only audit trail of review decisions."""

import uuid

from sqlalchemy import Column, ForeignKey, String, Text, Uuid

from milestone_engine.db.base import Base
from milestone_engine.db.types import UTCDateTime, utcnow


class MilestoneApproval(Base):
    __tablename__ = "milestone_approvals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    milestone_id = Column(Uuid(as_uuid=True), ForeignKey("milestones.id"), nullable=False, index=True)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)

    actor_id = Column(String(255), nullable=True)  # null for system auto-approval
    action = Column(String(20), nullable=False)  # APPROVED, REJECTED, AUTO_APPROVED
    comment = Column(Text, nullable=True)

    reviewed_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    # NO updated_at -- audit rows are immutable
