"""Milestone model: one row per (order, stage), mutated only by the approval state machine."""

import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.types import JSON

from milestone_engine.db.base import Base
from milestone_engine.db.types import UTCDateTime, utcnow


class Milestone(Base):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("order_id", "stage", name="uq_milestones_order_stage"),
        Index("ix_milestones_status_deadline", "approval_status", "auto_approval_deadline"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    stage = Column(String(50), nullable=False)  # MilestoneStage values

    # Submission (tailor)
    photo_url = Column(Text, nullable=True)
    notes = Column(Text, nullable=False, default="")
    submitted_by = Column(String(255), nullable=True)
    submitted_at = Column(UTCDateTime, nullable=True)

    # Review
    approval_status = Column(String(20), nullable=False, default="PENDING")  # ApprovalStatus values
    auto_approval_deadline = Column(UTCDateTime, nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    reviewed_by = Column(String(255), nullable=True)  # customer id, or "system" for auto-approval
    rejection_reason = Column(Text, nullable=True)

    # Deadline warning thresholds (hours) already notified for the current submission
    warnings_sent = Column(JSON, nullable=False, default=list)
    # Bumped on every write; guards optimistic updates of warnings_sent
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
