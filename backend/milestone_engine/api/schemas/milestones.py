"""Milestone and escrow API Pydantic schemas."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

# ---------- Requests ----------


class SubmitMilestoneRequest(BaseModel):
    photo_url: str | None = None
    notes: str = ""


class RejectMilestoneRequest(BaseModel):
    reason: str


# ---------- Milestones ----------


class MilestoneResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    stage: str
    photo_url: str | None
    notes: str | None
    submitted_by: str | None
    submitted_at: datetime | None
    approval_status: str
    auto_approval_deadline: datetime | None
    reviewed_at: datetime | None
    reviewed_by: str | None
    rejection_reason: str | None
    warnings_sent: list[int]

    model_config = ConfigDict(from_attributes=True)


class OrderProgressResponse(BaseModel):
    order_id: uuid.UUID
    progress_percent: int
    next_stage: str | None
    milestones: list[MilestoneResponse]


class PhotoUploadResponse(BaseModel):
    photo_url: str


# ---------- Escrow ----------


class EscrowTransactionResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    milestone_id: uuid.UUID
    payee_id: str
    amount: Decimal
    status: str
    release_reason: str
    settlement_reference: str | None
    failure_reason: str | None
    created_at: datetime
    processed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class EscrowSummaryResponse(BaseModel):
    order_id: uuid.UUID
    total_amount: Decimal
    released: Decimal
    in_flight: Decimal
    failed: Decimal
    remaining: Decimal
    transactions: list[EscrowTransactionResponse]

    model_config = ConfigDict(from_attributes=True)


# ---------- Internal ----------


class AutoApprovalResultResponse(BaseModel):
    processed: int
    auto_approved: int
    skipped: int
    failed: int
    warnings_sent: int
    releases_enqueued: int
    approved_milestone_ids: list[str]
    errors: list[dict]

    model_config = ConfigDict(from_attributes=True)


class SchedulerHealthResponse(BaseModel):
    healthy: bool
    pending: int
    overdue: int
    oldest_overdue_deadline: str | None
    queued_releases: int | None
    last_tick_at: str | None
