"""Milestone approval state machine.

Pure transition functions: given the current state of a milestone and an
incoming event, compute the fields to write or raise. No DB access, no clock
reads, fully deterministic. Persistence (and the conditional update that
serializes racing triggers) lives in MilestoneStore.

States:
    (none) --submit--> PENDING
    PENDING --approve/timeout--> APPROVED   (terminal, triggers escrow release)
    PENDING --reject--> REJECTED
    REJECTED --submit--> PENDING            (fresh deadline, reason cleared)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from milestone_engine.core.exceptions import (
    DeadlineNotReached,
    InvalidTransition,
    NotPending,
    ValidationError,
)

SYSTEM_ACTOR_ID = "system"


class ApprovalStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalAction(StrEnum):
    """Audit trail action recorded for each resolution."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"


class ActorKind(StrEnum):
    HUMAN = "human"
    SYSTEM = "system"


@dataclass(frozen=True)
class ResolveEvent:
    """Approval event. Customer approval and deadline timeout are two constructors of the same event."""

    actor: ActorKind
    actor_id: str | None = None

    @classmethod
    def approve(cls, actor_id: str) -> "ResolveEvent":
        return cls(actor=ActorKind.HUMAN, actor_id=actor_id)

    @classmethod
    def timeout(cls) -> "ResolveEvent":
        return cls(actor=ActorKind.SYSTEM)

    @property
    def is_system(self) -> bool:
        return self.actor == ActorKind.SYSTEM

    @property
    def action(self) -> ApprovalAction:
        return ApprovalAction.AUTO_APPROVED if self.is_system else ApprovalAction.APPROVED

    @property
    def reviewer(self) -> str:
        return self.actor_id or SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class SubmissionPlan:
    """Fields written when a milestone enters (or re-enters) PENDING."""

    status: ApprovalStatus
    submitted_at: datetime
    auto_approval_deadline: datetime
    rejection_reason: str | None = None
    warnings_sent: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ResolutionPlan:
    """Fields written when a PENDING milestone is resolved."""

    status: ApprovalStatus
    reviewed_at: datetime
    reviewed_by: str
    action: ApprovalAction
    rejection_reason: str | None = None
    release_required: bool = False


@dataclass(frozen=True)
class WarningPlan:
    """Deadline warning to emit (if any) and thresholds to mark as sent."""

    notify_threshold: int | None
    record_thresholds: list[int]

    @property
    def is_due(self) -> bool:
        return bool(self.record_thresholds)


def plan_submission(
    current: ApprovalStatus | None,
    now: datetime,
    window: timedelta,
) -> SubmissionPlan:
    """Validate a tailor submission and compute the new PENDING state.

    Args:
        current: Current status, or None when no milestone record exists yet
        now: Submission time
        window: Auto-approval review window

    Raises:
        InvalidTransition: if the milestone is PENDING or APPROVED
    """
    if current is not None and current != ApprovalStatus.REJECTED:
        raise InvalidTransition(
            f"Cannot submit a milestone that is {current.value}; only new or rejected milestones accept submissions",
            current.value,
        )
    return SubmissionPlan(
        status=ApprovalStatus.PENDING,
        submitted_at=now,
        auto_approval_deadline=now + window,
    )


def plan_resolution(
    current: ApprovalStatus,
    deadline: datetime | None,
    event: ResolveEvent,
    now: datetime,
) -> ResolutionPlan:
    """Approve a PENDING milestone, by the customer or by deadline timeout.

    Raises:
        NotPending: if the milestone is not PENDING
        DeadlineNotReached: for a timeout event before the deadline
    """
    if current != ApprovalStatus.PENDING:
        raise NotPending(current.value)

    if event.is_system and (deadline is None or now < deadline):
        raise DeadlineNotReached(deadline.isoformat() if deadline else "unset")

    return ResolutionPlan(
        status=ApprovalStatus.APPROVED,
        reviewed_at=now,
        reviewed_by=event.reviewer,
        action=event.action,
        release_required=True,
    )


def plan_rejection(
    current: ApprovalStatus,
    actor_id: str,
    reason: str | None,
    now: datetime,
) -> ResolutionPlan:
    """Reject a PENDING milestone with a mandatory reason.

    Raises:
        NotPending: if the milestone is not PENDING
        ValidationError: if the reason is empty
    """
    if current != ApprovalStatus.PENDING:
        raise NotPending(current.value)

    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("A rejection reason is required")

    return ResolutionPlan(
        status=ApprovalStatus.REJECTED,
        reviewed_at=now,
        reviewed_by=actor_id,
        action=ApprovalAction.REJECTED,
        rejection_reason=cleaned,
    )


def due_warning_thresholds(
    deadline: datetime,
    now: datetime,
    thresholds: list[int],
    sent: list[int],
) -> WarningPlan:
    """Work out which deadline warnings (in hours before deadline) are due.

    A threshold is due once ``deadline - now <= threshold`` and it has not been
    sent. When several are crossed at once (a late first observation) only the
    tightest one is notified, and all crossed ones are recorded so none fires
    later. Nothing is due once the deadline itself has passed.
    """
    remaining = deadline - now
    if remaining <= timedelta(0):
        return WarningPlan(notify_threshold=None, record_thresholds=[])

    already = set(sent)
    crossed = sorted(
        t for t in set(thresholds)
        if t not in already and remaining <= timedelta(hours=t)
    )
    if not crossed:
        return WarningPlan(notify_threshold=None, record_thresholds=[])

    return WarningPlan(notify_threshold=crossed[0], record_thresholds=crossed)
