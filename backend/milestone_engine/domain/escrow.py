"""Escrow release amounts and ledger states.

Pure domain logic with no external dependencies.
"""
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

from milestone_engine.core.exceptions import InvalidAmount
from milestone_engine.domain.stages import MilestoneStage, stage_weight

CENT = Decimal("0.01")


class EscrowStatus(StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReleaseReason(StrEnum):
    MANUAL_APPROVAL = "manual_approval"
    AUTO_APPROVAL = "auto_approval"


class ReleaseStatus(StrEnum):
    """Outcome of one call to the release processor."""

    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    IN_FLIGHT = "in_flight"
    PENDING_RECONCILIATION = "pending_reconciliation"
    # Settlement succeeded but the row had already been moved out of PROCESSING.
    COMPLETION_CONFLICT = "completion_conflict"


def compute_release_amount(total_amount: Decimal | str | int, stage: MilestoneStage) -> Decimal:
    """Amount released when ``stage`` is approved, rounded half-up to cents.

    Raises:
        InvalidAmount: if the result is not positive (bad order total or weight)
    """
    amount = (Decimal(total_amount) * stage_weight(stage)).quantize(CENT, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise InvalidAmount(f"Release amount for {stage.value} must be positive, got {amount}")
    return amount
