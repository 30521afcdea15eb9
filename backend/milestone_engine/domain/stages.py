"""Milestone stage catalog: ordered stages, payout weights and progress markers.

Pure domain logic with no external dependencies.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from milestone_engine.core.exceptions import StageCatalogError, ValidationError


class MilestoneStage(StrEnum):
    """Seven production checkpoints of a tailoring order, in order."""

    FABRIC_SELECTED = "FABRIC_SELECTED"
    CUTTING_STARTED = "CUTTING_STARTED"
    INITIAL_ASSEMBLY = "INITIAL_ASSEMBLY"
    FITTING_READY = "FITTING_READY"
    ADJUSTMENTS_COMPLETE = "ADJUSTMENTS_COMPLETE"
    FINAL_PRESSING = "FINAL_PRESSING"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"


@dataclass(frozen=True)
class StageDefinition:
    """Static configuration for one stage."""

    stage: MilestoneStage
    weight: Decimal  # share of the order total released on approval
    requires_photo: bool
    progress_percent: int  # order progress once this stage is approved


STAGE_CATALOG: tuple[StageDefinition, ...] = (
    StageDefinition(MilestoneStage.FABRIC_SELECTED, Decimal("0.20"), True, 10),
    StageDefinition(MilestoneStage.CUTTING_STARTED, Decimal("0.15"), True, 20),
    StageDefinition(MilestoneStage.INITIAL_ASSEMBLY, Decimal("0.20"), True, 35),
    StageDefinition(MilestoneStage.FITTING_READY, Decimal("0.20"), True, 50),
    StageDefinition(MilestoneStage.ADJUSTMENTS_COMPLETE, Decimal("0.15"), True, 75),
    StageDefinition(MilestoneStage.FINAL_PRESSING, Decimal("0.05"), False, 90),
    StageDefinition(MilestoneStage.READY_FOR_DELIVERY, Decimal("0.05"), True, 100),
)

_BY_STAGE: dict[MilestoneStage, StageDefinition] = {d.stage: d for d in STAGE_CATALOG}


def validate_stage_weights(catalog: tuple[StageDefinition, ...] = STAGE_CATALOG) -> None:
    """Fail fast if the catalog is not a complete, ordered set summing to exactly 1.

    Called once at startup, never per request.

    Raises:
        StageCatalogError: on missing/duplicate stages, non-positive weights or a bad sum
    """
    stages = [d.stage for d in catalog]
    if stages != list(MilestoneStage):
        raise StageCatalogError(f"Stage catalog must list every stage once, in order: {stages}")

    non_positive = [d.stage.value for d in catalog if d.weight <= 0]
    if non_positive:
        raise StageCatalogError(f"Stage weights must be positive: {non_positive}")

    total = sum((d.weight for d in catalog), Decimal("0"))
    if total != Decimal("1"):
        raise StageCatalogError(f"Stage weights must sum to 1.00, got {total}")


def parse_stage(value: str) -> MilestoneStage:
    """Convert a raw stage name to MilestoneStage.

    Raises:
        ValidationError: if the name is not one of the seven catalog stages
    """
    try:
        return MilestoneStage(value.strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown milestone stage: {value!r}") from None


def stage_definition(stage: MilestoneStage) -> StageDefinition:
    return _BY_STAGE[stage]


def stage_weight(stage: MilestoneStage) -> Decimal:
    return _BY_STAGE[stage].weight


def requires_photo(stage: MilestoneStage) -> bool:
    return _BY_STAGE[stage].requires_photo


def calculate_progress(approved_stages: list[MilestoneStage]) -> int:
    """Order progress percentage from the highest approved stage (0 if none)."""
    if not approved_stages:
        return 0
    return max(_BY_STAGE[s].progress_percent for s in approved_stages)


def next_stage(approved_stages: list[MilestoneStage]) -> MilestoneStage | None:
    """First stage in catalog order that has not been approved yet."""
    approved = set(approved_stages)
    for definition in STAGE_CATALOG:
        if definition.stage not in approved:
            return definition.stage
    return None
