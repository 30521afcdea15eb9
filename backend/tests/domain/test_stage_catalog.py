"""Tests for the milestone stage catalog: weights, photo rules, progress."""

from dataclasses import replace
from decimal import Decimal

import pytest

from milestone_engine.core.exceptions import StageCatalogError, ValidationError
from milestone_engine.domain.stages import (
    STAGE_CATALOG,
    MilestoneStage,
    calculate_progress,
    next_stage,
    parse_stage,
    requires_photo,
    stage_weight,
    validate_stage_weights,
)

pytestmark = pytest.mark.unit


def test_catalog_weights_sum_to_one():
    """The shipped catalog passes the startup check."""
    validate_stage_weights()
    assert sum(d.weight for d in STAGE_CATALOG) == Decimal("1")


def test_catalog_follows_production_order():
    assert [d.stage for d in STAGE_CATALOG] == list(MilestoneStage)


@pytest.mark.parametrize(
    "stage,weight",
    [
        (MilestoneStage.FABRIC_SELECTED, "0.20"),
        (MilestoneStage.CUTTING_STARTED, "0.15"),
        (MilestoneStage.INITIAL_ASSEMBLY, "0.20"),
        (MilestoneStage.FITTING_READY, "0.20"),
        (MilestoneStage.ADJUSTMENTS_COMPLETE, "0.15"),
        (MilestoneStage.FINAL_PRESSING, "0.05"),
        (MilestoneStage.READY_FOR_DELIVERY, "0.05"),
    ],
)
def test_stage_weights(stage, weight):
    assert stage_weight(stage) == Decimal(weight)


def test_validate_rejects_bad_sum():
    """A catalog that releases more (or less) than the order total fails fast."""
    broken = (replace(STAGE_CATALOG[0], weight=Decimal("0.25")),) + STAGE_CATALOG[1:]
    with pytest.raises(StageCatalogError, match="sum to 1.00"):
        validate_stage_weights(broken)


def test_validate_rejects_missing_stage():
    with pytest.raises(StageCatalogError, match="every stage once"):
        validate_stage_weights(STAGE_CATALOG[:-1])


def test_validate_rejects_non_positive_weight():
    broken = (
        replace(STAGE_CATALOG[0], weight=Decimal("0.25")),
        replace(STAGE_CATALOG[1], weight=Decimal("0")),
        replace(STAGE_CATALOG[2], weight=Decimal("0.30")),
    ) + STAGE_CATALOG[3:]
    with pytest.raises(StageCatalogError, match="positive"):
        validate_stage_weights(broken)


def test_parse_stage_is_case_and_whitespace_tolerant():
    assert parse_stage(" cutting_started ") == MilestoneStage.CUTTING_STARTED


def test_parse_stage_unknown_raises_validation_error():
    with pytest.raises(ValidationError, match="Unknown milestone stage"):
        parse_stage("HEMMING")


def test_only_final_pressing_skips_photo():
    no_photo = [s for s in MilestoneStage if not requires_photo(s)]
    assert no_photo == [MilestoneStage.FINAL_PRESSING]


def test_progress_uses_highest_approved_stage():
    assert calculate_progress([]) == 0
    assert calculate_progress([MilestoneStage.FABRIC_SELECTED]) == 10
    assert calculate_progress([MilestoneStage.FABRIC_SELECTED, MilestoneStage.FITTING_READY]) == 50
    assert calculate_progress(list(MilestoneStage)) == 100


def test_next_stage_is_first_unapproved():
    assert next_stage([]) == MilestoneStage.FABRIC_SELECTED
    assert next_stage([MilestoneStage.FABRIC_SELECTED]) == MilestoneStage.CUTTING_STARTED
    # A gap earlier in the catalog is reported before later stages
    assert next_stage([MilestoneStage.CUTTING_STARTED]) == MilestoneStage.FABRIC_SELECTED
    assert next_stage(list(MilestoneStage)) is None
