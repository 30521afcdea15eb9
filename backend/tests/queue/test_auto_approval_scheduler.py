"""Tests for AutoApprovalScheduler: overdue sweep, deadline warnings, requeue pass."""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from milestone_engine.domain.approval import SYSTEM_ACTOR_ID, ApprovalStatus
from milestone_engine.domain.escrow import ReleaseReason
from milestone_engine.queue.worker import drain_release_queue
from milestone_engine.services.milestone_store import MilestoneStore
from milestone_engine.services.notifications import OUTBOUND_QUEUE_KEY

pytestmark = pytest.mark.integration

PHOTO = "https://cdn.sew4mi.test/milestones/fit.jpg"
CUSTOMER_ID = "customer-ama"
TAILOR_ID = "tailor-kofi"


async def _submit(milestone_service, order, t0, stage="FITTING_READY"):
    return await milestone_service.submit_milestone(order.id, stage, PHOTO, "", TAILOR_ID, now=t0)


async def _warnings(redis_client) -> list[dict]:
    raw = await redis_client.lrange(OUTBOUND_QUEUE_KEY, 0, -1)
    return [n for n in (json.loads(r) for r in reversed(raw)) if n["type"] == "milestone.deadline_warning"]


# ---------------------------------------------------------------------------
# Overdue sweep
# ---------------------------------------------------------------------------


async def test_overdue_milestone_is_auto_approved_and_released(
    scheduler, milestone_service, processor, release_queue, order, t0, settlement
):
    """Submitted at T, no customer action, tick at T+49h -> APPROVED by system and one release."""
    milestone = await _submit(milestone_service, order, t0)
    now = t0 + timedelta(hours=49)

    result = await scheduler.tick(now)

    assert result.processed == 1
    assert result.auto_approved == 1
    assert result.approved_milestone_ids == [str(milestone.id)]

    current = await milestone_service.get_milestone_status(order.id, "FITTING_READY")
    assert current.approval_status == ApprovalStatus.APPROVED.value
    assert current.reviewed_by == SYSTEM_ACTOR_ID
    assert current.reviewed_at == now

    assert await drain_release_queue(processor, release_queue) == 1
    assert len(settlement.calls) == 1
    assert settlement.calls[0].amount == Decimal("200.00")


async def test_deadline_boundary(scheduler, milestone_service, order, t0):
    milestone = await _submit(milestone_service, order, t0)
    deadline = milestone.auto_approval_deadline

    before = await scheduler.tick(deadline - timedelta(seconds=1))
    assert before.processed == 0

    after = await scheduler.tick(deadline + timedelta(seconds=1))
    assert after.auto_approved == 1


async def test_customer_approval_wins_over_sweep(scheduler, milestone_service, order, t0):
    await _submit(milestone_service, order, t0)
    await milestone_service.approve_milestone(order.id, "FITTING_READY", CUSTOMER_ID, now=t0 + timedelta(hours=47))

    result = await scheduler.tick(t0 + timedelta(hours=49))

    assert result.processed == 0
    current = await milestone_service.get_milestone_status(order.id, "FITTING_READY")
    assert current.reviewed_by == CUSTOMER_ID


async def test_per_milestone_failure_is_recorded(scheduler, milestone_service, make_order, t0, monkeypatch):
    first = await _submit(milestone_service, await make_order(), t0)
    await _submit(milestone_service, await make_order(), t0)

    original = milestone_service.auto_approve

    async def _flaky(milestone_id, now=None):
        if milestone_id == first.id:
            raise RuntimeError("deadlock detected")
        return await original(milestone_id, now=now)

    monkeypatch.setattr(milestone_service, "auto_approve", _flaky)

    result = await scheduler.tick(t0 + timedelta(hours=49))

    assert result.processed == 2
    assert result.auto_approved == 1
    assert result.failed == 1
    assert result.errors == [{"milestone_id": str(first.id), "error": "deadlock detected"}]


async def test_sweep_respects_batch_size(scheduler, milestone_service, make_order, t0, settings):
    settings.sweep_batch_size = 2
    for _ in range(3):
        await _submit(milestone_service, await make_order(), t0)

    first = await scheduler.tick(t0 + timedelta(hours=49))
    second = await scheduler.tick(t0 + timedelta(hours=49, minutes=5))

    assert (first.auto_approved, second.auto_approved) == (2, 1)


# ---------------------------------------------------------------------------
# Deadline warnings
# ---------------------------------------------------------------------------


async def test_each_warning_sent_once(scheduler, milestone_service, order, t0, redis_client):
    await _submit(milestone_service, order, t0)

    assert (await scheduler.tick(t0 + timedelta(hours=12))).warnings_sent == 0
    assert (await scheduler.tick(t0 + timedelta(hours=24, minutes=1))).warnings_sent == 1
    assert (await scheduler.tick(t0 + timedelta(hours=24, minutes=6))).warnings_sent == 0
    assert (await scheduler.tick(t0 + timedelta(hours=42, minutes=1))).warnings_sent == 1
    assert (await scheduler.tick(t0 + timedelta(hours=45))).warnings_sent == 0

    warnings = await _warnings(redis_client)
    assert [w["payload"]["threshold_hours"] for w in warnings] == [24, 6]
    assert all(w["recipient_id"] == CUSTOMER_ID for w in warnings)


async def test_late_first_observation_sends_only_tightest(scheduler, milestone_service, order, t0, redis_client, session_factory):
    milestone = await _submit(milestone_service, order, t0)

    result = await scheduler.tick(t0 + timedelta(hours=43))

    assert result.warnings_sent == 1
    warnings = await _warnings(redis_client)
    assert len(warnings) == 1
    assert warnings[0]["payload"]["threshold_hours"] == 6
    assert warnings[0]["payload"]["hours_remaining"] == 5
    assert "5 hours" in warnings[0]["message"]

    async with session_factory() as session:
        stored = await MilestoneStore(session).get_by_id(milestone.id)
    assert sorted(stored.warnings_sent) == [6, 24]

    assert (await scheduler.tick(t0 + timedelta(hours=44))).warnings_sent == 0


async def test_warned_backlog_does_not_starve_later_milestones(
    scheduler, milestone_service, make_order, t0, redis_client, settings
):
    """Batch smaller than the set of already-warned milestones still sitting in the window."""
    settings.sweep_batch_size = 2
    early = [await _submit(milestone_service, await make_order(), t0) for _ in range(2)]
    late = await _submit(milestone_service, await make_order(), t0 + timedelta(hours=2))

    sent = [
        (await scheduler.tick(t0 + timedelta(hours=hour, minutes=1))).warnings_sent
        for hour in range(24, 42)
    ]

    assert sent[0] == 2
    assert sent[2] == 1
    assert sum(sent) == 3

    warnings = await _warnings(redis_client)
    assert sorted(w["payload"]["milestone_id"] for w in warnings) == sorted(str(m.id) for m in [*early, late])
    assert {w["payload"]["threshold_hours"] for w in warnings} == {24}


async def test_no_warning_after_deadline(scheduler, milestone_service, order, t0, redis_client):
    await _submit(milestone_service, order, t0)

    await scheduler.tick(t0 + timedelta(hours=49))

    assert await _warnings(redis_client) == []


async def test_resubmission_resets_warnings(scheduler, milestone_service, order, t0, redis_client):
    await _submit(milestone_service, order, t0)
    await scheduler.tick(t0 + timedelta(hours=30))
    await milestone_service.reject_milestone(order.id, "FITTING_READY", CUSTOMER_ID, "Sleeves too long", now=t0 + timedelta(hours=31))

    resubmitted_at = t0 + timedelta(hours=40)
    await _submit(milestone_service, order, resubmitted_at)
    result = await scheduler.tick(resubmitted_at + timedelta(hours=25))

    assert result.warnings_sent == 1
    assert [w["payload"]["threshold_hours"] for w in await _warnings(redis_client)] == [24, 24]


# ---------------------------------------------------------------------------
# Unreleased approvals
# ---------------------------------------------------------------------------


async def test_requeues_approved_without_escrow_row(scheduler, milestone_service, release_queue, order, t0):
    """A release job lost after approval is recovered on the next tick."""
    milestone = await _submit(milestone_service, order, t0)
    await milestone_service.approve_milestone(order.id, "FITTING_READY", CUSTOMER_ID, now=t0 + timedelta(hours=1))
    await release_queue.dequeue()

    result = await scheduler.tick(t0 + timedelta(hours=2))

    assert result.releases_enqueued == 1
    job = await release_queue.dequeue()
    assert job.milestone_id == milestone.id
    assert job.reason == ReleaseReason.MANUAL_APPROVAL


async def test_requeue_keeps_auto_approval_reason(scheduler, milestone_service, release_queue, order, t0):
    milestone = await _submit(milestone_service, order, t0)
    await milestone_service.auto_approve(milestone.id, now=t0 + timedelta(hours=49))
    await release_queue.dequeue()

    await scheduler.tick(t0 + timedelta(hours=50))

    job = await release_queue.dequeue()
    assert job.reason == ReleaseReason.AUTO_APPROVAL


async def test_requeue_skips_released_and_queued(scheduler, milestone_service, processor, release_queue, order, t0):
    await _submit(milestone_service, order, t0)
    await milestone_service.approve_milestone(order.id, "FITTING_READY", CUSTOMER_ID, now=t0)
    await _submit(milestone_service, order, t0, stage="FABRIC_SELECTED")
    await milestone_service.approve_milestone(order.id, "FABRIC_SELECTED", CUSTOMER_ID, now=t0)

    # release the first job only; the second stays queued
    assert await drain_release_queue(processor, release_queue, max_jobs=1) == 1

    result = await scheduler.tick(t0 + timedelta(hours=1))

    assert result.releases_enqueued == 0
    assert await release_queue.get_length() == 1


# ---------------------------------------------------------------------------
# Health and run loop
# ---------------------------------------------------------------------------


async def test_health_reports_backlog(scheduler, milestone_service, order, t0):
    await _submit(milestone_service, order, t0)

    fresh = await scheduler.health(now=t0 + timedelta(hours=1))
    assert fresh["healthy"] is True
    assert (fresh["pending"], fresh["overdue"]) == (1, 0)
    assert fresh["last_tick_at"] is None

    stalled = await scheduler.health(now=t0 + timedelta(hours=49))
    assert stalled["healthy"] is False
    assert stalled["overdue"] == 1
    assert stalled["oldest_overdue_deadline"] is not None

    await scheduler.tick(t0 + timedelta(hours=49))
    recovered = await scheduler.health(now=t0 + timedelta(hours=49))
    assert recovered["healthy"] is True
    assert recovered["overdue"] == 0
    assert recovered["queued_releases"] == 1


async def test_run_ticks_until_stopped(scheduler):
    stop = asyncio.Event()
    task = asyncio.create_task(scheduler.run(stop))

    for _ in range(100):
        if scheduler.last_tick_at is not None:
            break
        await asyncio.sleep(0.02)

    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert scheduler.last_tick_at is not None
    assert scheduler.last_result is not None
