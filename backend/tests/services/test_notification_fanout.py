"""Tests for notification fan-out: recipient rules, rendering, best-effort delivery."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from tenacity import wait_none

from milestone_engine.services import notifications
from milestone_engine.services.notifications import (
    CHANGE_FEED_CHANNEL,
    OUTBOUND_QUEUE_KEY,
    MilestoneEvent,
    MilestoneEventType,
    NotificationFanout,
    build_notification,
    recipients_for,
)

pytestmark = pytest.mark.unit

CUSTOMER_ID = "customer-ama"
TAILOR_ID = "tailor-kofi"


def _event(event_type: MilestoneEventType, actor_id: str | None = None, **payload) -> MilestoneEvent:
    return MilestoneEvent(
        type=event_type,
        order_id="order-1",
        milestone_id="milestone-1",
        stage="CUTTING_STARTED",
        customer_id=CUSTOMER_ID,
        tailor_id=TAILOR_ID,
        actor_id=actor_id,
        payload=payload,
    )


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Disable tenacity backoff so retry tests run instantly."""
    monkeypatch.setattr(notifications._deliver.retry, "wait", wait_none())


@pytest.mark.parametrize(
    "event_type,actor_id,expected",
    [
        (MilestoneEventType.SUBMITTED, TAILOR_ID, [CUSTOMER_ID]),
        (MilestoneEventType.APPROVED, CUSTOMER_ID, [TAILOR_ID]),
        (MilestoneEventType.AUTO_APPROVED, None, [CUSTOMER_ID, TAILOR_ID]),
        (MilestoneEventType.REJECTED, CUSTOMER_ID, [TAILOR_ID]),
        (MilestoneEventType.DEADLINE_WARNING, None, [CUSTOMER_ID]),
        (MilestoneEventType.FUNDS_RELEASED, None, [TAILOR_ID]),
    ],
)
def test_recipient_rules(event_type, actor_id, expected):
    assert recipients_for(_event(event_type, actor_id)) == expected


def test_actor_never_notified_even_if_role_matches():
    """A tailor who is also the customer on their own order gets nothing for their own action."""
    event = MilestoneEvent(
        type=MilestoneEventType.AUTO_APPROVED,
        order_id="o",
        milestone_id="m",
        stage="FABRIC_SELECTED",
        customer_id="same-user",
        tailor_id="same-user",
        actor_id="same-user",
    )
    assert recipients_for(event) == []


def test_same_user_in_both_roles_notified_once():
    event = MilestoneEvent(
        type=MilestoneEventType.AUTO_APPROVED,
        order_id="o",
        milestone_id="m",
        stage="FABRIC_SELECTED",
        customer_id="same-user",
        tailor_id="same-user",
    )
    assert recipients_for(event) == ["same-user"]


def test_funds_released_message_formats_cedis():
    notification = build_notification(_event(MilestoneEventType.FUNDS_RELEASED, amount="1500"), TAILOR_ID)
    assert notification.title == "Milestone Payment Released"
    assert "GH₵1,500.00" in notification.message
    assert notification.payload["order_id"] == "order-1"
    assert notification.payload["amount"] == "1500"


def test_deadline_warning_mentions_hours_remaining():
    notification = build_notification(_event(MilestoneEventType.DEADLINE_WARNING, hours_remaining=6), CUSTOMER_ID)
    assert "6 hours" in notification.message
    assert '"cutting started"' in notification.message


def test_auto_approved_message_differs_by_role():
    event = _event(MilestoneEventType.AUTO_APPROVED)
    assert "payment is being released" in build_notification(event, TAILOR_ID).message
    assert "review window closed" in build_notification(event, CUSTOMER_ID).message


async def test_dispatch_publishes_change_feed_and_user_channels(redis_client):
    fanout = NotificationFanout(redis_client)
    redis_client.publish = AsyncMock(return_value=1)

    delivered = await fanout.dispatch(_event(MilestoneEventType.SUBMITTED, TAILOR_ID))

    assert [n.recipient_id for n in delivered] == [CUSTOMER_ID]
    channels = [c.args[0] for c in redis_client.publish.call_args_list]
    assert channels == [CHANGE_FEED_CHANNEL.format(order_id="order-1"), f"notifications:{CUSTOMER_ID}"]

    feed = json.loads(redis_client.publish.call_args_list[0].args[1])
    assert feed["type"] == "milestone.submitted"
    assert feed["actor_id"] == TAILOR_ID

    queued = await redis_client.lrange(OUTBOUND_QUEUE_KEY, 0, -1)
    assert len(queued) == 1
    assert json.loads(queued[0])["recipient_id"] == CUSTOMER_ID


async def test_dispatch_never_raises_on_redis_failure():
    """Fan-out errors never propagate into the state change that produced the event."""
    redis = AsyncMock()
    redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
    redis.lpush = AsyncMock(side_effect=RedisConnectionError("down"))

    delivered = await NotificationFanout(redis).dispatch(_event(MilestoneEventType.AUTO_APPROVED))

    assert delivered == []
    # change feed once, then 3 attempts per recipient
    assert redis.publish.call_count == 1 + 3 * 2


async def test_delivery_retries_transient_errors():
    redis = AsyncMock()
    redis.publish = AsyncMock(side_effect=[1, RedisConnectionError("blip"), 1])
    redis.lpush = AsyncMock(return_value=1)

    delivered = await NotificationFanout(redis).dispatch(_event(MilestoneEventType.REJECTED, CUSTOMER_ID, reason="x"))

    assert [n.recipient_id for n in delivered] == [TAILOR_ID]
    assert redis.lpush.call_count == 1


async def test_non_transient_delivery_error_is_not_retried():
    redis = AsyncMock()
    redis.publish = AsyncMock(side_effect=[1, ValueError("bad payload")])
    redis.lpush = AsyncMock(return_value=1)

    delivered = await NotificationFanout(redis).dispatch(_event(MilestoneEventType.APPROVED, CUSTOMER_ID))

    assert delivered == []
    assert redis.publish.call_count == 2


async def test_background_dispatch_is_drained():
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    redis.lpush = AsyncMock(return_value=1)
    fanout = NotificationFanout(redis)

    task = fanout.dispatch_in_background(_event(MilestoneEventType.AUTO_APPROVED))
    await fanout.drain()

    assert task.done()
    assert [n.recipient_id for n in task.result()] == [CUSTOMER_ID, TAILOR_ID]
    assert redis.lpush.call_count == 2
