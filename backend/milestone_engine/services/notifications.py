"""Notification fan-out for milestone transitions.

Each MilestoneEvent is:
  1. published on the order's change feed (``milestones:{order_id}:events``)
  2. turned into one Notification per recipient role, minus the actor
  3. pushed to the recipient's UI channel (``notifications:{user_id}``) and
     queued on ``notifications:outbound`` for the email/SMS workers

Delivery is best effort. Nothing here may raise into the caller: the state
change or fund release that produced the event has already committed.
"""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

CURRENCY_SYMBOL = "GH₵"

CHANGE_FEED_CHANNEL = "milestones:{order_id}:events"
USER_CHANNEL = "notifications:{user_id}"
OUTBOUND_QUEUE_KEY = "notifications:outbound"


class MilestoneEventType(StrEnum):
    SUBMITTED = "milestone.submitted"
    APPROVED = "milestone.approved"
    AUTO_APPROVED = "milestone.auto_approved"
    REJECTED = "milestone.rejected"
    DEADLINE_WARNING = "milestone.deadline_warning"
    FUNDS_RELEASED = "escrow.funds_released"


class Role(StrEnum):
    CUSTOMER = "customer"
    TAILOR = "tailor"


# Which parties hear about each event. The actor is always removed afterwards.
RECIPIENT_ROLES: dict[MilestoneEventType, tuple[Role, ...]] = {
    MilestoneEventType.SUBMITTED: (Role.CUSTOMER,),
    MilestoneEventType.APPROVED: (Role.TAILOR,),
    MilestoneEventType.AUTO_APPROVED: (Role.CUSTOMER, Role.TAILOR),
    MilestoneEventType.REJECTED: (Role.TAILOR,),
    MilestoneEventType.DEADLINE_WARNING: (Role.CUSTOMER,),
    MilestoneEventType.FUNDS_RELEASED: (Role.TAILOR,),
}


class MilestoneEvent(BaseModel):
    """A milestone transition as seen by downstream subscribers."""

    type: MilestoneEventType
    order_id: str
    milestone_id: str
    stage: str
    customer_id: str
    tailor_id: str
    actor_id: str | None = None  # None for system-initiated events
    payload: dict = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Notification(BaseModel):
    """Transient per-recipient message. Not authoritative state."""

    recipient_id: str
    type: MilestoneEventType
    title: str
    message: str
    payload: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def _stage_label(stage: str) -> str:
    return stage.replace("_", " ").lower()


def _format_amount(amount) -> str:
    return f"{CURRENCY_SYMBOL}{Decimal(str(amount)):,.2f}"


def recipients_for(event: MilestoneEvent) -> list[str]:
    """Recipient user IDs for an event, never including the actor who caused it."""
    by_role = {Role.CUSTOMER: event.customer_id, Role.TAILOR: event.tailor_id}
    recipients: list[str] = []
    for role in RECIPIENT_ROLES[event.type]:
        user_id = by_role[role]
        if not user_id or user_id == event.actor_id or user_id in recipients:
            continue
        recipients.append(user_id)
    return recipients


def build_notification(event: MilestoneEvent, recipient_id: str) -> Notification:
    """Render the title/message a recipient sees for an event."""
    stage = _stage_label(event.stage)
    is_tailor = recipient_id == event.tailor_id

    if event.type == MilestoneEventType.SUBMITTED:
        title = "New Progress Update"
        message = f'Your tailor has submitted the "{stage}" milestone for your review.'
    elif event.type == MilestoneEventType.APPROVED:
        title = "Milestone Approved"
        message = f'The customer approved the "{stage}" milestone. Payment is being released.'
    elif event.type == MilestoneEventType.AUTO_APPROVED:
        title = "Milestone Auto-Approved"
        if is_tailor:
            message = f'Your "{stage}" milestone was automatically approved and payment is being released.'
        else:
            message = f'The "{stage}" milestone was automatically approved after the review window closed.'
    elif event.type == MilestoneEventType.REJECTED:
        title = "Milestone Needs Changes"
        reason = event.payload.get("reason", "")
        message = f'The customer rejected the "{stage}" milestone: {reason}. You can resubmit right away.'
    elif event.type == MilestoneEventType.DEADLINE_WARNING:
        hours = event.payload.get("hours_remaining")
        title = "Milestone Review Reminder"
        message = (
            f'The "{stage}" milestone is waiting for your review. '
            f"It will be auto-approved in {hours} hours if no action is taken."
        )
    else:
        title = "Milestone Payment Released"
        amount = _format_amount(event.payload.get("amount", "0"))
        message = f'Payment of {amount} has been released for the "{stage}" milestone.'

    return Notification(
        recipient_id=recipient_id,
        type=event.type,
        title=title,
        message=message,
        payload={
            "order_id": event.order_id,
            "milestone_id": event.milestone_id,
            "stage": event.stage,
            **event.payload,
        },
        created_at=event.occurred_at,
    )


@retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "notification_delivery_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)
async def _deliver(redis: Redis, notification: Notification) -> None:
    """Push to the recipient's UI channel and queue for email/SMS."""
    body = notification.model_dump_json()
    await redis.publish(USER_CHANNEL.format(user_id=notification.recipient_id), body)
    await redis.lpush(OUTBOUND_QUEUE_KEY, body)


class NotificationFanout:
    """Translates milestone events into per-recipient notifications."""

    def __init__(self, redis: Redis):
        self.redis = redis
        self._pending: set[asyncio.Task] = set()

    def dispatch_in_background(self, event: MilestoneEvent) -> asyncio.Task:
        """Schedule dispatch() without waiting for delivery (request paths use this)."""
        task = asyncio.create_task(self.dispatch(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def dispatch(self, event: MilestoneEvent) -> list[Notification]:
        """Publish the event and deliver notifications. Never raises.

        Returns:
            Notifications that were delivered
        """
        log = logger.bind(event_type=event.type.value, order_id=event.order_id, milestone_id=event.milestone_id)

        try:
            await self.redis.publish(
                CHANGE_FEED_CHANNEL.format(order_id=event.order_id),
                event.model_dump_json(),
            )
        except Exception as exc:
            log.warning("change_feed_publish_failed", error=str(exc), error_type=type(exc).__name__)

        delivered: list[Notification] = []
        for recipient_id in recipients_for(event):
            notification = build_notification(event, recipient_id)
            try:
                await _deliver(self.redis, notification)
            except Exception as exc:
                log.warning(
                    "notification_delivery_failed",
                    recipient_id=recipient_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            delivered.append(notification)

        log.info("milestone_event_dispatched", recipients=len(delivered))
        return delivered

