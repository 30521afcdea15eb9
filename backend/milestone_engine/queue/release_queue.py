"""ReleaseQueue: Redis sorted set of milestones awaiting escrow release."""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from redis.asyncio import Redis

from milestone_engine.domain.escrow import ReleaseReason


@dataclass(frozen=True)
class ReleaseJob:
    milestone_id: uuid.UUID
    reason: ReleaseReason


class ReleaseQueue:
    """FIFO of release jobs keyed by milestone id.

    Score = enqueue timestamp, so older approvals are released first.
    ZADD NX collapses duplicate enqueues of the same milestone (approval
    racing the sweep, or the unreleased-approval pass re-enqueueing).
    Duplicates that slip past the queue are still caught by the release
    processor's idempotency guard.
    """

    QUEUE_KEY = "queue:releases"
    REASONS_KEY = "queue:releases:reasons"

    def __init__(self, redis: Redis):
        self.redis = redis

    async def enqueue(
        self,
        milestone_id: uuid.UUID,
        reason: ReleaseReason,
        now: datetime | None = None,
    ) -> bool:
        """Add a release job.

        Returns:
            True if newly queued, False if the milestone was already waiting
        """
        now = now or datetime.now(UTC)
        member = str(milestone_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.QUEUE_KEY, {member: now.timestamp()}, nx=True)
            pipe.hsetnx(self.REASONS_KEY, member, reason.value)
            added, _ = await pipe.execute()
        return bool(added)

    async def dequeue(self) -> ReleaseJob | None:
        """Remove and return the oldest job, or None if the queue is empty."""
        result = await self.redis.zpopmin(self.QUEUE_KEY, count=1)
        if not result:
            return None

        member, _score = result[0]
        reason = await self.redis.hget(self.REASONS_KEY, member)
        await self.redis.hdel(self.REASONS_KEY, member)
        return ReleaseJob(
            milestone_id=uuid.UUID(member),
            reason=ReleaseReason(reason) if reason else ReleaseReason.MANUAL_APPROVAL,
        )

    async def get_length(self) -> int:
        return await self.redis.zcard(self.QUEUE_KEY)

    async def contains(self, milestone_id: uuid.UUID) -> bool:
        return await self.redis.zscore(self.QUEUE_KEY, str(milestone_id)) is not None
