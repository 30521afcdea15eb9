"""Shared test fixtures for all test groups.

Storage tests run against a throwaway SQLite file (aiosqlite) so the
conditional updates and the partial unique index are exercised for real.
Redis is fakeredis.
"""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from milestone_engine.core.config import Settings
from milestone_engine.db.base import Base, build_engine
from milestone_engine.db.models.order import Order
from milestone_engine.integrations.settlement import InMemorySettlementBackend
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.scheduler import AutoApprovalScheduler
from milestone_engine.services.escrow_release import EscrowReleaseProcessor
from milestone_engine.services.milestone_service import MilestoneService
from milestone_engine.services.notifications import NotificationFanout

CUSTOMER_ID = "customer-ama"
TAILOR_ID = "tailor-kofi"


@pytest.fixture
def t0() -> datetime:
    """Fixed submission time used across tests."""
    return datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379",
        auto_approval_window_hours=48,
        warning_thresholds_hours=[24, 6],
        scheduler_enabled=False,
        sweep_batch_size=50,
        settlement_timeout_seconds=0.5,
        cron_secret="cron-test-secret",
    )


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'milestones.db'}")

    import milestone_engine.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_order(session_factory, t0):
    """Factory inserting an order row (orders are owned upstream; tests seed them directly)."""

    async def _make(
        total: str = "1000.00",
        status: str = "IN_PROGRESS",
        customer_id: str = CUSTOMER_ID,
        tailor_id: str = TAILOR_ID,
    ) -> Order:
        order = Order(
            id=uuid.uuid4(),
            customer_id=customer_id,
            tailor_id=tailor_id,
            total_amount=Decimal(total),
            status=status,
            created_at=t0 - timedelta(days=3),
        )
        async with session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _make


@pytest.fixture
async def order(make_order) -> Order:
    return await make_order()


@pytest.fixture
def release_queue(redis_client) -> ReleaseQueue:
    return ReleaseQueue(redis_client)


@pytest.fixture
async def fanout(redis_client) -> NotificationFanout:
    fanout = NotificationFanout(redis_client)
    yield fanout
    await fanout.drain()


@pytest.fixture
def milestone_service(session_factory, release_queue, fanout, settings) -> MilestoneService:
    return MilestoneService(session_factory, release_queue, fanout, settings)


@pytest.fixture
def settlement() -> InMemorySettlementBackend:
    return InMemorySettlementBackend()


@pytest.fixture
def processor(session_factory, settlement, fanout, settings) -> EscrowReleaseProcessor:
    return EscrowReleaseProcessor(session_factory, settlement, fanout, settings)


@pytest.fixture
def scheduler(session_factory, milestone_service, fanout, release_queue, settings, processor) -> AutoApprovalScheduler:
    return AutoApprovalScheduler(
        session_factory,
        milestone_service,
        fanout,
        release_queue,
        settings,
        processor=processor,
    )
