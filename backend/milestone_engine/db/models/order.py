"""Order model: owned by the order service, read only to this engine."""

import uuid

from sqlalchemy import Column, Numeric, String, Uuid

from milestone_engine.db.base import Base
from milestone_engine.db.types import UTCDateTime, utcnow

# Statuses in which the tailor is producing the garment and may submit milestones
ACTIVE_PRODUCTION_STATUSES = frozenset({
    "DEPOSIT_PAID",
    "ACCEPTED",
    "MEASUREMENT_CONFIRMED",
    "FABRIC_SOURCED",
    "CUTTING_STARTED",
    "SEWING_IN_PROGRESS",
    "FITTING_SCHEDULED",
    "FITTING_COMPLETED",
    "ADJUSTMENTS_IN_PROGRESS",
    "FINAL_INSPECTION",
    "IN_PROGRESS",
})


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String(255), nullable=False, index=True)
    tailor_id = Column(String(255), nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(50), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    @property
    def is_in_production(self) -> bool:
        return self.status in ACTIVE_PRODUCTION_STATUSES
