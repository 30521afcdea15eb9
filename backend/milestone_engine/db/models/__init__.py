"""Re-export all models so Base.metadata sees them."""

from milestone_engine.db.models.escrow_transaction import EscrowTransaction
from milestone_engine.db.models.milestone import Milestone
from milestone_engine.db.models.milestone_approval import MilestoneApproval
from milestone_engine.db.models.order import Order

__all__ = [
    "EscrowTransaction",
    "Milestone",
    "MilestoneApproval",
    "Order",
]
