class MilestoneEngineError(Exception):
    """Base exception for the milestone engine."""

    pass


class InvalidTransition(MilestoneEngineError):
    """Raised when the milestone's current state does not allow the requested action."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class NotPending(InvalidTransition):
    """Raised when approve/reject/timeout targets a milestone that is no longer PENDING."""

    def __init__(self, current_status: str | None):
        super().__init__(f"Milestone is not pending review (status: {current_status})", current_status)


class DeadlineNotReached(InvalidTransition):
    """Raised when a timeout is applied before the auto-approval deadline."""

    def __init__(self, deadline: str):
        self.deadline = deadline
        super().__init__(f"Auto-approval deadline not reached ({deadline})", "PENDING")


class ValidationError(MilestoneEngineError):
    """Raised for malformed input: unknown stage, empty rejection reason, missing photo."""

    pass


class MilestoneNotFound(MilestoneEngineError):
    """Raised when no milestone exists for the requested order and stage."""

    pass


class OrderNotFound(MilestoneEngineError):
    """Raised when the referenced order does not exist."""

    pass


class OrderNotActive(MilestoneEngineError):
    """Raised when an order is outside the active production statuses."""

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is not in production (status: {status})")


class NotApproved(MilestoneEngineError):
    """Raised when a release is requested for a milestone that is not APPROVED."""

    pass


class InvalidAmount(MilestoneEngineError):
    """Raised when a computed release amount is not positive (configuration error)."""

    pass


class StageCatalogError(MilestoneEngineError):
    """Raised at startup when the stage weight table is inconsistent."""

    pass


class ConcurrencyConflict(MilestoneEngineError):
    """Raised when a conditional update affected zero rows because another actor won."""

    pass


class SettlementError(MilestoneEngineError):
    """Base class for settlement backend failures."""

    pass


class SettlementTransient(SettlementError):
    """Raised on network errors, timeouts and 5xx responses. Outcome is unknown."""

    pass


class SettlementRejected(SettlementError):
    """Raised when the settlement backend definitively refuses the payout."""

    def __init__(self, reason: str, transaction_id: str | None = None):
        self.reason = reason
        self.transaction_id = transaction_id
        super().__init__(f"Settlement rejected: {reason}")
