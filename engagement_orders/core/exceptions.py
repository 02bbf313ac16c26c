"""Order processing exceptions raised by the reconciliation engine."""


class OrderError(Exception):
    """Base exception for order processing errors."""

    pass


class ValidationError(OrderError):
    """Raised when an order request is rejected before anything is persisted."""

    pass


class OrderNotFoundError(OrderError):
    """Raised when an order lookup by id or merchant reference finds nothing."""

    pass


class InvalidTransitionError(OrderError):
    """Raised when a requested status change is not allowed by the state machine."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class ReconciliationConflict(OrderError):
    """
    Raised internally when a conditional update loses to a concurrent writer.

    Never surfaced to callers; the engine absorbs it and logs at debug level.
    """

    pass
