"""Core order reconciliation logic."""
from engagement_orders.core.exceptions import (
    InvalidTransitionError,
    OrderError,
    OrderNotFoundError,
    ReconciliationConflict,
    ValidationError,
)
from engagement_orders.core.state_machine import OrderStatus, PaymentStatusCode

__all__ = [
    "InvalidTransitionError",
    "OrderError",
    "OrderNotFoundError",
    "OrderStatus",
    "PaymentStatusCode",
    "ReconciliationConflict",
    "ValidationError",
]
