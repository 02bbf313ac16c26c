"""
Order lifecycle state machine.

    PendingPayment ──► Processing ──► Completed
         │    │  │         ▲   └────► PartiallyCompleted
         │    │  │         │ (retry)
         │    │  └──► SupplierError
         │    └──► PaymentFailed / Cancelled
         └──► Expired

Terminal states are never left and are excluded from polling.
"""
from enum import Enum
from typing import Dict, FrozenSet


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING_PAYMENT = "PendingPayment"
    PAYMENT_FAILED = "PaymentFailed"
    PROCESSING = "Processing"
    SUPPLIER_ERROR = "SupplierError"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class PaymentStatusCode(str, Enum):
    """Normalized gateway payment status vocabulary."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    INVALID = "INVALID"
    REVERSED = "REVERSED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.PARTIALLY_COMPLETED,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    }
)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.PAYMENT_FAILED,
            OrderStatus.CANCELLED,
            OrderStatus.SUPPLIER_ERROR,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.PARTIALLY_COMPLETED}
    ),
    OrderStatus.SUPPLIER_ERROR: frozenset({OrderStatus.PROCESSING}),
}

# Manual correction targets, reachable from any non-terminal state
ADMIN_TARGETS: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.SUPPLIER_ERROR,
    }
)

# Supplier status vocabulary
SUPPLIER_COMPLETED = frozenset({"completed"})
SUPPLIER_PARTIAL = frozenset({"partial", "canceled", "cancelled"})
SUPPLIER_IN_PROGRESS = frozenset({"pending", "in progress", "processing"})

# Orders the client dashboard counts as "active"
ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PROCESSING, OrderStatus.SUPPLIER_ERROR}
)


def is_terminal(status: OrderStatus | str) -> bool:
    """Check whether a status can never change again."""
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    """Check whether an engine-driven transition is defined."""
    return OrderStatus(target) in TRANSITIONS.get(OrderStatus(current), frozenset())


def can_force(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    """Check whether an admin correction is allowed."""
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current in TERMINAL_STATUSES or current == target:
        return False
    return target in ADMIN_TARGETS or can_transition(current, target)


def normalize_payment_status(raw_status: str | None) -> PaymentStatusCode:
    """
    Map a raw gateway status string onto the normalized vocabulary.

    Anything unrecognized becomes UNKNOWN so callers never guess.
    """
    if not raw_status:
        return PaymentStatusCode.UNKNOWN
    try:
        return PaymentStatusCode(raw_status.strip().upper())
    except ValueError:
        return PaymentStatusCode.UNKNOWN
