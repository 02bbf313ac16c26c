"""SQLAlchemy database models for order reconciliation."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from engagement_orders.core.state_machine import OrderStatus

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in OrderStatus)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Engagement order records table.

    One row per paid engagement order. The merchant reference is the
    caller-generated idempotency token and the correlation key with Pesapal.
    Status-bearing columns are only written through the reconciliation engine.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_reference: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    gateway_tracking_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    service_name: Mapped[str] = mapped_column(String(100), nullable=False)
    quality: Mapped[str] = mapped_column(String(20), nullable=False)
    target_link: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    description: Mapped[str | None] = mapped_column(String(100), nullable=True)
    callback_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OrderStatus.PENDING_PAYMENT.value, index=True
    )
    payment_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    registration_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    supplier_service_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    supplier_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    supplier_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    supplier_remains: Mapped[int | None] = mapped_column(Integer, nullable=True)
    supplier_charge: Mapped[str | None] = mapped_column(String(32), nullable=True)
    supplier_start_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    supplier_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submission_token: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    submission_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="valid_order_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_user_created", "user_ref", "created_at"),
        Index("idx_orders_status_reconciled", "status", "last_reconciled_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, ref={self.merchant_reference}, "
            f"status={self.status}, supplier_order_id={self.supplier_order_id})>"
        )


class OrderEvent(Base):
    """
    Order events audit trail table.

    One row per status transition or notable reconciliation event,
    written in the same transaction as the change. Immutable once written.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        Index("idx_order_events_order_created", "order_id", "created_at"),
        Index("idx_order_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of OrderEvent."""
        return (
            f"<OrderEvent(id={self.id}, order_id={self.order_id}, "
            f"type={self.event_type}, {self.from_status}->{self.to_status})>"
        )


class SweepLease(Base):
    """
    Named lease rows used to keep reconciliation sweeps non-overlapping
    across service instances.
    """

    __tablename__ = "sweep_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation of SweepLease."""
        return f"<SweepLease(name={self.name}, holder={self.holder}, expires_at={self.expires_at})>"
