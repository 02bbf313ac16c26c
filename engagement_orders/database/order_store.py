"""
Transactional order storage.

Every write is a short transaction of its own. Status-bearing writes go
through `conditional_update`, a single UPDATE guarded by the caller's
expected column values, so concurrent writers resolve to exactly one winner
without holding locks across network calls.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagement_orders.core.clock import Clock, utcnow
from engagement_orders.core.state_machine import OrderStatus
from engagement_orders.database.connection import get_session_factory
from engagement_orders.database.models import Order, OrderEvent, SweepLease

logger = structlog.get_logger(__name__)


def _plain(value: Any) -> Any:
    """Unwrap enums so drivers only ever see builtin values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, list, tuple)):
        return [_plain(v) for v in value]
    return value


def _condition(column_name: str, expected: Any) -> Any:
    column = getattr(Order, column_name)
    if expected is None:
        return column.is_(None)
    expected = _plain(expected)
    if isinstance(expected, list):
        return column.in_(expected)
    return column == expected


class OrderStore:
    """
    CRUD over Order rows keyed by id and merchant reference.

    Only the reconciliation engine calls the mutating methods.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize order store.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            clock: Optional time source for audit timestamps
        """
        self._session_factory = session_factory
        self._clock = clock or utcnow

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory, resolved lazily."""
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def _event(
        order_id: uuid.UUID,
        event_type: str,
        from_status: Optional[str],
        to_status: Optional[str],
        event_data: Optional[Dict[str, Any]],
        correlation_id: Optional[uuid.UUID],
        created_at: datetime,
    ) -> OrderEvent:
        return OrderEvent(
            order_id=order_id,
            event_type=event_type,
            from_status=_plain(from_status),
            to_status=_plain(to_status),
            event_data=event_data or {},
            correlation_id=correlation_id,
            created_at=created_at,
        )

    async def insert(
        self, fields: Mapping[str, Any], correlation_id: Optional[uuid.UUID] = None
    ) -> Optional[Order]:
        """
        Insert a new order.

        Args:
            fields: Column values for the new order
            correlation_id: Correlation ID recorded on the creation event

        Returns:
            Optional[Order]: The new order, or None if the merchant reference already exists
        """
        now = self._clock()
        order = Order(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            **{k: _plain(v) for k, v in fields.items()},
        )
        async with self.session_factory() as db:
            db.add(order)
            try:
                await db.flush()
                db.add(
                    self._event(
                        order.id,
                        "order.created",
                        None,
                        order.status,
                        {"quantity": order.quantity, "amount": str(order.amount)},
                        correlation_id,
                        now,
                    )
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info(
                    "order_insert_duplicate_reference",
                    merchant_reference=fields.get("merchant_reference"),
                )
                return None
        return order

    async def get(self, order_id: uuid.UUID | str) -> Optional[Order]:
        """Fetch an order by id."""
        async with self.session_factory() as db:
            return await db.get(Order, uuid.UUID(str(order_id)))

    async def get_by_reference(self, merchant_reference: str) -> Optional[Order]:
        """Fetch an order by merchant reference."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order).where(Order.merchant_reference == merchant_reference)
            )
            return result.scalar_one_or_none()

    async def list_for_user(
        self, user_ref: str, page: int = 1, limit: int = 10
    ) -> Tuple[List[Order], int]:
        """List a user's orders, newest first."""
        return await self._paginate(Order.user_ref == user_ref, page, limit)

    async def list_all(
        self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 25
    ) -> Tuple[List[Order], int]:
        """List all orders, optionally filtered by status, newest first."""
        criterion = Order.status == _plain(status) if status is not None else None
        return await self._paginate(criterion, page, limit)

    async def _paginate(
        self, criterion: Any, page: int, limit: int
    ) -> Tuple[List[Order], int]:
        stmt = select(Order)
        count_stmt = select(func.count(Order.id))
        if criterion is not None:
            stmt = stmt.where(criterion)
            count_stmt = count_stmt.where(criterion)
        stmt = stmt.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit)

        async with self.session_factory() as db:
            orders = list((await db.execute(stmt)).scalars().all())
            total = (await db.execute(count_stmt)).scalar_one()
        return orders, int(total)

    async def count_by_status(self, user_ref: str) -> Dict[str, int]:
        """Count a user's orders grouped by status."""
        stmt = (
            select(Order.status, func.count(Order.id))
            .where(Order.user_ref == user_ref)
            .group_by(Order.status)
        )
        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return {status: int(count) for status, count in rows}

    async def conditional_update(
        self,
        order_id: uuid.UUID,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
        event_type: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
        from_status: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Apply `values` only if every column in `expected` still holds its value.

        `expected` values may be None (IS NULL), a scalar (equality) or a
        collection (IN). When `event_type` is given, an audit event is written
        in the same transaction; for status changes `from_status` defaults to
        the expected status.

        Returns:
            Optional[Order]: The updated order, or None if another writer got there first
        """
        now = self._clock()
        conditions = [Order.id == order_id]
        conditions.extend(_condition(name, value) for name, value in expected.items())
        plain_values = {k: _plain(v) for k, v in values.items()}
        plain_values.setdefault("updated_at", now)

        async with self.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(and_(*conditions))
                .values(**plain_values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None

            if event_type is not None:
                if from_status is None and "status" in plain_values:
                    from_status = expected.get("status")
                    if isinstance(from_status, (set, frozenset, list, tuple)):
                        from_status = None
                db.add(
                    self._event(
                        order_id,
                        event_type,
                        from_status,
                        plain_values.get("status"),
                        event_data,
                        correlation_id,
                        now,
                    )
                )
            await db.commit()

            refreshed = await db.execute(
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            return refreshed.scalar_one()

    async def record_event(
        self,
        order_id: uuid.UUID,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Append an audit event that does not change status."""
        async with self.session_factory() as db:
            db.add(
                self._event(
                    order_id, event_type, None, None, event_data, correlation_id, self._clock()
                )
            )
            await db.commit()

    async def list_events(self, order_id: uuid.UUID) -> List[OrderEvent]:
        """Audit trail for an order, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(OrderEvent)
                .where(OrderEvent.order_id == order_id)
                .order_by(OrderEvent.id)
            )
            return list(result.scalars().all())

    async def select_for_sweep(
        self,
        processing_cutoff: datetime,
        pending_cutoff: datetime,
        supplier_max_retries: int,
        limit: int,
        claim_cutoff: Optional[datetime] = None,
    ) -> List[Order]:
        """
        Select orders that need a status refresh.

        - Processing orders not reconciled since `processing_cutoff`
        - Unclaimed PendingPayment orders created before `pending_cutoff`
        - SupplierError orders with retries left and a known outcome
        - Submission claims taken before `claim_cutoff` and never recorded
        """
        processing = and_(
            Order.status == OrderStatus.PROCESSING.value,
            Order.supplier_order_id.is_not(None),
            or_(
                Order.last_reconciled_at.is_(None),
                Order.last_reconciled_at < processing_cutoff,
            ),
        )
        pending = and_(
            Order.status == OrderStatus.PENDING_PAYMENT.value,
            Order.submission_token.is_(None),
            Order.created_at < pending_cutoff,
        )
        retryable = and_(
            Order.status == OrderStatus.SUPPLIER_ERROR.value,
            Order.supplier_order_id.is_(None),
            Order.submission_token.is_(None),
            Order.supplier_attempts < supplier_max_retries,
            or_(Order.supplier_status.is_(None), Order.supplier_status != "Unknown"),
        )
        criteria = [processing, pending, retryable]
        if claim_cutoff is not None:
            criteria.append(
                and_(
                    Order.status.in_(
                        [OrderStatus.PENDING_PAYMENT.value, OrderStatus.SUPPLIER_ERROR.value]
                    ),
                    Order.supplier_order_id.is_(None),
                    Order.submission_token.is_not(None),
                    or_(
                        Order.submission_claimed_at.is_(None),
                        Order.submission_claimed_at < claim_cutoff,
                    ),
                )
            )
        stmt = (
            select(Order)
            .where(or_(*criteria))
            .order_by(
                Order.last_reconciled_at.is_not(None),
                Order.last_reconciled_at,
                Order.created_at,
            )
            .limit(limit)
        )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def acquire_lease(
        self, name: str, holder: str, expires_at: datetime
    ) -> bool:
        """Take a named lease if it is free, expired or already ours."""
        now = self._clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SweepLease)
                .where(
                    SweepLease.name == name,
                    or_(
                        SweepLease.holder.is_(None),
                        SweepLease.holder == holder,
                        SweepLease.expires_at < now,
                    ),
                )
                .values(holder=holder, expires_at=expires_at)
            )
            if result.rowcount == 1:
                await db.commit()
                return True
            await db.rollback()

        async with self.session_factory() as db:
            if await db.get(SweepLease, name) is not None:
                return False
            db.add(SweepLease(name=name, holder=holder, expires_at=expires_at))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def release_lease(self, name: str, holder: str) -> None:
        """Release a lease held by `holder`."""
        async with self.session_factory() as db:
            await db.execute(
                update(SweepLease)
                .where(SweepLease.name == name, SweepLease.holder == holder)
                .values(holder=None, expires_at=None)
            )
            await db.commit()
