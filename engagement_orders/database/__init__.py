"""Database models, connection management and order storage."""
from engagement_orders.database.connection import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from engagement_orders.database.models import Base, Order, OrderEvent, SweepLease
from engagement_orders.database.order_store import OrderStore

__all__ = [
    "Base",
    "Order",
    "OrderEvent",
    "OrderStore",
    "SweepLease",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
