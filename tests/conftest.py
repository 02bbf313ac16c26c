"""
Pytest configuration and fixtures.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from engagement_orders.config import Settings
from engagement_orders.core.reconciliation import OrderRequest, ReconciliationEngine
from engagement_orders.core.service_catalog import ServiceCatalog
from engagement_orders.core.state_machine import PaymentStatusCode
from engagement_orders.database.connection import build_session_factory, init_db
from engagement_orders.database.order_store import OrderStore
from engagement_orders.integrations.pesapal_client import GatewayError
from engagement_orders.integrations.results import (
    GatewayOrderRegistration,
    StatusResult,
    SupplierBalance,
    SupplierOrderStatus,
    TransactionStatus,
    VendorError,
)
from engagement_orders.integrations.supplier_client import SupplierError

SERVICE_ROWS: List[Dict[str, Any]] = [
    {
        "service": 5369,
        "name": "Followers",
        "category": "Instagram",
        "rate": "0.90",
        "min": 100,
        "max": 10000,
        "refill": True,
        "cancel": False,
    },
    {
        "service": 7001,
        "name": "Likes",
        "category": "TikTok",
        "rate": "0.10",
        "min": 10,
        "max": 50000,
    },
]


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for the Pesapal client."""

    def __init__(self) -> None:
        self.registrations: List[str] = []
        self.status_calls: List[str] = []
        self.statuses: Dict[str, PaymentStatusCode] = {}
        self.references: Dict[str, str] = {}
        self.register_error: Optional[GatewayError] = None
        self.status_error: Optional[GatewayError] = None
        self.status_delay = 0.0

    async def register_order(
        self,
        order: Any,
        callback_url: str,
        notification_id: str,
        billing_address: Any = None,
    ) -> GatewayOrderRegistration:
        self.registrations.append(order.merchant_reference)
        if self.register_error is not None:
            raise self.register_error
        tracking_id = f"trk-{order.merchant_reference}"
        self.references[tracking_id] = order.merchant_reference
        return GatewayOrderRegistration(
            tracking_id=tracking_id,
            redirect_url=f"https://pay.example/{tracking_id}",
            merchant_reference=order.merchant_reference,
        )

    async def get_status(self, tracking_id: str) -> TransactionStatus:
        self.status_calls.append(tracking_id)
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.status_error is not None:
            raise self.status_error
        code = self.statuses.get(tracking_id, PaymentStatusCode.PENDING)
        raw: Dict[str, Any] = {"payment_status_description": code.value}
        if tracking_id in self.references:
            raw["merchant_reference"] = self.references[tracking_id]
        return TransactionStatus(status_code=code, description="", raw=raw)


class FakeSupplier:
    """In-memory stand-in for the supplier client."""

    def __init__(self) -> None:
        self.placed: List[Tuple[int, str, int]] = []
        self.place_errors: List[Exception] = []
        self.place_delay = 0.0
        self.next_id = 555
        self.statuses: Dict[str, StatusResult] = {}
        self.batch_calls: List[List[str]] = []
        self.batch_error: Optional[SupplierError] = None
        self.services: List[Dict[str, Any]] = list(SERVICE_ROWS)

    async def place_order(self, service_id: int, link: str, quantity: int) -> str:
        self.placed.append((service_id, link, quantity))
        if self.place_delay:
            await asyncio.sleep(self.place_delay)
        if self.place_errors:
            raise self.place_errors.pop(0)
        order_id = str(self.next_id)
        self.next_id += 1
        return order_id

    async def get_status(self, order_id: str) -> SupplierOrderStatus:
        result = self.statuses.get(order_id)
        if not isinstance(result, SupplierOrderStatus):
            raise SupplierError(f"No status for {order_id}")
        return result

    async def get_batch_status(self, order_ids: Any) -> Dict[str, StatusResult]:
        ids = [str(i) for i in order_ids]
        self.batch_calls.append(ids)
        if self.batch_error is not None:
            raise self.batch_error
        return {
            i: self.statuses.get(i, VendorError(code="missing", message="No status returned"))
            for i in ids
        }

    async def list_services(self) -> List[Dict[str, Any]]:
        return list(self.services)

    async def get_balance(self) -> SupplierBalance:
        return SupplierBalance(balance="100.50", currency="USD")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        pesapal_consumer_key="test-consumer-key",
        pesapal_consumer_secret="test-consumer-secret",
        pesapal_base_url="https://pesapal.test/v3",
        pesapal_ipn_id="ipn-123",
        supplier_api_url="https://supplier.test/api/v2",
        supplier_api_key="supplier-key",
        app_name="engagement-orders-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        payment_expiry_minutes=30,
        supplier_max_retries=3,
        registration_max_attempts=3,
        sweep_batch_size=50,
        processing_refresh_minutes=15,
        pending_payment_grace_minutes=5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database so concurrent sessions really interleave."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> OrderStore:
    return OrderStore(session_factory, clock=clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def supplier() -> FakeSupplier:
    return FakeSupplier()


@pytest.fixture
def catalog(supplier: FakeSupplier) -> ServiceCatalog:
    """Catalog loaded with the fake supplier's services."""
    catalog = ServiceCatalog(source=supplier)
    catalog.load(SERVICE_ROWS)
    return catalog


@pytest.fixture
def engine(
    catalog: ServiceCatalog,
    store: OrderStore,
    gateway: FakeGateway,
    supplier: FakeSupplier,
    test_settings: Settings,
    clock: FakeClock,
) -> ReconciliationEngine:
    """Reconciliation engine wired to fakes and a fresh database."""
    return ReconciliationEngine(
        catalog,
        store=store,
        gateway=gateway,
        supplier=supplier,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def make_request() -> Callable[..., OrderRequest]:
    """Factory for order requests; defaults match the Instagram followers service."""

    def _make(merchant_reference: str = "m1", **overrides: Any) -> OrderRequest:
        fields: Dict[str, Any] = {
            "merchant_reference": merchant_reference,
            "user_ref": "user-42",
            "platform": "instagram",
            "service_name": "followers",
            "quality": "standard",
            "target_link": "https://instagram.com/example",
            "quantity": 1000,
            "amount": Decimal("450.00"),
            "currency": "KES",
        }
        fields.update(overrides)
        return OrderRequest(**fields)

    return _make
