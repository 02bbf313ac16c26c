"""
Race condition tests for concurrent reconciliation entry points.

Webhooks, scheduler polls and admin corrections can reach the same order at
the same moment; exactly one of them may change it.
"""
import asyncio
from typing import Any, Callable

import pytest

from engagement_orders.core.reconciliation import OrderRequest, ReconciliationEngine
from engagement_orders.core.state_machine import PaymentStatusCode
from engagement_orders.database.order_store import OrderStore

MakeRequest = Callable[..., OrderRequest]


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_webhook_and_poll_submit_once(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        gateway: Any,
        supplier: Any,
        make_request: MakeRequest,
    ) -> None:
        """
        Test a webhook racing a poll for the same paid order.

        Should place exactly one supplier order.
        """
        supplier.place_delay = 0.05
        order = await engine.create_order(make_request("m1"))
        gateway.statuses["trk-m1"] = PaymentStatusCode.COMPLETED

        results = await asyncio.gather(
            engine.on_payment_event("m1", "COMPLETED", source="webhook"),
            engine.reconcile_pending_payment(order),
            engine.on_payment_event("m1", "COMPLETED", source="webhook"),
            return_exceptions=True,
        )

        assert not [r for r in results if isinstance(r, Exception)]
        assert len(supplier.placed) == 1

        final = await store.get_by_reference("m1")
        assert final.status == "Processing"
        assert final.supplier_order_id == "555"
        assert final.submission_token is None
        events = [e.event_type for e in await store.list_events(final.id)]
        assert events.count("supplier.submission_claimed") == 1
        assert events.count("supplier.submitted") == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_same_reference(
        self,
        engine: ReconciliationEngine,
        gateway: Any,
        make_request: MakeRequest,
    ) -> None:
        """
        Test concurrent identical creates.

        Should store a single order and register it once.
        """
        results = await asyncio.gather(
            *[engine.create_order(make_request("m1")) for _ in range(5)],
            return_exceptions=True,
        )

        orders = [r for r in results if not isinstance(r, Exception)]
        assert len(orders) == 5
        assert len({o.id for o in orders}) == 1
        assert gateway.registrations == ["m1"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_expiry_racing_payment(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """
        Test an expiry racing a completed payment.

        Exactly one wins; a submission happens only if the payment did.
        """
        order = await engine.create_order(make_request("m1"))
        clock.advance(minutes=31)

        await asyncio.gather(
            engine.expire_order(order),
            engine.on_payment_event("m1", "COMPLETED", source="webhook"),
        )

        final = await store.get_by_reference("m1")
        assert final.status in ("Expired", "Processing")
        if final.status == "Expired":
            assert supplier.placed == []
        else:
            assert len(supplier.placed) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_retries_racing(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        make_request: MakeRequest,
    ) -> None:
        """
        Test two sweeps retrying the same SupplierError order.

        Should make one new submission.
        """
        from engagement_orders.integrations.supplier_client import SupplierError

        supplier.place_errors = [SupplierError("Service is temporarily unavailable")]
        await engine.create_order(make_request("m1"))
        order = await engine.on_payment_event("m1", "COMPLETED")
        assert order.status == "SupplierError"
        supplier.place_delay = 0.05

        await asyncio.gather(
            engine.retry_supplier_submission(order),
            engine.retry_supplier_submission(order),
        )

        final = await store.get_by_reference("m1")
        assert final.status == "Processing"
        assert len(supplier.placed) == 2
