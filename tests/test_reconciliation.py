"""
Unit tests for the reconciliation engine.
"""
import uuid
from decimal import Decimal
from typing import Any, Callable, List

import pytest

from engagement_orders.core.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from engagement_orders.core.reconciliation import OrderRequest, ReconciliationEngine
from engagement_orders.core.state_machine import PaymentStatusCode, can_transition
from engagement_orders.database.order_store import OrderStore
from engagement_orders.integrations.pesapal_client import GatewayError
from engagement_orders.integrations.results import SupplierOrderStatus, VendorError
from engagement_orders.integrations.supplier_client import SupplierError, SupplierTimeoutError

MakeRequest = Callable[..., OrderRequest]


async def event_types(store: OrderStore, order_id: Any) -> List[str]:
    return [e.event_type for e in await store.list_events(order_id)]


async def assert_monotonic(store: OrderStore, order_id: Any) -> None:
    """Every recorded status change follows a defined or admin transition."""
    for event in await store.list_events(order_id):
        if event.from_status and event.to_status and event.event_type != "order.admin_forced":
            assert can_transition(event.from_status, event.to_status), event


class TestOrderCreation:
    """Test suite for order creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_registers_payment(
        self, engine: ReconciliationEngine, gateway: Any, make_request: MakeRequest
    ) -> None:
        """Test a new order is stored and registered with the gateway."""
        order = await engine.create_order(make_request("m1"))

        assert order.status == "PendingPayment"
        assert order.gateway_tracking_id == "trk-m1"
        assert order.redirect_url == "https://pay.example/trk-m1"
        assert order.supplier_service_id == 5369
        assert order.registration_attempts == 1
        assert order.amount == Decimal("450.00")
        assert order.description == "1000 standard instagram followers"
        assert gateway.registrations == ["m1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_is_idempotent(
        self, engine: ReconciliationEngine, gateway: Any, make_request: MakeRequest
    ) -> None:
        """Test an identical repeat returns the stored order without re-registering."""
        first = await engine.create_order(make_request("m1"))
        second = await engine.create_order(make_request("m1"))

        assert second.id == first.id
        assert gateway.registrations == ["m1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reused_reference_with_different_payload(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test a merchant reference cannot be reused for another order."""
        await engine.create_order(make_request("m1"))

        with pytest.raises(ValidationError, match="already used"):
            await engine.create_order(make_request("m1", quantity=2000))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_service_rejected(
        self, engine: ReconciliationEngine, store: OrderStore, make_request: MakeRequest
    ) -> None:
        """Test nothing is persisted for a service the catalog lacks."""
        with pytest.raises(ValidationError, match="not available"):
            await engine.create_order(make_request("m1", service_name="comments"))

        assert await store.get_by_reference("m1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quantity_bounds(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test quantities outside the service bounds are rejected."""
        with pytest.raises(ValidationError, match="between 100 and 10000"):
            await engine.create_order(make_request("m1", quantity=50))
        with pytest.raises(ValidationError, match="between 100 and 10000"):
            await engine.create_order(make_request("m2", quantity=10001))

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"merchant_reference": " "}, "Merchant reference"),
            ({"target_link": ""}, "Target link"),
            ({"quantity": 0}, "Quantity must be positive"),
            ({"amount": Decimal("-1")}, "Amount"),
            ({"currency": "KSHS"}, "Currency"),
        ],
    )
    def test_request_validation(
        self, make_request: MakeRequest, overrides: dict, message: str
    ) -> None:
        """Test catalog-independent request validation."""
        with pytest.raises(ValidationError, match=message):
            ReconciliationEngine._validate_request(make_request(**overrides))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registration_failure_keeps_order_pending(
        self, engine: ReconciliationEngine, gateway: Any, make_request: MakeRequest
    ) -> None:
        """Test a failed registration is recorded without failing the order."""
        gateway.register_error = GatewayError("Pesapal unavailable", code="503")

        order = await engine.create_order(make_request("m1"))

        assert order.status == "PendingPayment"
        assert order.gateway_tracking_id is None
        assert order.registration_attempts == 1
        assert "Payment registration failed" in order.error_message


class TestPaymentEvents:
    """Test suite for payment status handling."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_runs_to_completion(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test create, pay, submit and complete for one order."""
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "COMPLETED", source="webhook")

        assert order.status == "Processing"
        assert order.supplier_order_id == "555"
        assert order.payment_status == "COMPLETED"
        assert order.supplier_attempts == 1
        assert order.submission_token is None
        assert supplier.placed == [(5369, "https://instagram.com/example", 1000)]

        supplier.statuses["555"] = SupplierOrderStatus(
            order_id="555", status="Completed", remains=0, charge="0.90", start_count=1200
        )
        order = await engine.reconcile_supplier_status(order)

        assert order.status == "Completed"
        assert order.supplier_remains == 0
        assert order.supplier_start_count == 1200
        assert order.last_reconciled_at is not None
        assert await event_types(store, order.id) == [
            "order.created",
            "payment.registered",
            "supplier.submission_claimed",
            "supplier.submitted",
            "supplier.completed",
        ]
        await assert_monotonic(store, order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_completion_submits_once(
        self, engine: ReconciliationEngine, supplier: Any, make_request: MakeRequest
    ) -> None:
        """Test duplicate COMPLETED notifications never resubmit."""
        await engine.create_order(make_request("m1"))

        for _ in range(3):
            order = await engine.on_payment_event("m1", "Completed")

        assert order.status == "Processing"
        assert len(supplier.placed) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw,expected",
        [("FAILED", "PaymentFailed"), ("INVALID", "PaymentFailed"), ("REVERSED", "Cancelled")],
    )
    async def test_unsuccessful_payment(
        self,
        engine: ReconciliationEngine,
        supplier: Any,
        make_request: MakeRequest,
        raw: str,
        expected: str,
    ) -> None:
        """Test failed and reversed payments end the order without a submission."""
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", raw)
        assert order.status == expected
        assert order.payment_status == raw

        # A late completion never revives a terminal order
        order = await engine.on_payment_event("m1", "COMPLETED")
        assert order.status == expected
        assert supplier.placed == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reversal_after_submission_is_ignored(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test a reversal only cancels orders still awaiting payment."""
        await engine.create_order(make_request("m1"))
        await engine.on_payment_event("m1", "COMPLETED")

        order = await engine.on_payment_event("m1", "REVERSED")

        assert order.status == "Processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_and_unrecognized_statuses(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test non-final statuses are recorded without a transition."""
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "PENDING", source="poll")
        assert order.status == "PendingPayment"
        assert order.payment_status == "PENDING"

        order = await engine.on_payment_event("m1", "AWAITING_BANK", source="poll")
        assert order.status == "PendingPayment"
        assert order.payment_status == "AWAITING_BANK"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference(self, engine: ReconciliationEngine) -> None:
        """Test events for unknown orders raise OrderNotFoundError."""
        with pytest.raises(OrderNotFoundError):
            await engine.on_payment_event("nope", "COMPLETED")


class TestSupplierSubmission:
    """Test suite for supplier submission outcomes and retries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_submission_is_retried(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test a rejected submission moves to SupplierError and a retry recovers it."""
        supplier.place_errors = [SupplierError("Not enough funds on balance")]
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "COMPLETED")
        assert order.status == "SupplierError"
        assert order.supplier_attempts == 1
        assert order.supplier_status is None
        assert "Not enough funds" in order.error_message

        order = await engine.retry_supplier_submission(order)
        assert order.status == "Processing"
        assert order.supplier_order_id == "555"
        assert order.supplier_attempts == 2
        assert order.error_message is None
        assert len(supplier.placed) == 2
        assert "supplier.retry_claimed" in await event_types(store, order.id)
        await assert_monotonic(store, order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_stop_at_limit(
        self, engine: ReconciliationEngine, supplier: Any, make_request: MakeRequest
    ) -> None:
        """Test no more than supplier_max_retries submissions are made."""
        supplier.place_errors = [SupplierError("Service is disabled") for _ in range(5)]
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "COMPLETED")
        for _ in range(4):
            order = await engine.retry_supplier_submission(order)

        assert order.status == "SupplierError"
        assert order.supplier_attempts == 3
        assert len(supplier.placed) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_never_retried(
        self, engine: ReconciliationEngine, supplier: Any, make_request: MakeRequest
    ) -> None:
        """Test an unknown submission outcome is left for manual review."""
        supplier.place_errors = [SupplierTimeoutError("Supplier action 'add' timed out")]
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "COMPLETED")
        assert order.status == "SupplierError"
        assert order.supplier_status == "Unknown"
        assert "outcome unknown" in order.error_message

        order = await engine.retry_supplier_submission(order)
        assert order.status == "SupplierError"
        assert len(supplier.placed) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_records_unknown_outcome(
        self, engine: ReconciliationEngine, supplier: Any, make_request: MakeRequest
    ) -> None:
        """Test an unexpected exception during submission still releases the claim."""
        supplier.place_errors = [RuntimeError("connection reset by peer")]
        await engine.create_order(make_request("m1"))

        order = await engine.on_payment_event("m1", "COMPLETED")

        assert order.status == "SupplierError"
        assert order.supplier_status == "Unknown"
        assert order.submission_token is None
        assert "RuntimeError" in order.error_message

        order = await engine.retry_supplier_submission(order)
        assert len(supplier.placed) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_service_removed_from_catalog_after_creation(
        self,
        engine: ReconciliationEngine,
        supplier: Any,
        catalog: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test the service id pinned at creation is used for submission."""
        await engine.create_order(make_request("m1"))
        catalog.load([])

        order = await engine.on_payment_event("m1", "COMPLETED")

        assert order.status == "Processing"
        assert supplier.placed[0][0] == 5369


class TestSupplierStatus:
    """Test suite for supplier status reconciliation."""

    async def processing_order(self, engine: ReconciliationEngine, make_request: MakeRequest) -> Any:
        await engine.create_order(make_request("m1"))
        return await engine.on_payment_event("m1", "COMPLETED")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "supplier_status,expected",
        [
            ("Completed", "Completed"),
            ("Partial", "PartiallyCompleted"),
            ("Canceled", "PartiallyCompleted"),
            ("Pending", "Processing"),
            ("In progress", "Processing"),
            ("Processing", "Processing"),
        ],
    )
    async def test_status_mapping(
        self,
        engine: ReconciliationEngine,
        make_request: MakeRequest,
        supplier_status: str,
        expected: str,
    ) -> None:
        """Test the supplier vocabulary maps onto order statuses."""
        order = await self.processing_order(engine, make_request)

        order = await engine.reconcile_supplier_status(
            order, SupplierOrderStatus(order_id="555", status=supplier_status, remains=120)
        )

        assert order.status == expected
        assert order.supplier_status == supplier_status
        assert order.supplier_remains == 120

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecognized_status_keeps_processing(
        self, engine: ReconciliationEngine, store: OrderStore, make_request: MakeRequest
    ) -> None:
        """Test an unknown supplier status is recorded and audited only."""
        order = await self.processing_order(engine, make_request)

        order = await engine.reconcile_supplier_status(
            order, SupplierOrderStatus(order_id="555", status="Refunded")
        )

        assert order.status == "Processing"
        assert order.supplier_status == "Refunded"
        assert "supplier.status_unrecognized" in await event_types(store, order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_vendor_error_keeps_processing(
        self, engine: ReconciliationEngine, store: OrderStore, make_request: MakeRequest
    ) -> None:
        """Test a per-id vendor error refreshes the reconcile time only."""
        order = await self.processing_order(engine, make_request)

        order = await engine.reconcile_supplier_status(
            order, VendorError(code="vendor_error", message="Incorrect order ID")
        )

        assert order.status == "Processing"
        assert order.last_reconciled_at is not None
        assert "supplier.status_error" in await event_types(store, order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_order_is_untouched(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test completed orders ignore later supplier statuses."""
        order = await self.processing_order(engine, make_request)
        order = await engine.reconcile_supplier_status(
            order, SupplierOrderStatus(order_id="555", status="Completed")
        )

        order = await engine.reconcile_supplier_status(
            order, SupplierOrderStatus(order_id="555", status="Partial")
        )

        assert order.status == "Completed"


class TestExpiry:
    """Test suite for unpaid order expiry."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_order_expires(
        self,
        engine: ReconciliationEngine,
        gateway: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test an order with no payment confirmation expires after the window."""
        await engine.create_order(make_request("m1"))

        clock.advance(minutes=29)
        order = await engine.reconcile_pending_payment(await engine.get_order_by_reference("m1"))
        assert order.status == "PendingPayment"

        clock.advance(minutes=1)
        order = await engine.reconcile_pending_payment(order)
        assert order.status == "Expired"
        assert order.error_message.startswith("Payment not confirmed")
        assert gateway.status_calls == ["trk-m1", "trk-m1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_completes_payment_before_expiry(
        self,
        engine: ReconciliationEngine,
        gateway: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test a completed poll wins over an elapsed window."""
        order = await engine.create_order(make_request("m1"))
        gateway.statuses["trk-m1"] = PaymentStatusCode.COMPLETED
        clock.advance(minutes=45)

        order = await engine.reconcile_pending_payment(order)

        assert order.status == "Processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registration_exhaustion_expires(
        self, engine: ReconciliationEngine, gateway: Any, make_request: MakeRequest
    ) -> None:
        """Test an order that can never be registered expires early."""
        gateway.register_error = GatewayError("Pesapal unavailable", code="503")
        order = await engine.create_order(make_request("m1"))

        order = await engine.reconcile_pending_payment(order)
        assert order.status == "PendingPayment"
        assert order.registration_attempts == 2

        order = await engine.reconcile_pending_payment(order)
        assert order.status == "Expired"
        assert order.error_message == "Payment registration failed"
        assert len(gateway.registrations) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_completion_after_expiry(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test a payment confirmed after expiry is flagged but not submitted."""
        order = await engine.create_order(make_request("m1"))
        clock.advance(minutes=31)
        order = await engine.expire_order(order)
        assert order.status == "Expired"

        order = await engine.on_payment_event("m1", "COMPLETED")
        order = await engine.on_payment_event("m1", "COMPLETED")

        assert order.status == "Expired"
        assert order.payment_status == "COMPLETED"
        assert "refund" in order.error_message
        assert supplier.placed == []
        events = await event_types(store, order.id)
        assert events.count("payment.completed_after_close") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_poll_defers_expiry(
        self,
        engine: ReconciliationEngine,
        gateway: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test an order is not expired on the strength of a failed status poll."""
        order = await engine.create_order(make_request("m1"))
        gateway.status_error = GatewayError("Pesapal transaction_status timed out", code="timeout")

        clock.advance(minutes=31)
        order = await engine.reconcile_pending_payment(order)
        assert order.status == "PendingPayment"

        clock.advance(minutes=59)
        order = await engine.reconcile_pending_payment(order)
        assert order.status == "Expired"


class TestQueries:
    """Test suite for order lookups, listings and stats."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookups(self, engine: ReconciliationEngine, make_request: MakeRequest) -> None:
        """Test lookups by id and reference."""
        order = await engine.create_order(make_request("m1"))

        assert (await engine.get_order(order.id)).merchant_reference == "m1"
        assert (await engine.get_order(str(order.id))).id == order.id
        assert (await engine.get_order_by_reference("m1")).id == order.id
        with pytest.raises(OrderNotFoundError):
            await engine.get_order("not-a-uuid")
        with pytest.raises(OrderNotFoundError):
            await engine.get_order_by_reference("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_listing_and_stats(
        self, engine: ReconciliationEngine, clock: Any, make_request: MakeRequest
    ) -> None:
        """Test user listings are newest first and stats group statuses."""
        for reference in ("m1", "m2", "m3"):
            await engine.create_order(make_request(reference))
            clock.advance(seconds=1)
        await engine.create_order(make_request("other", user_ref="user-7"))
        await engine.on_payment_event("m1", "COMPLETED")
        await engine.on_payment_event("m3", "FAILED")

        orders, total = await engine.list_orders_for_user("user-42", page=1, limit=2)
        assert total == 3
        assert [o.merchant_reference for o in orders] == ["m3", "m2"]

        orders, total = await engine.list_orders_for_user("user-42", page=2, limit=2)
        assert [o.merchant_reference for o in orders] == ["m1"]

        assert await engine.order_stats_for_user("user-42") == {
            "pending_orders": 2,
            "active_orders": 1,
            "completed_orders": 0,
            "total_orders": 3,
        }

        orders, total = await engine.admin_list_orders("Processing")
        assert total == 1
        assert orders[0].merchant_reference == "m1"
        with pytest.raises(ValidationError):
            await engine.admin_list_orders("Shipped")


class TestAdminForce:
    """Test suite for manual status corrections."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_supplier_error_to_completed(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test an operator can close out an order fulfilled by hand."""
        supplier.place_errors = [SupplierTimeoutError("timed out")]
        await engine.create_order(make_request("m1"))
        order = await engine.on_payment_event("m1", "COMPLETED")

        order = await engine.admin_force_status(
            order.id, "Completed", reason="Delivered manually", actor="ops@example.com"
        )

        assert order.status == "Completed"
        assert order.error_message is None
        forced = (await store.list_events(order.id))[-1]
        assert forced.event_type == "order.admin_forced"
        assert forced.from_status == "SupplierError"
        assert forced.event_data == {"reason": "Delivered manually", "actor": "ops@example.com"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_terminal_is_rejected(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test terminal orders are never changed."""
        order = await engine.create_order(make_request("m1"))
        await engine.on_payment_event("m1", "FAILED")

        with pytest.raises(InvalidTransitionError):
            await engine.admin_force_status(order.id, "Processing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_unknown_target(
        self, engine: ReconciliationEngine, make_request: MakeRequest
    ) -> None:
        """Test an unknown target status is rejected."""
        order = await engine.create_order(make_request("m1"))

        with pytest.raises(InvalidTransitionError):
            await engine.admin_force_status(order.id, "Shipped")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_to_current_status_is_noop(
        self, engine: ReconciliationEngine, store: OrderStore, make_request: MakeRequest
    ) -> None:
        """Test forcing the current status changes nothing."""
        order = await engine.create_order(make_request("m1"))
        before = await event_types(store, order.id)

        order = await engine.admin_force_status(order.id, "PendingPayment")

        assert order.status == "PendingPayment"
        assert await event_types(store, order.id) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_cancel_pending(
        self, engine: ReconciliationEngine, supplier: Any, make_request: MakeRequest
    ) -> None:
        """Test a cancelled order is never submitted even if payment arrives."""
        order = await engine.create_order(make_request("m1"))

        order = await engine.admin_force_status(order.id, "Cancelled", reason="Buyer request")
        assert order.status == "Cancelled"

        order = await engine.on_payment_event("m1", "COMPLETED")
        assert order.status == "Cancelled"
        assert supplier.placed == []


async def abandon_claim(store: OrderStore, order: Any, clock: Any) -> Any:
    """Leave a submission claim behind, as a process killed mid-call would."""
    return await store.conditional_update(
        order.id,
        {"submission_token": None},
        {"submission_token": uuid.uuid4(), "submission_claimed_at": clock()},
        event_type="supplier.submission_claimed",
    )


class TestAbandonedClaims:
    """Test suite for submission claims whose outcome was never recorded."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_claim_is_respected(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test a claim younger than the timeout blocks recovery and admin force."""
        order = await abandon_claim(store, await engine.create_order(make_request("m1")), clock)
        clock.advance(minutes=5)

        assert not engine.claim_is_stale(order)
        assert (await engine.recover_stale_claim(order)).status == "PendingPayment"
        with pytest.raises(InvalidTransitionError):
            await engine.admin_force_status(order.id, "Cancelled")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_claim_becomes_unknown_outcome(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        supplier: Any,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test a stale claim is closed out for manual review without resubmitting."""
        order = await abandon_claim(store, await engine.create_order(make_request("m1")), clock)
        clock.advance(minutes=11)

        order = await engine.reconcile(order)

        assert order.status == "SupplierError"
        assert order.supplier_status == "Unknown"
        assert order.submission_token is None
        assert "interrupted" in order.error_message
        assert "supplier.claim_expired" in await event_types(store, order.id)

        order = await engine.retry_supplier_submission(order)
        assert order.status == "SupplierError"
        assert supplier.placed == []
        await assert_monotonic(store, order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_force_overrides_stale_claim(
        self,
        engine: ReconciliationEngine,
        store: OrderStore,
        clock: Any,
        make_request: MakeRequest,
    ) -> None:
        """Test an operator can close an order stuck behind an old claim."""
        order = await abandon_claim(store, await engine.create_order(make_request("m1")), clock)
        token = order.submission_token
        clock.advance(hours=24)

        order = await engine.admin_force_status(order.id, "Cancelled", reason="Stuck order")

        assert order.status == "Cancelled"
        assert order.submission_token is None
        forced = (await store.list_events(order.id))[-1]
        assert forced.event_data["stale_claim"] == str(token)
