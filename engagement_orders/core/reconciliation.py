"""
Order reconciliation engine.

The only component that changes an order's status. Every entry point
(order creation, payment webhooks, scheduler polls, admin corrections)
funnels into guarded transitions: a conditional UPDATE against the order's
current status and submission claim. Whichever caller wins the update
commits; the others observe the new state and exit quietly.

Supplier submission is a two-step check-and-set:
1. Claim the order with a fresh submission token and commit
2. Call the supplier with no transaction open
3. Record the outcome with an UPDATE keyed on the token
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from engagement_orders.config import Settings, get_settings
from engagement_orders.core.clock import Clock, as_utc, utcnow
from engagement_orders.core.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    ReconciliationConflict,
    ValidationError,
)
from engagement_orders.core.service_catalog import ServiceCatalog
from engagement_orders.core.state_machine import (
    ACTIVE_STATUSES,
    SUPPLIER_COMPLETED,
    SUPPLIER_IN_PROGRESS,
    SUPPLIER_PARTIAL,
    OrderStatus,
    PaymentStatusCode,
    can_force,
    normalize_payment_status,
)
from engagement_orders.database.models import Order
from engagement_orders.database.order_store import OrderStore
from engagement_orders.integrations.pesapal_client import GatewayError, PesapalClient
from engagement_orders.integrations.results import StatusResult, VendorError
from engagement_orders.integrations.supplier_client import (
    SupplierClient,
    SupplierError,
    SupplierTimeoutError,
)
from engagement_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UNKNOWN_OUTCOME = "Unknown"
MAX_PAGE_SIZE = 100

# Terminal states reached without a supplier submission
CLOSED_UNPAID = (
    OrderStatus.EXPIRED.value,
    OrderStatus.PAYMENT_FAILED.value,
    OrderStatus.CANCELLED.value,
)


@dataclass(frozen=True)
class OrderRequest:
    """Order creation request, priced by the caller."""

    merchant_reference: str
    user_ref: str
    platform: str
    service_name: str
    quality: str
    target_link: str
    quantity: int
    amount: Decimal
    currency: str = "KES"
    callback_url: Optional[str] = None
    billing_address: Optional[Mapping[str, Any]] = None

    def matches(self, order: Order) -> bool:
        """Check whether an existing order was created from an identical payload."""
        return (
            order.user_ref == self.user_ref
            and order.platform == self.platform
            and order.service_name == self.service_name
            and order.quality == self.quality
            and order.target_link == self.target_link
            and order.quantity == self.quantity
            and Decimal(order.amount) == Decimal(self.amount)
            and order.currency == self.currency.upper()
        )


def clamp_page(page: int, limit: int) -> Tuple[int, int]:
    """Normalize pagination to page >= 1 and 1 <= limit <= MAX_PAGE_SIZE."""
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


class ReconciliationEngine:
    """
    Drives the order state machine.

    Collaborators are injected so tests can substitute fakes; unset ones
    fall back to the configured production adapters.
    """

    def __init__(
        self,
        catalog: ServiceCatalog,
        store: Optional[OrderStore] = None,
        gateway: Optional[PesapalClient] = None,
        supplier: Optional[SupplierClient] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            catalog: Service catalog used to resolve order selectors
            store: Optional order store
            gateway: Optional Pesapal client
            supplier: Optional supplier client
            settings: Optional settings
            clock: Optional time source (defaults to UTC now)
        """
        self.settings = settings or get_settings()
        self.catalog = catalog
        self._clock = clock or utcnow
        self.store = store or OrderStore(clock=self._clock)
        self.gateway = gateway or PesapalClient(self.settings)
        self.supplier = supplier or SupplierClient(self.settings)

        logger.info("reconciliation_engine_initialized")

    def now(self) -> datetime:
        return self._clock()

    async def _guarded(
        self,
        order: Order,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
        event_type: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
        from_status: Optional[str] = None,
    ) -> Order:
        """
        Apply a conditional update or raise ReconciliationConflict.

        Raises:
            ReconciliationConflict: If the order no longer matches `expected`
        """
        updated = await self.store.conditional_update(
            order.id,
            expected,
            values,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            from_status=from_status,
        )
        if updated is None:
            raise ReconciliationConflict(
                f"Order {order.merchant_reference} changed concurrently ({event_type or 'update'})"
            )

        new_status = values.get("status")
        if new_status is not None:
            previous = from_status or expected.get("status") or order.status
            metrics.record_transition(OrderStatus(previous).value, OrderStatus(new_status).value)
            logger.info(
                "order_status_changed",
                order_id=str(order.id),
                merchant_reference=order.merchant_reference,
                from_status=OrderStatus(previous).value,
                to_status=OrderStatus(new_status).value,
                reason=event_type,
            )
        return updated

    async def _absorb(self, order: Order, conflict: ReconciliationConflict, operation: str) -> Order:
        """Log a lost race and return the winner's view of the order."""
        metrics.record_conflict(operation)
        logger.debug(
            "reconciliation_conflict",
            order_id=str(order.id),
            operation=operation,
            detail=str(conflict),
        )
        current = await self.store.get(order.id)
        return current if current is not None else order

    @staticmethod
    def _validate_request(request: OrderRequest) -> None:
        """
        Validate request fields that do not depend on the catalog.

        Raises:
            ValidationError: If validation fails
        """
        if not request.merchant_reference or not request.merchant_reference.strip():
            raise ValidationError("Merchant reference is required")
        if not request.user_ref:
            raise ValidationError("User reference is required")
        if not request.platform or not request.service_name or not request.quality:
            raise ValidationError("Platform, service and quality are required")
        if not request.target_link or not request.target_link.strip():
            raise ValidationError("Target link is required")
        if request.quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if Decimal(request.amount) < 0:
            raise ValidationError("Amount must not be negative")
        if len(request.currency) != 3:
            raise ValidationError("Currency must be 3-letter code")

    def _existing_or_conflict(self, existing: Order, request: OrderRequest) -> Order:
        if request.matches(existing):
            logger.info(
                "order_create_idempotent",
                order_id=str(existing.id),
                merchant_reference=existing.merchant_reference,
            )
            return existing
        logger.warning(
            "order_create_conflicting_reference",
            merchant_reference=request.merchant_reference,
        )
        raise ValidationError(
            f"Merchant reference '{request.merchant_reference}' already used with a different payload"
        )

    async def create_order(self, request: OrderRequest) -> Order:
        """
        Create an order and register it with the payment gateway.

        Idempotent on the merchant reference: an identical repeat returns the
        stored order without registering it again.

        Args:
            request: Order creation request

        Returns:
            Order: The new or existing order

        Raises:
            ValidationError: If the request is invalid or the reference is
                already used with a different payload
        """
        self._validate_request(request)

        existing = await self.store.get_by_reference(request.merchant_reference)
        if existing is not None:
            return self._existing_or_conflict(existing, request)

        definition = self.catalog.resolve(request.platform, request.service_name, request.quality)
        if definition is None:
            raise ValidationError(
                f"Service '{request.service_name}' ({request.quality}) is not available "
                f"for {request.platform}"
            )
        if not definition.accepts_quantity(request.quantity):
            raise ValidationError(
                f"Quantity must be between {definition.min_quantity} and {definition.max_quantity}"
            )

        correlation_id = uuid.uuid4()
        description = (
            f"{request.quantity} {request.quality} {request.platform} {request.service_name}"
        )[:100]
        order = await self.store.insert(
            {
                "merchant_reference": request.merchant_reference,
                "user_ref": request.user_ref,
                "platform": request.platform,
                "service_name": request.service_name,
                "quality": request.quality,
                "target_link": request.target_link.strip(),
                "quantity": request.quantity,
                "amount": Decimal(request.amount),
                "currency": request.currency.upper(),
                "description": description,
                "callback_url": request.callback_url or self.settings.pesapal_callback_url,
                "status": OrderStatus.PENDING_PAYMENT,
                "supplier_service_id": definition.supplier_service_id,
            },
            correlation_id=correlation_id,
        )
        if order is None:
            # Lost the unique-key race to a concurrent identical create
            winner = await self.store.get_by_reference(request.merchant_reference)
            if winner is None:
                raise ValidationError(
                    f"Merchant reference '{request.merchant_reference}' could not be stored"
                )
            return self._existing_or_conflict(winner, request)

        metrics.record_order_created(order.platform, order.currency)
        logger.info(
            "order_created",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            supplier_service_id=definition.supplier_service_id,
            quantity=order.quantity,
            amount=str(order.amount),
            correlation_id=str(correlation_id),
        )

        return await self.register_payment(order, request.billing_address, correlation_id)

    async def register_payment(
        self,
        order: Order,
        billing_address: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Register a PendingPayment order with the gateway.

        Failure leaves the order PendingPayment with the diagnostic recorded
        and the attempt counted.

        Returns:
            Order: The order after the attempt
        """
        if order.status != OrderStatus.PENDING_PAYMENT.value or order.gateway_tracking_id:
            return order

        expected = {"status": OrderStatus.PENDING_PAYMENT, "gateway_tracking_id": None}
        try:
            registration = await self.gateway.register_order(
                order,
                order.callback_url or self.settings.pesapal_callback_url,
                self.settings.pesapal_ipn_id,
                billing_address,
            )
        except GatewayError as e:
            logger.warning(
                "payment_registration_failed",
                order_id=str(order.id),
                merchant_reference=order.merchant_reference,
                attempt=order.registration_attempts + 1,
                error=str(e),
                code=e.code,
            )
            try:
                return await self._guarded(
                    order,
                    expected,
                    {
                        "error_message": f"Payment registration failed: {e}",
                        "registration_attempts": Order.registration_attempts + 1,
                    },
                    event_type="payment.registration_failed",
                    event_data={"error": str(e), "code": e.code},
                    correlation_id=correlation_id,
                )
            except ReconciliationConflict as conflict:
                return await self._absorb(order, conflict, "register_payment")

        try:
            return await self._guarded(
                order,
                expected,
                {
                    "gateway_tracking_id": registration.tracking_id,
                    "redirect_url": registration.redirect_url,
                    "error_message": None,
                    "registration_attempts": Order.registration_attempts + 1,
                },
                event_type="payment.registered",
                event_data={"tracking_id": registration.tracking_id},
                correlation_id=correlation_id,
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "register_payment")

    async def attach_tracking_id(self, order: Order, tracking_id: str) -> Order:
        """
        Record a gateway tracking id learned from a verified notification.

        Only applies when the order has none yet; an existing id is never
        overwritten.
        """
        if order.gateway_tracking_id:
            return order
        try:
            return await self._guarded(
                order,
                {"gateway_tracking_id": None},
                {"gateway_tracking_id": tracking_id},
                event_type="payment.tracking_id_attached",
                event_data={"tracking_id": tracking_id},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "attach_tracking_id")

    async def on_payment_event(
        self,
        merchant_reference: str,
        raw_status: Optional[str],
        source: str = "webhook",
    ) -> Order:
        """
        Apply a gateway payment status to an order.

        Single entry point for webhooks and polls; safe to call repeatedly.

        Args:
            merchant_reference: Order merchant reference
            raw_status: Gateway status string
            source: Caller, for logging ("webhook" or "poll")

        Returns:
            Order: The order after the event

        Raises:
            OrderNotFoundError: If no order has this reference
        """
        order = await self.store.get_by_reference(merchant_reference)
        if order is None:
            raise OrderNotFoundError(f"Order with reference '{merchant_reference}' not found")

        code = normalize_payment_status(raw_status)
        log = logger.bind(
            order_id=str(order.id),
            merchant_reference=merchant_reference,
            payment_status=raw_status,
            source=source,
        )

        if code is PaymentStatusCode.COMPLETED:
            return await self._submit_to_supplier(order, raw_status or code.value)

        if order.status != OrderStatus.PENDING_PAYMENT.value or order.submission_token is not None:
            log.info("payment_event_ignored", status=order.status)
            return order

        pending = {"status": OrderStatus.PENDING_PAYMENT, "submission_token": None}
        try:
            if code in (PaymentStatusCode.FAILED, PaymentStatusCode.INVALID):
                return await self._guarded(
                    order,
                    pending,
                    {
                        "status": OrderStatus.PAYMENT_FAILED,
                        "payment_status": raw_status,
                        "error_message": f"Payment {code.value.lower()}",
                        "last_reconciled_at": self.now(),
                    },
                    event_type="payment.failed",
                    event_data={"payment_status": raw_status, "source": source},
                )

            if code is PaymentStatusCode.REVERSED:
                return await self._guarded(
                    order,
                    pending,
                    {
                        "status": OrderStatus.CANCELLED,
                        "payment_status": raw_status,
                        "error_message": "Payment reversed",
                        "last_reconciled_at": self.now(),
                    },
                    event_type="payment.reversed",
                    event_data={"payment_status": raw_status, "source": source},
                )

            if code is PaymentStatusCode.UNKNOWN:
                log.warning("payment_status_unrecognized")

            # Polls always touch last_reconciled_at so the sweep rotates through orders
            if order.payment_status == raw_status and source != "poll":
                return order
            return await self._guarded(
                order,
                pending,
                {"payment_status": raw_status, "last_reconciled_at": self.now()},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "payment_event")

    async def _record_late_payment(self, order: Order, raw_status: str) -> Order:
        """
        Flag a payment confirmed after the order was closed unpaid.

        The status stays terminal; the charge is recorded for an operator to
        refund or fulfil by hand.
        """
        if order.payment_status == raw_status:
            return order

        logger.warning(
            "payment_after_expiry" if order.status == OrderStatus.EXPIRED.value
            else "payment_after_close",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            status=order.status,
            payment_status=raw_status,
        )
        try:
            return await self._guarded(
                order,
                {"status": order.status},
                {
                    "payment_status": raw_status,
                    "error_message": (
                        f"Payment completed after order was {order.status}; "
                        "refund or manual fulfilment required"
                    ),
                    "last_reconciled_at": self.now(),
                },
                event_type="payment.completed_after_close",
                event_data={"payment_status": raw_status, "status": order.status},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "late_payment")

    async def _submit_to_supplier(self, order: Order, raw_status: str) -> Order:
        """Claim a paid PendingPayment order and submit it to the supplier once."""
        if order.status in CLOSED_UNPAID:
            return await self._record_late_payment(order, raw_status)
        if (
            order.status != OrderStatus.PENDING_PAYMENT.value
            or order.supplier_order_id is not None
            or order.submission_token is not None
        ):
            logger.info(
                "payment_completed_already_handled",
                order_id=str(order.id),
                status=order.status,
            )
            return order

        token = uuid.uuid4()
        try:
            claimed = await self._guarded(
                order,
                {
                    "status": OrderStatus.PENDING_PAYMENT,
                    "supplier_order_id": None,
                    "submission_token": None,
                },
                {
                    "submission_token": token,
                    "submission_claimed_at": self.now(),
                    "payment_status": raw_status,
                    "error_message": None,
                },
                event_type="supplier.submission_claimed",
                event_data={"token": str(token), "payment_status": raw_status},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "submission_claim")

        logger.info(
            "supplier_submission_claimed",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
        )
        return await self._place_with_claim(claimed, token)

    async def retry_supplier_submission(self, order: Order) -> Order:
        """
        Re-submit a SupplierError order with retries remaining.

        Orders whose last submission timed out are left for manual review.

        Returns:
            Order: The order after the attempt
        """
        if (
            order.status != OrderStatus.SUPPLIER_ERROR.value
            or order.supplier_order_id is not None
            or order.submission_token is not None
            or order.supplier_status == UNKNOWN_OUTCOME
            or order.supplier_attempts >= self.settings.supplier_max_retries
        ):
            return order

        token = uuid.uuid4()
        try:
            claimed = await self._guarded(
                order,
                {
                    "status": OrderStatus.SUPPLIER_ERROR,
                    "supplier_order_id": None,
                    "submission_token": None,
                    "supplier_attempts": order.supplier_attempts,
                },
                {"submission_token": token, "submission_claimed_at": self.now()},
                event_type="supplier.retry_claimed",
                event_data={"token": str(token), "attempt": order.supplier_attempts + 1},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "retry_claim")

        logger.info(
            "supplier_retry_claimed",
            order_id=str(order.id),
            attempt=order.supplier_attempts + 1,
            max_retries=self.settings.supplier_max_retries,
        )
        return await self._place_with_claim(claimed, token)

    async def _place_with_claim(self, order: Order, token: uuid.UUID) -> Order:
        """Call the supplier for a claimed order and record the outcome."""
        from_status = order.status
        claim = {"submission_token": token, "supplier_order_id": None}

        service_id = order.supplier_service_id
        if service_id is None:
            definition = self.catalog.resolve(order.platform, order.service_name, order.quality)
            service_id = definition.supplier_service_id if definition else None
        if service_id is None:
            return await self._record_supplier_failure(
                order, claim, from_status, "Supplier service is not available", unknown=False
            )

        try:
            supplier_order_id = await self.supplier.place_order(
                service_id, order.target_link, order.quantity
            )
        except SupplierTimeoutError as e:
            return await self._record_supplier_failure(order, claim, from_status, str(e), unknown=True)
        except SupplierError as e:
            return await self._record_supplier_failure(order, claim, from_status, str(e), unknown=False)
        except Exception as e:
            # The request may have reached the supplier
            logger.exception(
                "supplier_submission_interrupted",
                order_id=str(order.id),
                error_type=type(e).__name__,
            )
            return await self._record_supplier_failure(
                order, claim, from_status, f"{type(e).__name__}: {e}", unknown=True
            )

        metrics.record_supplier_submission("accepted")
        try:
            return await self._guarded(
                order,
                claim,
                {
                    "status": OrderStatus.PROCESSING,
                    "supplier_order_id": supplier_order_id,
                    "supplier_service_id": service_id,
                    "supplier_status": None,
                    "supplier_attempts": Order.supplier_attempts + 1,
                    "submission_token": None,
                    "error_message": None,
                },
                event_type="supplier.submitted",
                event_data={"supplier_order_id": supplier_order_id, "service_id": service_id},
                from_status=from_status,
            )
        except ReconciliationConflict:
            # The claim was held, so this only happens if storage was edited by hand
            logger.error(
                "supplier_result_unrecorded",
                order_id=str(order.id),
                supplier_order_id=supplier_order_id,
            )
            await self.store.record_event(
                order.id,
                "supplier.submitted_unrecorded",
                {"supplier_order_id": supplier_order_id, "service_id": service_id},
            )
            current = await self.store.get(order.id)
            return current if current is not None else order

    async def _record_supplier_failure(
        self,
        order: Order,
        claim: Mapping[str, Any],
        from_status: str,
        message: str,
        unknown: bool,
    ) -> Order:
        outcome = "unknown" if unknown else "rejected"
        metrics.record_supplier_submission(outcome)
        logger.error(
            "supplier_submission_failed",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            outcome=outcome,
            error=message,
        )

        values: Dict[str, Any] = {
            "error_message": (
                f"Supplier submission outcome unknown: {message}" if unknown
                else f"Supplier submission failed: {message}"
            ),
            "supplier_attempts": Order.supplier_attempts + 1,
            "submission_token": None,
        }
        if unknown:
            values["supplier_status"] = UNKNOWN_OUTCOME
        if from_status != OrderStatus.SUPPLIER_ERROR.value:
            values["status"] = OrderStatus.SUPPLIER_ERROR

        try:
            return await self._guarded(
                order,
                claim,
                values,
                event_type="supplier.submission_failed",
                event_data={"error": message, "outcome": outcome},
                from_status=from_status if "status" in values else None,
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "submission_record")

    def claim_is_stale(self, order: Order) -> bool:
        """Check whether a submission claim has outlived `submission_claim_timeout_minutes`."""
        if order.submission_token is None:
            return False
        if order.submission_claimed_at is None:
            return True
        age = self.now() - as_utc(order.submission_claimed_at)
        return age >= timedelta(minutes=self.settings.submission_claim_timeout_minutes)

    async def recover_stale_claim(self, order: Order) -> Order:
        """
        Close out a submission claim whose outcome was never recorded.

        The supplier may or may not have accepted the order, so it moves to
        SupplierError with an Unknown outcome for manual review and is not
        resubmitted automatically.

        Returns:
            Order: The order after recovery
        """
        if not self.claim_is_stale(order) or order.supplier_order_id is not None:
            return order

        values: Dict[str, Any] = {
            "supplier_status": UNKNOWN_OUTCOME,
            "submission_token": None,
            "supplier_attempts": Order.supplier_attempts + 1,
            "error_message": "Supplier submission interrupted; outcome unknown",
        }
        if order.status != OrderStatus.SUPPLIER_ERROR.value:
            values["status"] = OrderStatus.SUPPLIER_ERROR

        logger.error(
            "supplier_claim_expired",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            claimed_at=str(order.submission_claimed_at),
        )
        try:
            recovered = await self._guarded(
                order,
                {
                    "status": order.status,
                    "submission_token": order.submission_token,
                    "supplier_order_id": None,
                },
                values,
                event_type="supplier.claim_expired",
                event_data={"token": str(order.submission_token)},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "claim_recovery")
        metrics.record_supplier_submission("unknown")
        return recovered

    async def reconcile_supplier_status(
        self, order: Order, result: Optional[StatusResult] = None
    ) -> Order:
        """
        Apply the supplier's view of a Processing order.

        Args:
            order: Order to reconcile
            result: Status already fetched by a batch call; fetched here if omitted

        Returns:
            Order: The order after reconciliation

        Raises:
            SupplierError: If the status could not be fetched
        """
        if order.status != OrderStatus.PROCESSING.value or order.supplier_order_id is None:
            return order

        if result is None:
            result = await self.supplier.get_status(order.supplier_order_id)

        expected = {"status": OrderStatus.PROCESSING, "supplier_order_id": order.supplier_order_id}
        now = self.now()
        try:
            if isinstance(result, VendorError):
                logger.warning(
                    "supplier_status_vendor_error",
                    order_id=str(order.id),
                    supplier_order_id=order.supplier_order_id,
                    code=result.code,
                    error=result.message,
                )
                return await self._guarded(
                    order,
                    expected,
                    {"last_reconciled_at": now},
                    event_type="supplier.status_error",
                    event_data={"code": result.code, "error": result.message},
                )

            details: Dict[str, Any] = {
                "supplier_status": result.status,
                "last_reconciled_at": now,
            }
            if result.remains is not None:
                details["supplier_remains"] = result.remains
            if result.charge is not None:
                details["supplier_charge"] = result.charge
            if result.start_count is not None:
                details["supplier_start_count"] = result.start_count

            vocabulary = result.normalized_status
            if vocabulary in SUPPLIER_COMPLETED:
                return await self._guarded(
                    order,
                    expected,
                    {**details, "status": OrderStatus.COMPLETED},
                    event_type="supplier.completed",
                    event_data={"supplier_status": result.status},
                )
            if vocabulary in SUPPLIER_PARTIAL:
                return await self._guarded(
                    order,
                    expected,
                    {**details, "status": OrderStatus.PARTIALLY_COMPLETED},
                    event_type="supplier.partial",
                    event_data={"supplier_status": result.status, "remains": result.remains},
                )
            if vocabulary in SUPPLIER_IN_PROGRESS:
                return await self._guarded(order, expected, details)

            logger.warning(
                "supplier_status_unrecognized",
                order_id=str(order.id),
                supplier_order_id=order.supplier_order_id,
                supplier_status=result.status,
            )
            return await self._guarded(
                order,
                expected,
                details,
                event_type="supplier.status_unrecognized",
                event_data={"supplier_status": result.status},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "supplier_status")

    def expiry_due(self, order: Order) -> bool:
        """
        Check whether an unconfirmed order should expire.

        Due once the payment window has elapsed, or as soon as gateway
        registration has failed too often for the buyer to ever pay.
        """
        if order.status != OrderStatus.PENDING_PAYMENT.value or order.submission_token is not None:
            return False
        if (
            order.gateway_tracking_id is None
            and order.registration_attempts >= self.settings.registration_max_attempts
        ):
            return True
        created_at = as_utc(order.created_at)
        return self.now() - created_at >= timedelta(minutes=self.settings.payment_expiry_minutes)

    async def expire_order(self, order: Order) -> Order:
        """
        Move an unconfirmed order to Expired if its window has elapsed.

        Returns:
            Order: The order, Expired if the transition applied
        """
        if not self.expiry_due(order):
            return order

        reason = (
            "Payment registration failed"
            if order.gateway_tracking_id is None
            and order.registration_attempts >= self.settings.registration_max_attempts
            else f"Payment not confirmed within {self.settings.payment_expiry_minutes} minutes"
        )
        try:
            return await self._guarded(
                order,
                {
                    "status": OrderStatus.PENDING_PAYMENT,
                    "submission_token": None,
                    "supplier_order_id": None,
                },
                {"status": OrderStatus.EXPIRED, "error_message": reason},
                event_type="order.expired",
                event_data={"reason": reason},
            )
        except ReconciliationConflict as conflict:
            return await self._absorb(order, conflict, "expire")

    async def reconcile_pending_payment(self, order: Order) -> Order:
        """
        Refresh an unconfirmed order: poll the gateway or retry registration,
        then expire it if its window has elapsed.

        A failed poll says nothing about the payment, so expiry then waits an
        extra `expiry_poll_failure_grace_minutes`.

        Returns:
            Order: The order after reconciliation
        """
        if order.status != OrderStatus.PENDING_PAYMENT.value or order.submission_token is not None:
            return order

        poll_failed = False
        if order.gateway_tracking_id:
            try:
                status = await self.gateway.get_status(order.gateway_tracking_id)
            except GatewayError as e:
                poll_failed = True
                logger.warning(
                    "payment_status_poll_failed",
                    order_id=str(order.id),
                    error=str(e),
                    code=e.code,
                )
            else:
                order = await self.on_payment_event(
                    order.merchant_reference, status.reported_status, source="poll"
                )
        elif order.registration_attempts < self.settings.registration_max_attempts:
            order = await self.register_payment(order)

        if poll_failed:
            window = timedelta(
                minutes=self.settings.payment_expiry_minutes
                + self.settings.expiry_poll_failure_grace_minutes
            )
            if self.now() - as_utc(order.created_at) < window:
                return order
        return await self.expire_order(order)

    async def reconcile(self, order: Order, result: Optional[StatusResult] = None) -> Order:
        """Dispatch one order to the reconciliation step for its status."""
        if order.submission_token is not None:
            return await self.recover_stale_claim(order)
        if order.status == OrderStatus.PROCESSING.value:
            return await self.reconcile_supplier_status(order, result)
        if order.status == OrderStatus.PENDING_PAYMENT.value:
            return await self.reconcile_pending_payment(order)
        if order.status == OrderStatus.SUPPLIER_ERROR.value:
            return await self.retry_supplier_submission(order)
        return order

    async def get_order(self, order_id: uuid.UUID | str) -> Order:
        """
        Fetch an order by id.

        Raises:
            OrderNotFoundError: If the id is malformed or unknown
        """
        try:
            order = await self.store.get(order_id)
        except ValueError:
            order = None
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def get_order_by_reference(self, merchant_reference: str) -> Order:
        """
        Fetch an order by merchant reference.

        Raises:
            OrderNotFoundError: If no order has this reference
        """
        order = await self.store.get_by_reference(merchant_reference)
        if order is None:
            raise OrderNotFoundError(f"Order with reference '{merchant_reference}' not found")
        return order

    async def list_orders_for_user(
        self, user_ref: str, page: int = 1, limit: int = 10
    ) -> Tuple[List[Order], int]:
        """List a user's orders newest first; returns (orders, total)."""
        page, limit = clamp_page(page, limit)
        return await self.store.list_for_user(user_ref, page, limit)

    async def admin_list_orders(
        self, status: Optional[str] = None, page: int = 1, limit: int = 25
    ) -> Tuple[List[Order], int]:
        """
        List all orders newest first, optionally filtered by status.

        Raises:
            ValidationError: If the status filter is not a known status
        """
        status_filter: Optional[OrderStatus] = None
        if status:
            try:
                status_filter = OrderStatus(status)
            except ValueError as e:
                raise ValidationError(f"Invalid status: {status}") from e
        page, limit = clamp_page(page, limit)
        return await self.store.list_all(status_filter, page, limit)

    async def order_stats_for_user(self, user_ref: str) -> Dict[str, int]:
        """Dashboard counts of a user's pending, active and completed orders."""
        counts = await self.store.count_by_status(user_ref)
        pending = counts.get(OrderStatus.PENDING_PAYMENT.value, 0) + counts.get(
            OrderStatus.PAYMENT_FAILED.value, 0
        )
        active = sum(counts.get(status.value, 0) for status in ACTIVE_STATUSES)
        completed = counts.get(OrderStatus.COMPLETED.value, 0) + counts.get(
            OrderStatus.PARTIALLY_COMPLETED.value, 0
        )
        return {
            "pending_orders": pending,
            "active_orders": active,
            "completed_orders": completed,
            "total_orders": sum(counts.values()),
        }

    async def admin_force_status(
        self,
        order_id: uuid.UUID | str,
        target: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Order:
        """
        Manually correct an order's status.

        Terminal orders are never changed, and an order with a supplier
        submission in flight cannot be forced until the outcome is recorded
        or the claim goes stale.

        Args:
            order_id: Order id
            target: Requested status
            reason: Operator note stored on the audit event
            actor: Operator identity stored on the audit event

        Returns:
            Order: The updated order

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If the correction is not allowed
        """
        order = await self.get_order(order_id)
        try:
            target_status = OrderStatus(target)
        except ValueError as e:
            raise InvalidTransitionError(order.status, str(target)) from e

        if order.status == target_status.value:
            logger.info("admin_force_noop", order_id=str(order.id), status=order.status)
            return order
        if not can_force(order.status, target_status):
            raise InvalidTransitionError(order.status, target_status.value)
        if order.submission_token is not None and not self.claim_is_stale(order):
            raise InvalidTransitionError(order.status, target_status.value)

        values: Dict[str, Any] = {"status": target_status}
        if target_status is OrderStatus.COMPLETED and order.payment_status != "COMPLETED":
            values["payment_status"] = "COMPLETED"
        if target_status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED):
            values["error_message"] = None
        event_data: Dict[str, Any] = {"reason": reason, "actor": actor}
        if order.submission_token is not None:
            values["submission_token"] = None
            event_data["stale_claim"] = str(order.submission_token)

        try:
            updated = await self._guarded(
                order,
                {"status": order.status, "submission_token": order.submission_token},
                values,
                event_type="order.admin_forced",
                event_data=event_data,
            )
        except ReconciliationConflict as e:
            current = await self.get_order(order.id)
            raise InvalidTransitionError(current.status, target_status.value) from e

        logger.warning(
            "order_status_forced",
            order_id=str(order.id),
            from_status=order.status,
            to_status=target_status.value,
            actor=actor,
            reason=reason,
        )
        return updated


def build_reconciliation_engine(settings: Optional[Settings] = None) -> ReconciliationEngine:
    """
    Wire the engine with the configured Pesapal and supplier adapters.

    The catalog is created empty; callers load it with `catalog.refresh()`.
    """
    settings = settings or get_settings()
    supplier = SupplierClient(settings)
    catalog = ServiceCatalog(source=supplier, overrides=settings.service_overrides)
    return ReconciliationEngine(
        catalog,
        gateway=PesapalClient(settings),
        supplier=supplier,
        settings=settings,
    )
