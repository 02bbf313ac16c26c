"""
Pesapal IPN (instant payment notification) handler.

Notifications are unauthenticated, so their fields are only used to find
the order: the tracking id must match the stored order, and the payment
status is always re-fetched from Pesapal before the engine sees it.
Pesapal expects HTTP 200 with an acknowledgement body whose `status` is
200 when the notification was processed.
"""
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping

import structlog

from engagement_orders.core.exceptions import OrderNotFoundError
from engagement_orders.integrations.pesapal_client import GatewayError
from engagement_orders.monitoring.logging import order_context
from engagement_orders.monitoring.metrics import metrics

if TYPE_CHECKING:
    from engagement_orders.core.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)


def _field(params: Mapping[str, Any], name: str) -> str:
    """Read a field sent as PascalCase or camelCase."""
    camel = name[0].lower() + name[1:]
    value = params.get(name) or params.get(camel) or ""
    return str(value).strip()


@dataclass(frozen=True)
class IpnNotification:
    """Fields Pesapal sends with each notification."""

    tracking_id: str
    merchant_reference: str
    notification_type: str = ""

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "IpnNotification":
        return cls(
            tracking_id=_field(params, "OrderTrackingId"),
            merchant_reference=_field(params, "OrderMerchantReference"),
            notification_type=_field(params, "OrderNotificationType"),
        )

    def acknowledgement(self, status: int) -> Dict[str, Any]:
        """Response body Pesapal expects."""
        return {
            "orderNotificationType": self.notification_type,
            "orderTrackingId": self.tracking_id,
            "orderMerchantReference": self.merchant_reference,
            "status": status,
        }


class IpnHandler:
    """
    Processes Pesapal notifications through the reconciliation engine.

    Never raises: every outcome is expressed in the acknowledgement status.
    """

    def __init__(self, engine: "ReconciliationEngine"):
        """
        Initialize IPN handler.

        Args:
            engine: Reconciliation engine (its gateway adapter is used for status)
        """
        self.engine = engine

    async def handle(self, notification: IpnNotification) -> Dict[str, Any]:
        """
        Process one notification.

        Args:
            notification: Parsed notification

        Returns:
            Dict[str, Any]: Acknowledgement body
        """
        start = time.monotonic()
        log = logger.bind(
            tracking_id=notification.tracking_id,
            merchant_reference=notification.merchant_reference,
            notification_type=notification.notification_type,
        )
        log.info("ipn_received")

        status = await self._process(notification, log)

        outcome = {200: "processed", 404: "not_found"}.get(status, "failed")
        metrics.record_ipn_event(outcome, time.monotonic() - start)
        log.info("ipn_acknowledged", status=status)
        return notification.acknowledgement(status)

    async def _process(self, notification: IpnNotification, log: Any) -> int:
        if not notification.tracking_id or not notification.merchant_reference:
            log.warning("ipn_missing_fields")
            return 500

        order = await self.engine.store.get_by_reference(notification.merchant_reference)
        if order is None:
            log.warning("ipn_order_not_found")
            return 404

        if order.gateway_tracking_id and order.gateway_tracking_id != notification.tracking_id:
            log.warning("ipn_tracking_id_mismatch", stored_tracking_id=order.gateway_tracking_id)
            return 500

        try:
            transaction = await self.engine.gateway.get_status(notification.tracking_id)
        except GatewayError as e:
            log.error("ipn_status_fetch_failed", error=str(e), code=e.code)
            return 500

        reported_reference = transaction.raw.get("merchant_reference")
        reported = str(reported_reference) if reported_reference is not None else ""
        if order.gateway_tracking_id:
            if reported and reported != notification.merchant_reference:
                log.warning("ipn_reference_mismatch", reported_reference=reported_reference)
                return 500
        elif reported != notification.merchant_reference:
            # No stored tracking id to correlate; Pesapal must vouch for the pairing
            log.warning("ipn_tracking_id_unverified", reported_reference=reported_reference)
            return 500

        try:
            with order_context(order):
                if not order.gateway_tracking_id:
                    await self.engine.attach_tracking_id(order, notification.tracking_id)
                updated = await self.engine.on_payment_event(
                    notification.merchant_reference, transaction.reported_status, source="webhook"
                )
        except OrderNotFoundError:
            return 404
        except Exception as e:
            log.error("ipn_processing_failed", error=str(e), error_type=type(e).__name__)
            return 500

        log.info("ipn_processed", payment_status=transaction.reported_status, status=updated.status)
        return 200
