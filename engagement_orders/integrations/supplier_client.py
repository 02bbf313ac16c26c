"""
Supplier (SMM panel v2) API client.

Single endpoint, form-encoded POST with `key` and `action`. Vendor errors
arrive as `{"error": "..."}` with HTTP 200; batch actions report errors per
id, which are returned as `VendorError` values instead of failing the batch.
"""
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from engagement_orders.config import Settings, get_settings
from engagement_orders.integrations.results import (
    CancelResult,
    RefillResult,
    RefillStatus,
    StatusResult,
    SupplierBalance,
    SupplierOrderStatus,
    VendorError,
)
from engagement_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 100


class SupplierError(Exception):
    """Raised when the supplier rejects a request or cannot be reached."""

    def __init__(self, message: str, raw: Optional[Any] = None):
        """
        Initialize supplier error.

        Args:
            message: Error message
            raw: Raw vendor payload, if any
        """
        super().__init__(message)
        self.raw = raw


class SupplierTimeoutError(SupplierError):
    """Raised when a supplier call times out; the outcome is unknown."""

    pass


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _vendor_error(payload: Any) -> Optional[VendorError]:
    """Extract a per-id `{"error": ...}` entry."""
    if isinstance(payload, dict) and "error" in payload:
        return VendorError(code="vendor_error", message=str(payload["error"]))
    return None


def _parse_order_status(order_id: str, payload: Any) -> StatusResult:
    error = _vendor_error(payload)
    if error is not None:
        return error
    if not isinstance(payload, dict) or not isinstance(payload.get("status"), str):
        return VendorError(code="invalid_payload", message=f"Unexpected status payload: {payload!r}")
    charge = payload.get("charge")
    return SupplierOrderStatus(
        order_id=order_id,
        status=payload["status"],
        remains=_to_int(payload.get("remains")),
        charge=str(charge) if charge is not None else None,
        start_count=_to_int(payload.get("start_count")),
        currency=payload.get("currency"),
    )


def _validate_batch(order_ids: Iterable[Any]) -> List[str]:
    ids = [str(order_id).strip() for order_id in order_ids if str(order_id).strip()]
    if len(ids) > MAX_BATCH_SIZE:
        raise ValueError(f"At most {MAX_BATCH_SIZE} ids per batch, got {len(ids)}")
    return ids


class SupplierClient:
    """
    Async client for the supplier API.

    Calls are never retried here; the reconciliation engine decides whether
    a failed submission may be attempted again.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize supplier client.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.settings = settings or get_settings()
        self._transport = transport

    async def _request(self, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        POST one action to the supplier endpoint.

        Raises:
            SupplierTimeoutError: If the call timed out
            SupplierError: On transport, HTTP or top-level vendor errors
        """
        if not self.settings.supplier_api_key:
            raise SupplierError("Supplier API key is not configured")

        data = {"key": self.settings.supplier_api_key, "action": action}
        data.update({k: str(v) for k, v in (params or {}).items()})

        logger.debug("supplier_request", action=action, params=params)
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.supplier_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(self.settings.supplier_api_url, data=data)
        except httpx.TimeoutException as e:
            metrics.record_supplier_call(action, "timeout", time.monotonic() - start)
            logger.error("supplier_request_timeout", action=action, error=str(e))
            raise SupplierTimeoutError(f"Supplier action '{action}' timed out") from e
        except httpx.HTTPError as e:
            metrics.record_supplier_call(action, "network_error", time.monotonic() - start)
            logger.error("supplier_request_failed", action=action, error=str(e))
            raise SupplierError(f"Supplier action '{action}' failed: {e}") from e

        duration = time.monotonic() - start
        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if response.status_code >= 400:
            metrics.record_supplier_call(action, f"http_{response.status_code}", duration)
            logger.error(
                "supplier_http_error",
                action=action,
                status_code=response.status_code,
                body=payload,
            )
            raise SupplierError(
                f"Supplier action '{action}' returned HTTP {response.status_code}", raw=payload
            )

        if isinstance(payload, str):
            metrics.record_supplier_call(action, "invalid_payload", duration)
            raise SupplierError(f"Supplier action '{action}' returned non-JSON body", raw=payload)

        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            metrics.record_supplier_call(action, "vendor_error", duration)
            logger.warning("supplier_vendor_error", action=action, error=payload["error"])
            raise SupplierError(payload["error"], raw=payload)

        metrics.record_supplier_call(action, "success", duration)
        return payload

    async def list_services(self) -> List[Dict[str, Any]]:
        """
        Fetch the raw supplier service list.

        Returns:
            List[Dict[str, Any]]: Vendor service rows

        Raises:
            SupplierError: If the vendor does not return a list
        """
        payload = await self._request("services")
        if not isinstance(payload, list):
            raise SupplierError("Service list is not an array", raw=payload)
        return payload

    async def place_order(self, service_id: int, link: str, quantity: int) -> str:
        """
        Place a delivery order.

        Args:
            service_id: Supplier service id
            link: Target link
            quantity: Quantity to deliver

        Returns:
            str: Supplier order id

        Raises:
            SupplierTimeoutError: If the call timed out (outcome unknown)
            SupplierError: If the supplier rejected the order
        """
        logger.info(
            "supplier_placing_order",
            service_id=service_id,
            quantity=quantity,
        )
        payload = await self._request(
            "add", {"service": service_id, "link": link, "quantity": quantity}
        )
        order_id = payload.get("order") if isinstance(payload, dict) else None
        if isinstance(order_id, bool) or _to_int(order_id) is None:
            raise SupplierError("Supplier order id missing or invalid", raw=payload)

        logger.info("supplier_order_placed", supplier_order_id=str(order_id))
        return str(_to_int(order_id))

    async def get_status(self, order_id: str) -> SupplierOrderStatus:
        """
        Fetch the status of one order.

        Raises:
            SupplierError: If the vendor rejected the id or the payload is malformed
        """
        payload = await self._request("status", {"order": order_id})
        result = _parse_order_status(str(order_id), payload)
        if isinstance(result, VendorError):
            raise SupplierError(result.message, raw=payload)
        return result

    async def get_batch_status(self, order_ids: Iterable[Any]) -> Dict[str, StatusResult]:
        """
        Fetch statuses for up to 100 orders in one call.

        Args:
            order_ids: Supplier order ids

        Returns:
            Dict[str, StatusResult]: Per-id status or VendorError; every
            requested id is present

        Raises:
            ValueError: If more than 100 ids are given
            SupplierError: If the whole request failed
        """
        ids = _validate_batch(order_ids)
        if not ids:
            return {}

        payload = await self._request("status", {"orders": ",".join(ids)})
        if not isinstance(payload, dict):
            raise SupplierError("Batch status response is not an object", raw=payload)

        results: Dict[str, StatusResult] = {}
        for order_id in ids:
            if order_id not in payload:
                results[order_id] = VendorError(code="missing", message="No status returned")
                continue
            results[order_id] = _parse_order_status(order_id, payload[order_id])

        failed = sum(1 for r in results.values() if isinstance(r, VendorError))
        logger.info("supplier_batch_status", requested=len(ids), failed=failed)
        return results

    async def get_balance(self) -> SupplierBalance:
        """Fetch the account balance."""
        payload = await self._request("balance")
        if not isinstance(payload, dict) or "balance" not in payload or not payload.get("currency"):
            raise SupplierError("Invalid balance response", raw=payload)
        return SupplierBalance(balance=str(payload["balance"]), currency=str(payload["currency"]))

    async def request_refill(self, order_id: str) -> str:
        """
        Request a refill for one order.

        Returns:
            str: Refill id
        """
        payload = await self._request("refill", {"order": order_id})
        refill_id = payload.get("refill") if isinstance(payload, dict) else None
        if refill_id is None or isinstance(refill_id, dict):
            raise SupplierError("Refill id missing in response", raw=payload)
        return str(refill_id)

    async def request_refills(self, order_ids: Iterable[Any]) -> Dict[str, RefillResult]:
        """Request refills for up to 100 orders; returns refill id or VendorError per id."""
        ids = _validate_batch(order_ids)
        if not ids:
            return {}
        payload = await self._request("refill", {"orders": ",".join(ids)})
        return self._per_order(ids, payload, "refill", lambda value: str(value))

    async def get_refill_status(self, refill_id: str) -> RefillStatus:
        """Fetch the status of a refill request."""
        payload = await self._request("refill_status", {"refill": refill_id})
        status = payload.get("status") if isinstance(payload, dict) else None
        if not isinstance(status, str):
            raise SupplierError("Refill status missing in response", raw=payload)
        return RefillStatus(refill_id=str(refill_id), status=status)

    async def request_cancel(self, order_ids: Iterable[Any]) -> Dict[str, CancelResult]:
        """Request cancellation of up to 100 orders; returns True or VendorError per id."""
        ids = _validate_batch(order_ids)
        if not ids:
            return {}
        payload = await self._request("cancel", {"orders": ",".join(ids)})
        return self._per_order(ids, payload, "cancel", lambda value: bool(value))

    @staticmethod
    def _per_order(
        ids: List[str], payload: Any, field: str, convert: Any
    ) -> Dict[str, Any]:
        """Map a `[{"order": id, field: value | {"error": ...}}]` response onto ids."""
        if not isinstance(payload, list):
            raise SupplierError(f"{field} response is not an array", raw=payload)

        by_order: Dict[str, Any] = {}
        for entry in payload:
            if isinstance(entry, dict) and "order" in entry:
                by_order[str(entry["order"])] = entry.get(field)

        results: Dict[str, Any] = {}
        for order_id in ids:
            if order_id not in by_order:
                results[order_id] = VendorError(code="missing", message=f"No {field} result returned")
                continue
            value = by_order[order_id]
            error = _vendor_error(value)
            if error is not None:
                results[order_id] = error
            elif value is None:
                results[order_id] = VendorError(code="invalid_payload", message=f"Empty {field} result")
            else:
                results[order_id] = convert(value)
        return results
