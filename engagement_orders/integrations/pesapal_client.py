"""
Pesapal v3 API client.

Implements:
- Bearer token acquisition with caching until shortly before expiry
- One transparent replay with a fresh token when a call is rejected with 401
- Order registration, transaction status and IPN URL registration

Vendor failures are never retried here; the caller owns retry policy.
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from engagement_orders.config import Settings, get_settings
from engagement_orders.core.clock import utcnow
from engagement_orders.core.state_machine import PaymentStatusCode, normalize_payment_status
from engagement_orders.integrations.results import GatewayOrderRegistration, TransactionStatus
from engagement_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Refresh this long before the vendor's stated expiry
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
# Pesapal tokens are valid for five minutes when no expiry is reported
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=5)

STATUS_CODES = {
    0: PaymentStatusCode.INVALID,
    1: PaymentStatusCode.COMPLETED,
    2: PaymentStatusCode.FAILED,
    3: PaymentStatusCode.REVERSED,
}


class GatewayError(Exception):
    """Raised when Pesapal rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        raw: Optional[Any] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            code: Vendor or HTTP error code, if any
            raw: Raw vendor payload, if any
        """
        super().__init__(message)
        self.code = code
        self.raw = raw


class TokenRejectedError(GatewayError):
    """Raised when a bearer token is rejected; triggers one replay."""

    pass


def _parse_expiry(value: Any, now: datetime) -> datetime:
    """Parse Pesapal's `expiryDate` (ISO 8601 with up to 7 fractional digits)."""
    if isinstance(value, str) and len(value) >= 19:
        try:
            parsed = datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return now + DEFAULT_TOKEN_LIFETIME
        return parsed.replace(tzinfo=timezone.utc)
    return now + DEFAULT_TOKEN_LIFETIME


def _vendor_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])
    return fallback


def _vendor_code(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("code"):
            return str(error["code"])
        if payload.get("status"):
            return str(payload["status"])
    return None


class PesapalClient:
    """
    Async client for the Pesapal v3 API.

    Features:
    - Cached bearer token guarded against concurrent refreshes
    - 401 replay through tenacity
    - Typed results for every call
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize Pesapal client.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.settings = settings or get_settings()
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

        logger.info(
            "pesapal_client_initialized",
            base_url=self.settings.pesapal_base_url,
            sandbox=self.settings.is_sandbox,
        )

    def _url(self, path: str) -> str:
        return f"{self.settings.pesapal_base_url}{path}"

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Send one HTTP request, translating transport failures.

        Raises:
            GatewayError: On timeout or transport failure
        """
        request_headers = {"Accept": "application/json", "Content-Type": "application/json"}
        request_headers.update(headers or {})

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.request(
                    method, self._url(path), headers=request_headers, json=json, params=params
                )
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.monotonic() - start)
            logger.error("pesapal_request_timeout", operation=operation, error=str(e))
            raise GatewayError(f"Pesapal {operation} timed out", code="timeout") from e
        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, "network_error", time.monotonic() - start)
            logger.error("pesapal_request_failed", operation=operation, error=str(e))
            raise GatewayError(f"Pesapal {operation} failed: {e}", code="network_error") from e

        metrics.record_gateway_call(
            operation, str(response.status_code), time.monotonic() - start
        )
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"Pesapal {operation} returned non-JSON body",
                code=str(response.status_code),
                raw=response.text,
            ) from e

    async def get_token(self) -> str:
        """
        Return a valid bearer token, requesting a new one when needed.

        Returns:
            str: Bearer token

        Raises:
            GatewayError: If the token request fails
        """
        async with self._token_lock:
            now = utcnow()
            if (
                self._token is not None
                and self._token_expires_at is not None
                and now < self._token_expires_at - TOKEN_EXPIRY_MARGIN
            ):
                return self._token

            if not self.settings.pesapal_consumer_key or not self.settings.pesapal_consumer_secret:
                raise GatewayError("Pesapal consumer credentials are not configured")

            logger.info("pesapal_token_requesting")
            response = await self._send(
                "POST",
                "/api/Auth/RequestToken",
                "request_token",
                self.settings.pesapal_timeout_seconds,
                json={
                    "consumer_key": self.settings.pesapal_consumer_key,
                    "consumer_secret": self.settings.pesapal_consumer_secret,
                },
            )
            payload = self._json(response, "request_token")
            token = payload.get("token") if isinstance(payload, dict) else None
            if response.status_code >= 400 or not token:
                logger.error("pesapal_token_failed", status_code=response.status_code, body=payload)
                raise GatewayError(
                    _vendor_message(payload, "OAuth token not found in response"),
                    code=_vendor_code(payload) or str(response.status_code),
                    raw=payload,
                )

            self._token = token
            self._token_expires_at = _parse_expiry(payload.get("expiryDate"), now)
            logger.info("pesapal_token_obtained", expires_at=self._token_expires_at.isoformat())
            return token

    def invalidate_token(self) -> None:
        """Drop the cached token so the next call requests a fresh one."""
        self._token = None
        self._token_expires_at = None

    @retry(
        retry=retry_if_exception_type(TokenRejectedError),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    async def _authorized(
        self,
        method: str,
        path: str,
        operation: str,
        timeout: Optional[float] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Call an authenticated endpoint and return its JSON body.

        Raises:
            TokenRejectedError: If the token is rejected twice in a row
            GatewayError: On any other HTTP or transport failure
        """
        token = await self.get_token()
        response = await self._send(
            method,
            path,
            operation,
            timeout or self.settings.pesapal_timeout_seconds,
            headers={"Authorization": f"Bearer {token}"},
            json=json,
            params=params,
        )

        if response.status_code == 401:
            logger.warning("pesapal_token_rejected", operation=operation)
            self.invalidate_token()
            raise TokenRejectedError(f"Pesapal rejected the token for {operation}", code="401")

        payload = self._json(response, operation)
        if response.status_code >= 400:
            logger.error(
                "pesapal_http_error",
                operation=operation,
                status_code=response.status_code,
                body=payload,
            )
            raise GatewayError(
                _vendor_message(payload, f"Pesapal {operation} returned HTTP {response.status_code}"),
                code=_vendor_code(payload) or str(response.status_code),
                raw=payload,
            )
        return payload

    async def register_order(
        self,
        order: Any,
        callback_url: str,
        notification_id: str,
        billing_address: Optional[Mapping[str, Any]] = None,
    ) -> GatewayOrderRegistration:
        """
        Submit an order request to Pesapal.

        Args:
            order: Order with merchant_reference, amount, currency and description
            callback_url: Buyer-facing redirect target after payment
            notification_id: Registered IPN id
            billing_address: Optional customer details

        Returns:
            GatewayOrderRegistration: Tracking id and redirect URL

        Raises:
            GatewayError: If Pesapal does not confirm the registration
        """
        address: Dict[str, Any] = {
            "email_address": None,
            "phone_number": None,
            "country_code": "",
            "first_name": "",
            "middle_name": "",
            "last_name": "",
            "line_1": "",
            "line_2": "",
            "city": "",
            "state": "",
            "postal_code": None,
            "zip_code": None,
        }
        address.update(billing_address or {})

        body = {
            "id": str(order.merchant_reference),
            "currency": str(order.currency),
            "amount": float(order.amount),
            "description": str(order.description or order.merchant_reference)[:100],
            "callback_url": callback_url,
            "notification_id": notification_id,
            "billing_address": address,
        }

        logger.info(
            "pesapal_registering_order",
            merchant_reference=body["id"],
            amount=body["amount"],
            currency=body["currency"],
        )
        payload = await self._authorized(
            "POST",
            "/api/Transactions/SubmitOrderRequest",
            "submit_order",
            timeout=self.settings.pesapal_submit_timeout_seconds,
            json=body,
        )

        if (
            not isinstance(payload, dict)
            or str(payload.get("status")) != "200"
            or not payload.get("order_tracking_id")
            or not payload.get("redirect_url")
        ):
            logger.error("pesapal_order_rejected", merchant_reference=body["id"], body=payload)
            raise GatewayError(
                _vendor_message(payload, "Order registration not confirmed"),
                code=_vendor_code(payload),
                raw=payload,
            )

        logger.info(
            "pesapal_order_registered",
            merchant_reference=body["id"],
            tracking_id=payload["order_tracking_id"],
        )
        return GatewayOrderRegistration(
            tracking_id=str(payload["order_tracking_id"]),
            redirect_url=str(payload["redirect_url"]),
            merchant_reference=payload.get("merchant_reference"),
        )

    async def get_status(self, tracking_id: str) -> TransactionStatus:
        """
        Query the status of a transaction.

        Missing fields yield an UNKNOWN status rather than an error.

        Args:
            tracking_id: Pesapal order tracking id

        Returns:
            TransactionStatus: Normalized status

        Raises:
            GatewayError: If the request itself fails
        """
        if not tracking_id:
            raise GatewayError("Order tracking id required")

        payload = await self._authorized(
            "GET",
            "/api/Transactions/GetTransactionStatus",
            "transaction_status",
            params={"orderTrackingId": tracking_id},
        )
        if not isinstance(payload, dict):
            logger.warning("pesapal_status_unexpected_payload", tracking_id=tracking_id)
            return TransactionStatus(PaymentStatusCode.UNKNOWN, "", {"body": payload})

        status_code = normalize_payment_status(payload.get("payment_status_description"))
        if status_code is PaymentStatusCode.UNKNOWN:
            raw_code = payload.get("status_code")
            if isinstance(raw_code, int) and not isinstance(raw_code, bool):
                status_code = STATUS_CODES.get(raw_code, PaymentStatusCode.UNKNOWN)

        if status_code is PaymentStatusCode.UNKNOWN:
            logger.warning("pesapal_status_missing_fields", tracking_id=tracking_id, body=payload)

        return TransactionStatus(
            status_code=status_code,
            description=str(payload.get("description") or ""),
            raw=payload,
        )

    async def list_webhooks(self) -> List[Dict[str, Any]]:
        """
        List registered IPN URLs.

        Raises:
            GatewayError: If the response is not a list
        """
        payload = await self._authorized("GET", "/api/URLSetup/GetIpnList", "list_ipn")
        if not isinstance(payload, list):
            raise GatewayError("IPN list is not an array", raw=payload)
        return payload

    async def register_webhook(self, url: str, method: str = "POST") -> str:
        """
        Register an IPN URL, reusing an existing registration for the same URL.

        Args:
            url: Public IPN endpoint
            method: Notification method Pesapal should use (GET or POST)

        Returns:
            str: IPN id

        Raises:
            GatewayError: If registration fails
        """
        if not url:
            raise GatewayError("IPN URL required")

        for entry in await self.list_webhooks():
            if isinstance(entry, dict) and entry.get("url") == url and entry.get("ipn_id"):
                logger.info("pesapal_ipn_already_registered", url=url, ipn_id=entry["ipn_id"])
                return str(entry["ipn_id"])

        payload = await self._authorized(
            "POST",
            "/api/URLSetup/RegisterIPN",
            "register_ipn",
            json={"url": url, "ipn_notification_type": method.upper()},
        )
        if not isinstance(payload, dict) or not payload.get("ipn_id"):
            raise GatewayError(
                _vendor_message(payload, "IPN registration not confirmed"),
                code=_vendor_code(payload),
                raw=payload,
            )

        logger.info("pesapal_ipn_registered", url=url, ipn_id=payload["ipn_id"])
        return str(payload["ipn_id"])
