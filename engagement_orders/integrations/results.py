"""
Typed results returned by the vendor adapters.

Vendor payloads are loosely typed JSON; adapters parse them into these
dataclasses once, so the engine never probes raw dictionaries. Batch calls
return a `VendorError` in place of a result for ids the vendor rejected.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from engagement_orders.core.state_machine import PaymentStatusCode


@dataclass(frozen=True)
class VendorError:
    """Per-id failure reported inside an otherwise successful vendor response."""

    code: str
    message: str


@dataclass(frozen=True)
class GatewayOrderRegistration:
    """Successful Pesapal order registration."""

    tracking_id: str
    redirect_url: str
    merchant_reference: Optional[str] = None


@dataclass(frozen=True)
class TransactionStatus:
    """Normalized Pesapal transaction status."""

    status_code: PaymentStatusCode
    description: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def reported_status(self) -> str:
        """Status string handed to the engine; the raw description when unrecognized."""
        if self.status_code is not PaymentStatusCode.UNKNOWN:
            return self.status_code.value
        return str(self.raw.get("payment_status_description") or PaymentStatusCode.UNKNOWN.value)


@dataclass(frozen=True)
class SupplierOrderStatus:
    """Status of one supplier order."""

    order_id: str
    status: str
    remains: Optional[int] = None
    charge: Optional[str] = None
    start_count: Optional[int] = None
    currency: Optional[str] = None

    @property
    def normalized_status(self) -> str:
        """Lowercased, whitespace-collapsed status for vocabulary matching."""
        return " ".join(self.status.split()).lower()


@dataclass(frozen=True)
class SupplierBalance:
    """Supplier account balance."""

    balance: str
    currency: str


@dataclass(frozen=True)
class RefillStatus:
    """Status of a supplier refill request."""

    refill_id: str
    status: str


StatusResult = Union[SupplierOrderStatus, VendorError]
RefillResult = Union[str, VendorError]
CancelResult = Union[bool, VendorError]
