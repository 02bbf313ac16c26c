"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreateOrderRequest(BaseModel):
    """Request schema for creating an engagement order."""

    merchant_reference: str = Field(
        ..., min_length=1, max_length=255, description="Caller-generated idempotency reference"
    )
    user_ref: str = Field(..., min_length=1, description="Purchasing user reference")
    platform: str = Field(..., min_length=1, description="Platform, e.g. instagram")
    service_name: str = Field(..., min_length=1, description="Service, e.g. followers")
    quality: str = Field(default="standard", description="Quality tier (standard/high)")
    target_link: str = Field(..., min_length=1, description="Profile or post to deliver to")
    quantity: int = Field(..., gt=0, description="Quantity to deliver")
    amount: Decimal = Field(..., ge=0, description="Pre-computed price")
    currency: str = Field(default="KES", min_length=3, max_length=3, description="Currency code")
    callback_url: Optional[str] = Field(default=None, description="Buyer redirect after payment")
    billing_address: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional Pesapal billing address fields"
    )

    @field_validator("platform", "quality")
    @classmethod
    def lowercase(cls, v: str) -> str:
        """Selectors are stored lowercase."""
        return v.strip().lower()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "merchant_reference": "m1",
                    "user_ref": "user-42",
                    "platform": "instagram",
                    "service_name": "followers",
                    "quality": "standard",
                    "target_link": "https://instagram.com/example",
                    "quantity": 1000,
                    "amount": "450.00",
                    "currency": "KES",
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Full order view."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Order ID")
    merchant_reference: str
    gateway_tracking_id: Optional[str] = None
    redirect_url: Optional[str] = Field(default=None, description="Pesapal payment page")
    user_ref: str
    platform: str
    service_name: str
    quality: str
    target_link: str
    quantity: int
    amount: Decimal
    currency: str
    status: str = Field(..., description="Order lifecycle status")
    payment_status: Optional[str] = None
    supplier_order_id: Optional[str] = None
    supplier_status: Optional[str] = None
    supplier_remains: Optional[int] = None
    supplier_charge: Optional[str] = None
    supplier_start_count: Optional[int] = None
    error_message: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OrderStatusResponse(BaseModel):
    """Public status view, polled by the client after payment."""

    model_config = ConfigDict(from_attributes=True)

    merchant_reference: str
    status: str
    payment_status: Optional[str] = None
    redirect_url: Optional[str] = None
    supplier_status: Optional[str] = None
    supplier_remains: Optional[int] = None
    updated_at: datetime


class OrderListResponse(BaseModel):
    """Paginated order list."""

    orders: List[OrderResponse]
    page: int
    pages: int
    total: int


class OrderStatsResponse(BaseModel):
    """Dashboard counts for one user."""

    pending_orders: int
    active_orders: int
    completed_orders: int
    total_orders: int


class ForceStatusRequest(BaseModel):
    """Request schema for a manual status correction."""

    status: str = Field(..., description="Target status")
    reason: Optional[str] = Field(default=None, max_length=500, description="Operator note")
    actor: Optional[str] = Field(default=None, description="Operator identity")


class SweepResponse(BaseModel):
    """Response schema for a manually triggered sweep."""

    started_at: str
    finished_at: Optional[str] = None
    skipped: bool
    selected: int
    reconciled: int
    failed: int
    transitions: Dict[str, int]
    errors: Dict[str, str]


class CatalogRefreshResponse(BaseModel):
    """Response schema for a catalog refresh."""

    services: int
    loaded_at: Optional[datetime] = None


class SupplierBalanceResponse(BaseModel):
    """Supplier account balance."""

    balance: str
    currency: str


class IpnAcknowledgement(BaseModel):
    """Acknowledgement body Pesapal expects from the IPN endpoint."""

    orderNotificationType: str
    orderTrackingId: str
    orderMerchantReference: str
    status: int


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
