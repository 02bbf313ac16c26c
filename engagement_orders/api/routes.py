"""
API routes for engagement orders.
"""
import math
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from engagement_orders.core.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from engagement_orders.core.reconciliation import OrderRequest, ReconciliationEngine, clamp_page
from engagement_orders.database.models import Order
from engagement_orders.integrations.supplier_client import SupplierError
from engagement_orders.integrations.webhook_handler import IpnHandler, IpnNotification
from engagement_orders.monitoring.health import HealthCheck
from engagement_orders.workers.reconciliation_worker import ReconciliationScheduler

from .schemas import (
    CatalogRefreshResponse,
    CreateOrderRequest,
    ForceStatusRequest,
    HealthCheckResponse,
    IpnAcknowledgement,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OrderStatusResponse,
    SupplierBalanceResponse,
    SweepResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
user_router = APIRouter(prefix="/users", tags=["orders"])
payment_router = APIRouter(prefix="/payment", tags=["payment"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_engine(request: Request) -> ReconciliationEngine:
    """Reconciliation engine attached to the application."""
    return request.app.state.engine


def get_scheduler(request: Request) -> ReconciliationScheduler:
    """Scheduler attached to the application."""
    return request.app.state.scheduler


def get_ipn_handler(request: Request) -> IpnHandler:
    """IPN handler attached to the application."""
    return request.app.state.ipn_handler


def get_health_check(request: Request) -> HealthCheck:
    """Health check service attached to the application."""
    return request.app.state.health_check


def _order_list(orders: List[Order], page: int, limit: int, total: int) -> Dict[str, Any]:
    return {
        "orders": [OrderResponse.model_validate(o) for o in orders],
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
        "total": total,
    }


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order and register it with Pesapal; idempotent on merchant_reference",
)
async def create_order(
    request: CreateOrderRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """
    Create an order.

    Repeating a request with the same merchant reference and payload
    returns the stored order.
    """
    try:
        logger.info(
            "api_create_order_request",
            merchant_reference=request.merchant_reference,
            platform=request.platform,
            service_name=request.service_name,
            quantity=request.quantity,
        )

        order = await engine.create_order(
            OrderRequest(
                merchant_reference=request.merchant_reference,
                user_ref=request.user_ref,
                platform=request.platform,
                service_name=request.service_name,
                quality=request.quality,
                target_link=request.target_link,
                quantity=request.quantity,
                amount=request.amount,
                currency=request.currency,
                callback_url=request.callback_url,
                billing_address=request.billing_address,
            )
        )
        return OrderResponse.model_validate(order)

    except ValidationError as e:
        logger.warning("api_create_order_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except Exception as e:
        logger.error("api_create_order_unexpected_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred",
        )


@order_router.get(
    "/by-reference/{merchant_reference}",
    response_model=OrderStatusResponse,
    summary="Get order status by merchant reference",
)
async def get_order_by_reference(
    merchant_reference: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """Public status lookup used by the client after the payment redirect."""
    try:
        order = await engine.get_order_by_reference(merchant_reference)
        return OrderStatusResponse.model_validate(order)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """Get order by ID."""
    try:
        order = await engine.get_order(order_id)
        return OrderResponse.model_validate(order)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@user_router.get(
    "/{user_ref}/orders",
    response_model=OrderListResponse,
    summary="List a user's orders",
)
async def list_user_orders(
    user_ref: str,
    page: int = Query(default=1),
    limit: int = Query(default=10),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """List a user's orders, newest first."""
    page, limit = clamp_page(page, limit)
    orders, total = await engine.list_orders_for_user(user_ref, page, limit)
    return _order_list(orders, page, limit, total)


@user_router.get(
    "/{user_ref}/orders/stats",
    response_model=OrderStatsResponse,
    summary="Order counts for a user",
)
async def user_order_stats(
    user_ref: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, int]:
    """Pending, active and completed order counts."""
    return await engine.order_stats_for_user(user_ref)


async def _ipn(request: Request, handler: IpnHandler, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    params: Dict[str, Any] = dict(request.query_params)
    if body:
        params.update(body)
    return await handler.handle(IpnNotification.from_params(params))


@payment_router.post(
    "/ipn",
    response_model=IpnAcknowledgement,
    summary="Pesapal IPN endpoint",
    description="Instant payment notification; status is always re-fetched from Pesapal",
)
async def pesapal_ipn_post(
    request: Request,
    handler: IpnHandler = Depends(get_ipn_handler),
) -> Dict[str, Any]:
    """Handle a POST notification (JSON body or query parameters)."""
    body: Optional[Dict[str, Any]] = None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("api_ipn_invalid_json")
            payload = None
        body = payload if isinstance(payload, dict) else None
    return await _ipn(request, handler, body)


@payment_router.get(
    "/ipn",
    response_model=IpnAcknowledgement,
    summary="Pesapal IPN endpoint (GET)",
)
async def pesapal_ipn_get(
    request: Request,
    handler: IpnHandler = Depends(get_ipn_handler),
) -> Dict[str, Any]:
    """Handle a GET notification."""
    return await _ipn(request, handler, None)


@admin_router.get(
    "/orders",
    response_model=OrderListResponse,
    summary="List all orders",
)
async def admin_list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1),
    limit: int = Query(default=25),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """List all orders, optionally filtered by status."""
    page, limit = clamp_page(page, limit)
    try:
        orders, total = await engine.admin_list_orders(status_filter, page, limit)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _order_list(orders, page, limit, total)


@admin_router.post(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Force order status",
    description="Manual correction; terminal orders cannot be changed",
)
async def admin_force_status(
    order_id: str,
    request: ForceStatusRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """Manually correct an order's status."""
    try:
        order = await engine.admin_force_status(
            order_id, request.status, reason=request.reason, actor=request.actor
        )
        return OrderResponse.model_validate(order)

    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except InvalidTransitionError as e:
        logger.warning("api_force_status_rejected", order_id=order_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@admin_router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run a reconciliation sweep",
)
async def run_sweep(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Trigger one sweep now; skipped if another is running."""
    report = await scheduler.run_sweep()
    return report.to_dict()


@admin_router.post(
    "/catalog/refresh",
    response_model=CatalogRefreshResponse,
    summary="Reload the supplier service catalog",
)
async def refresh_catalog(
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Reload services from the supplier; the previous catalog stays on failure."""
    try:
        services = await engine.catalog.refresh()
    except SupplierError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Catalog refresh failed: {str(e)}",
        )
    return {"services": services, "loaded_at": engine.catalog.loaded_at}


@admin_router.get(
    "/supplier/balance",
    response_model=SupplierBalanceResponse,
    summary="Supplier account balance",
)
async def supplier_balance(
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, str]:
    """Current supplier balance."""
    try:
        balance = await engine.supplier.get_balance()
    except SupplierError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Balance check failed: {str(e)}",
        )
    return {"balance": balance.balance, "currency": balance.currency}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
