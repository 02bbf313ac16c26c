"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Order creations and status transitions
- Supplier submissions by outcome
- Pesapal and supplier API calls
- IPN notifications
- Reconciliation sweeps
- Service catalog size
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["platform", "currency"],
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

supplier_submissions_total = Counter(
    "supplier_submissions_total",
    "Total supplier submission attempts",
    ["outcome"],  # accepted, rejected, unknown
)

reconciliation_conflicts_total = Counter(
    "reconciliation_conflicts_total",
    "Conditional updates lost to a concurrent writer",
    ["operation"],
)

# Vendor API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total Pesapal API requests",
    ["operation", "status"],
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Pesapal API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

supplier_api_requests_total = Counter(
    "supplier_api_requests_total",
    "Total supplier API requests",
    ["action", "status"],
)

supplier_api_duration_seconds = Histogram(
    "supplier_api_duration_seconds",
    "Supplier API call duration in seconds",
    ["action"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# IPN metrics
ipn_events_total = Counter(
    "ipn_events_total",
    "Total payment notifications received",
    ["status"],  # processed, not_found, failed
)

ipn_processing_duration_seconds = Histogram(
    "ipn_processing_duration_seconds",
    "Payment notification processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Sweep metrics
sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

sweep_orders_total = Counter(
    "sweep_orders_total",
    "Orders handled by reconciliation sweeps",
    ["outcome"],  # reconciled, failed
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of last completed sweep",
)

# Catalog metrics
catalog_services_loaded = Gauge(
    "catalog_services_loaded",
    "Number of supplier services in the catalog",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(platform: str, currency: str) -> None:
        """Record an order creation."""
        orders_created_total.labels(platform=platform, currency=currency).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an order status transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_supplier_submission(outcome: str) -> None:
        """Record a supplier submission outcome."""
        supplier_submissions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_conflict(operation: str) -> None:
        """Record a lost conditional update."""
        reconciliation_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Pesapal API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_supplier_call(action: str, status: str, duration_seconds: float) -> None:
        """Record supplier API call."""
        supplier_api_requests_total.labels(action=action, status=status).inc()
        supplier_api_duration_seconds.labels(action=action).observe(duration_seconds)

    @staticmethod
    def record_ipn_event(status: str, duration_seconds: float) -> None:
        """Record payment notification processing."""
        ipn_events_total.labels(status=status).inc()
        ipn_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_sweep(reconciled: int, failed: int, duration_seconds: float) -> None:
        """Record a completed sweep."""
        sweep_orders_total.labels(outcome="reconciled").inc(reconciled)
        sweep_orders_total.labels(outcome="failed").inc(failed)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def set_catalog_size(size: int) -> None:
        """Set catalog size."""
        catalog_services_loaded.set(size)


# Export singleton instance
metrics = MetricsCollector()
