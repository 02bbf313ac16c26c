"""
Reconciliation scheduler and background worker.

Every `sweep_interval_seconds` the worker runs one sweep: it selects a
bounded batch of orders needing a status refresh and hands each to the
reconciliation engine. Sweeps never overlap within a process (asyncio lock)
and, when enabled, across instances (storage lease).
"""
import asyncio
import os
import signal
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from engagement_orders.config import Settings
from engagement_orders.core.reconciliation import ReconciliationEngine, build_reconciliation_engine
from engagement_orders.core.state_machine import OrderStatus
from engagement_orders.database.connection import close_db, init_db
from engagement_orders.database.models import Order
from engagement_orders.integrations.results import StatusResult
from engagement_orders.integrations.supplier_client import SupplierError
from engagement_orders.monitoring.logging import order_context, setup_logging
from engagement_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEP_LEASE_NAME = "reconciliation-sweep"


@dataclass
class SweepReport:
    """Outcome of one reconciliation sweep."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    selected: int = 0
    reconciled: int = 0
    failed: int = 0
    transitions: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "selected": self.selected,
            "reconciled": self.reconciled,
            "failed": self.failed,
            "transitions": dict(self.transitions),
            "errors": dict(self.errors),
        }


class ReconciliationScheduler:
    """
    Runs reconciliation sweeps.

    `run_sweep()` is the deterministic entry point used by the worker loop,
    the admin API and tests.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
        holder: Optional[str] = None,
    ):
        """
        Initialize scheduler.

        Args:
            engine: Reconciliation engine
            settings: Optional settings (defaults to the engine's)
            holder: Lease holder identity (defaults to host:pid)
        """
        self.engine = engine
        self.settings = settings or engine.settings
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}"
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_sweep(self) -> SweepReport:
        """
        Run one sweep unless another is in progress.

        Returns:
            SweepReport: Sweep outcome; `skipped` is set if it did not run
        """
        report = SweepReport(started_at=self.engine.now())

        if self._lock.locked():
            logger.info("sweep_skipped_already_running")
            report.skipped = True
            return report

        async with self._lock:
            if self.settings.sweep_lease_enabled:
                expires_at = self.engine.now() + timedelta(seconds=self.settings.sweep_lease_seconds)
                acquired = await self.engine.store.acquire_lease(
                    SWEEP_LEASE_NAME, self.holder, expires_at
                )
                if not acquired:
                    logger.info("sweep_skipped_lease_held", holder=self.holder)
                    report.skipped = True
                    return report

            start = time.monotonic()
            try:
                await self._sweep(report)
            finally:
                if self.settings.sweep_lease_enabled:
                    await self.engine.store.release_lease(SWEEP_LEASE_NAME, self.holder)

            report.finished_at = self.engine.now()
            duration = time.monotonic() - start
            metrics.record_sweep(report.reconciled, report.failed, duration)
            logger.info(
                "sweep_completed",
                selected=report.selected,
                reconciled=report.reconciled,
                failed=report.failed,
                transitions=report.transitions,
                duration_seconds=round(duration, 3),
            )
        return report

    async def _sweep(self, report: SweepReport) -> None:
        now = self.engine.now()
        orders = await self.engine.store.select_for_sweep(
            processing_cutoff=now - timedelta(minutes=self.settings.processing_refresh_minutes),
            pending_cutoff=now - timedelta(minutes=self.settings.pending_payment_grace_minutes),
            supplier_max_retries=self.settings.supplier_max_retries,
            limit=self.settings.sweep_batch_size,
            claim_cutoff=now - timedelta(minutes=self.settings.submission_claim_timeout_minutes),
        )
        report.selected = len(orders)
        logger.info("sweep_started", selected=len(orders))

        processing = [
            o for o in orders
            if o.status == OrderStatus.PROCESSING.value and o.supplier_order_id
        ]
        statuses = await self._fetch_supplier_statuses(processing, report)

        for order in orders:
            if order.status == OrderStatus.PROCESSING.value:
                result = statuses.get(order.supplier_order_id) if statuses is not None else None
                if result is None:
                    self._record_failure(report, order, "Supplier status unavailable")
                    continue
                await self._reconcile_one(report, order, result)
            else:
                await self._reconcile_one(report, order)

    async def _fetch_supplier_statuses(
        self, processing: List[Order], report: SweepReport
    ) -> Optional[Dict[str, StatusResult]]:
        """One batch status call for every Processing order; None if it failed."""
        if not processing:
            return {}
        try:
            return await self.engine.supplier.get_batch_status(
                [o.supplier_order_id for o in processing]
            )
        except SupplierError as e:
            logger.error("sweep_batch_status_failed", orders=len(processing), error=str(e))
            return None

    async def _reconcile_one(
        self, report: SweepReport, order: Order, result: Optional[StatusResult] = None
    ) -> None:
        try:
            with order_context(order):
                updated = await self.engine.reconcile(order, result)
        except Exception as e:
            self._record_failure(report, order, str(e))
            return

        report.reconciled += 1
        if updated.status != order.status:
            report.transitions[updated.status] = report.transitions.get(updated.status, 0) + 1

    @staticmethod
    def _record_failure(report: SweepReport, order: Order, error: str) -> None:
        report.failed += 1
        report.errors[order.merchant_reference] = error
        logger.error(
            "sweep_order_failed",
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            status=order.status,
            error=error,
        )


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Loads the service catalog, then runs a sweep every interval until
    SIGINT or SIGTERM.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
    """
    setup_logging()

    engine = build_reconciliation_engine()
    interval = interval_seconds or engine.settings.sweep_interval_seconds
    scheduler = ReconciliationScheduler(engine)

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    await init_db()
    try:
        await engine.catalog.refresh()
    except Exception as e:
        # Sweeps still poll payments and statuses; only retries need the catalog
        logger.error("reconciliation_worker_catalog_unavailable", error=str(e))

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await scheduler.run_sweep()
            except Exception as e:
                logger.error("sweep_execution_error", error=str(e))
                # Continue running even if one sweep fails

            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Order reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
