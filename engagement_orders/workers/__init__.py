"""Background workers for order reconciliation."""
from .reconciliation_worker import (
    ReconciliationScheduler,
    SweepReport,
    start_reconciliation_worker,
)

__all__ = ["ReconciliationScheduler", "SweepReport", "start_reconciliation_worker"]
