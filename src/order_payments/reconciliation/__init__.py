"""Reconciliation between local orders and payment providers.

Features:
- Retry cancellation of provider intents left without a committed order
- Report PENDING orders whose provider already settled the payment
"""

from .models import (
    OrphanOutcome,
    OrphanSweepRecord,
    OrphanSweepResult,
    PendingDiscrepancy,
    PendingReport,
)
from .service import ReconciliationService

__all__ = [
    # Models
    "OrphanOutcome",
    "OrphanSweepRecord",
    "OrphanSweepResult",
    "PendingDiscrepancy",
    "PendingReport",
    # Service
    "ReconciliationService",
]
