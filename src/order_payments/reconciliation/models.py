"""Report models for reconciliation runs."""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from ..database.models import utcnow


class OrphanOutcome(str, Enum):
    """What a sweep did with one orphaned intent."""
    CANCELED = "canceled"  # provider intent cancelled
    ORDER_EXISTS = "order_exists"  # a local order references the intent after all
    UNRESOLVED = "unresolved"  # left for manual review


class OrphanSweepRecord(BaseModel):
    """Result of handling a single orphaned intent."""
    orphan_id: str = Field(..., description="Orphaned intent record ID")
    provider: str = Field(..., description="Payment provider")
    provider_reference: str = Field(..., description="Provider intent or order ID")
    order_id: Optional[str] = Field(None, description="Order the intent was created for")
    amount: Decimal = Field(..., description="Amount in the charged currency")
    currency: str = Field(..., description="Charged currency")
    outcome: OrphanOutcome = Field(..., description="What the sweep did")
    detail: Optional[str] = Field(None, description="Why the intent was left unresolved")


class OrphanSweepResult(BaseModel):
    """Summary of an orphaned-intent sweep."""
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(None, description="Time when the sweep finished")
    total_examined: int = Field(default=0)
    total_canceled: int = Field(default=0)
    total_order_exists: int = Field(default=0)
    total_unresolved: int = Field(default=0)
    records: List[OrphanSweepRecord] = Field(default_factory=list)

    def add(self, record: OrphanSweepRecord) -> None:
        self.records.append(record)
        self.total_examined += 1
        if record.outcome == OrphanOutcome.CANCELED:
            self.total_canceled += 1
        elif record.outcome == OrphanOutcome.ORDER_EXISTS:
            self.total_order_exists += 1
        else:
            self.total_unresolved += 1


class PendingDiscrepancy(BaseModel):
    """A stale PENDING order whose provider reports a different payment state."""
    order_id: str = Field(..., description="Order ID")
    provider: str = Field(..., description="Payment provider")
    provider_reference: str = Field(..., description="Provider intent or order ID")
    created_at: datetime = Field(..., description="When the order was created")
    local_status: str = Field(..., description="Local order status")
    local_payment_status: str = Field(..., description="Local payment status")
    provider_status: Optional[str] = Field(None, description="Provider's own status string")
    provider_payment_status: Optional[str] = Field(
        None, description="Provider status mapped to a payment status"
    )
    error: Optional[str] = Field(None, description="Why the provider could not be queried")


class PendingReport(BaseModel):
    """Comparison of stale PENDING orders with the providers' view."""
    cutoff: datetime = Field(..., description="Orders created before this time were checked")
    created_at: datetime = Field(default_factory=utcnow)
    total_checked: int = Field(default=0)
    total_consistent: int = Field(default=0)
    discrepancies: List[PendingDiscrepancy] = Field(default_factory=list)

    @property
    def total_discrepancies(self) -> int:
        return len(self.discrepancies)

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a JSON-ready summary including every discrepancy."""
        return {
            "cutoff": self.cutoff.isoformat(),
            "created_at": self.created_at.isoformat(),
            "statistics": {
                "total_checked": self.total_checked,
                "total_consistent": self.total_consistent,
                "total_discrepancies": self.total_discrepancies,
            },
            "discrepancies": [d.model_dump(mode="json") for d in self.discrepancies],
        }
