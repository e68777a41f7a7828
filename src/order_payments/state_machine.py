"""Order lifecycle definition shared by checkout, webhooks and admin actions."""

import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple


class OrderStatus(str, enum.Enum):
    """Lifecycle status of an order."""
    PENDING = "PENDING"
    PAID = "PAID"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    """Status of the payment collected for an order."""
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentProvider(str, enum.Enum):
    """External payment providers an order can be settled with."""
    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"


class PaymentEventType(str, enum.Enum):
    """Provider-agnostic webhook event kinds."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    CAPTURE_COMPLETED = "capture_completed"
    DISPUTE_CREATED = "dispute_created"
    ORDER_APPROVED = "order_approved"
    UNKNOWN = "unknown"


class HistoryAction(str, enum.Enum):
    """Actions recorded in the order status history."""
    CREATED = "created"
    WEBHOOK = "webhook"
    ADMIN_UPDATE = "admin_update"
    CAPTURE = "capture"
    REFUND = "refund"
    DISPUTE_FLAGGED = "dispute_flagged"


# Every status an order may hold, with the payment statuses it may be paired with.
ALLOWED_STATUS_PAIRS: Dict[OrderStatus, FrozenSet[PaymentStatus]] = {
    OrderStatus.PENDING: frozenset({PaymentStatus.PENDING}),
    OrderStatus.PAID: frozenset({PaymentStatus.SUCCEEDED}),
    OrderStatus.COMPLETED: frozenset({PaymentStatus.SUCCEEDED}),
    OrderStatus.FAILED: frozenset({PaymentStatus.FAILED}),
    OrderStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
}

_CANONICAL_PAYMENT_STATUS: Dict[OrderStatus, PaymentStatus] = {
    OrderStatus.PENDING: PaymentStatus.PENDING,
    OrderStatus.PAID: PaymentStatus.SUCCEEDED,
    OrderStatus.COMPLETED: PaymentStatus.SUCCEEDED,
    OrderStatus.FAILED: PaymentStatus.FAILED,
    OrderStatus.REFUNDED: PaymentStatus.REFUNDED,
}


def is_valid_pair(status: OrderStatus, payment_status: PaymentStatus) -> bool:
    """Check whether an order status may be combined with a payment status."""
    return PaymentStatus(payment_status) in ALLOWED_STATUS_PAIRS[OrderStatus(status)]


def canonical_payment_status(status: OrderStatus) -> PaymentStatus:
    """Return the payment status implied by an order status."""
    return _CANONICAL_PAYMENT_STATUS[OrderStatus(status)]


@dataclass(frozen=True)
class Transition:
    """A webhook-driven state change.

    The transition only applies while the order's current payment status is
    not one of ``blocked_by``; the check is executed by the database as part
    of a conditional update, so duplicate deliveries apply at most once.
    """
    status: OrderStatus
    payment_status: PaymentStatus
    blocked_by: Tuple[PaymentStatus, ...]


_SUCCEEDED = Transition(
    status=OrderStatus.PAID,
    payment_status=PaymentStatus.SUCCEEDED,
    blocked_by=(PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED),
)

_FAILED = Transition(
    status=OrderStatus.FAILED,
    payment_status=PaymentStatus.FAILED,
    blocked_by=(PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED, PaymentStatus.FAILED),
)

TRANSITIONS: Dict[PaymentEventType, Transition] = {
    PaymentEventType.PAYMENT_SUCCEEDED: _SUCCEEDED,
    PaymentEventType.CAPTURE_COMPLETED: _SUCCEEDED,
    PaymentEventType.PAYMENT_FAILED: _FAILED,
    PaymentEventType.PAYMENT_CANCELED: _FAILED,
}


def transition_for(event_type: PaymentEventType) -> Optional[Transition]:
    """Return the transition triggered by an event, or None if it has none."""
    return TRANSITIONS.get(PaymentEventType(event_type))


# Refunds apply only to collected payments
REFUND_TRANSITION = Transition(
    status=OrderStatus.REFUNDED,
    payment_status=PaymentStatus.REFUNDED,
    blocked_by=(PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.REFUNDED),
)
