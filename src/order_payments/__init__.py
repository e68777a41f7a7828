# order_payments package
__version__ = "0.1.0"

from .config import Settings
from .database import (
    Order,
    OrderItem,
    OrderStatusHistory,
    DiscountCode,
    Product,
    OrphanedPaymentIntent,
    DatabaseManager,
)
from .state_machine import OrderStatus, PaymentStatus, PaymentProvider
from .services import OrderService, PaymentService, CreateOrderRequest
from .webhooks import WebhookProcessor
from .currency import CurrencyService
from .discounts import DiscountValidator

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    OrphanSweepResult,
    PendingReport,
)
