"""Database module for order persistence."""

from .models import (
    Base,
    DiscountCode,
    DiscountType,
    Order,
    OrderItem,
    OrderStatusHistory,
    OrphanedPaymentIntent,
    Product,
    utcnow,
)
from .session import (
    get_database_url,
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    ProductRepository,
    DiscountCodeRepository,
    OrderRepository,
    OrderStatusHistoryRepository,
    OrphanedIntentRepository,
)

__all__ = [
    # Models
    "Base",
    "DiscountCode",
    "DiscountType",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrphanedPaymentIntent",
    "Product",
    "utcnow",
    # Session management
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "ProductRepository",
    "DiscountCodeRepository",
    "OrderRepository",
    "OrderStatusHistoryRepository",
    "OrphanedIntentRepository",
]
