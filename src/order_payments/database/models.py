"""SQLAlchemy models for order persistence."""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from ..state_machine import OrderStatus, PaymentStatus, PaymentProvider


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class DiscountType(str, enum.Enum):
    """How a discount code's value is applied."""
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class Product(Base):
    """Catalogue product. Owned by the catalogue; read-only for checkout."""
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class DiscountCode(Base):
    """Redeemable discount code with a validity window and usage quota."""
    __tablename__ = "discount_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_discount_codes_quota",
        ),
    )


class Order(Base):
    """Order placed by a customer and settled through one payment provider."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Amounts in the base currency
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Charge details
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False, default=Decimal("1"))
    original_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    charged_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    # Provider references; exactly one is set
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    paypal_order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    discount_code_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("discount_codes.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="selectin",
        order_by="OrderStatusHistory.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "(stripe_payment_intent_id IS NULL) <> (paypal_order_id IS NULL)",
            name="ck_orders_single_provider_reference",
        ),
        Index("ix_orders_status", "status"),
        Index("ix_orders_created_at", "created_at"),
        Index("ix_orders_user_id", "user_id"),
    )

    @property
    def payment_provider(self) -> Optional[PaymentProvider]:
        """Provider owning reconciliation for this order."""
        if self.stripe_payment_intent_id:
            return PaymentProvider.STRIPE
        if self.paypal_order_id:
            return PaymentProvider.PAYPAL
        return None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.stripe_payment_intent_id or self.paypal_order_id

    def to_dict(self, include_internal: bool = False) -> Dict[str, Any]:
        """Convert order to dictionary representation.

        Provider references, the discount code link and the status history
        are internal and only included when ``include_internal`` is set.
        """
        provider = self.payment_provider
        data: Dict[str, Any] = {
            "id": self.id,
            "customer_email": self.customer_email,
            "customer_first_name": self.customer_first_name,
            "customer_last_name": self.customer_last_name,
            "user_id": self.user_id,
            "subtotal": _money(self.subtotal),
            "discount_amount": _money(self.discount_amount),
            "total": _money(self.total),
            "currency": self.currency,
            "exchange_rate": _money(self.exchange_rate),
            "original_amount": _money(self.original_amount),
            "charged_amount": _money(self.charged_amount),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_provider": provider.value if provider else None,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_internal:
            data["stripe_payment_intent_id"] = self.stripe_payment_intent_id
            data["paypal_order_id"] = self.paypal_order_id
            data["discount_code_id"] = self.discount_code_id
            data["history"] = [h.to_dict() for h in self.history]
        return data


class OrderItem(Base):
    """Line item with the product price captured at purchase time."""
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "price": _money(self.price),
            "quantity": self.quantity,
        }


class OrderStatusHistory(Base):
    """Audit trail of order state changes."""
    __tablename__ = "order_status_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_payment_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_payment_status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Provider event that caused the change, if any
    source_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="history")

    __table_args__ = (
        Index("ix_order_status_history_action", "action"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "previous_payment_status": self.previous_payment_status,
            "new_payment_status": self.new_payment_status,
            "source_event_id": self.source_event_id,
            "source_event_type": self.source_event_type,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrphanedPaymentIntent(Base):
    """Provider intent created for an order whose local commit failed."""
    __tablename__ = "orphaned_payment_intents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "provider_reference": self.provider_reference,
            "order_id": self.order_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "error_message": self.error_message,
            "resolved": self.resolved,
            "resolution": self.resolution,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
