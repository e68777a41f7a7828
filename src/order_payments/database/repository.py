"""Repository layer for order persistence operations."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Iterable, List

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..state_machine import (
    OrderStatus,
    PaymentStatus,
    PaymentProvider,
    Transition,
)
from .models import (
    DiscountCode,
    Order,
    OrderStatusHistory,
    OrphanedPaymentIntent,
    Product,
    utcnow,
)

logger = logging.getLogger(__name__)


def _reference_column(provider: PaymentProvider):
    if PaymentProvider(provider) == PaymentProvider.STRIPE:
        return Order.stripe_payment_intent_id
    return Order.paypal_order_id


class ProductRepository:
    """Read access to the product catalogue."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        price: Decimal,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Product:
        """Create a product. Used by seeding and tests; checkout never writes products."""
        product = Product(
            name=name,
            price=Decimal(price),
            description=description,
            is_active=is_active,
        )
        self.session.add(product)
        await self.session.flush()
        return product

    async def get_active_by_ids(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Load active products by ID.

        Args:
            product_ids: Product identifiers to look up.

        Returns:
            Mapping of product ID to Product for every ID that exists and is active.
        """
        ids = list(set(product_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(Product).where(Product.id.in_(ids), Product.is_active.is_(True))
        )
        return {product.id: product for product in result.scalars().all()}


class DiscountCodeRepository:
    """Repository for discount codes and their usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        code: str,
        discount_type: str,
        discount_value: Decimal,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        max_uses: Optional[int] = None,
        is_active: bool = True,
    ) -> DiscountCode:
        discount = DiscountCode(
            code=code.strip().upper(),
            discount_type=str(getattr(discount_type, "value", discount_type)),
            discount_value=Decimal(discount_value),
            valid_from=valid_from,
            valid_until=valid_until,
            max_uses=max_uses,
            current_uses=0,
            is_active=is_active,
        )
        self.session.add(discount)
        await self.session.flush()
        return discount

    async def get_by_code(self, code: str) -> Optional[DiscountCode]:
        """Get a discount code, matching case-insensitively.

        Args:
            code: Code as entered by the customer.

        Returns:
            DiscountCode if found, None otherwise.
        """
        result = await self.session.execute(
            select(DiscountCode).where(DiscountCode.code == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, discount_id: str) -> Optional[DiscountCode]:
        result = await self.session.execute(
            select(DiscountCode).where(DiscountCode.id == discount_id)
        )
        return result.scalar_one_or_none()

    async def increment_usage(self, discount_id: str) -> bool:
        """Consume one use of a discount code if its quota allows it.

        The quota check and the increment are a single UPDATE, so concurrent
        redemptions can never push ``current_uses`` past ``max_uses``.

        Args:
            discount_id: Discount code ID.

        Returns:
            True if a use was consumed, False if the quota is exhausted.
        """
        result = await self.session.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == discount_id,
                or_(
                    DiscountCode.max_uses.is_(None),
                    DiscountCode.current_uses < DiscountCode.max_uses,
                ),
            )
            .values(current_uses=DiscountCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        consumed = result.rowcount == 1
        if consumed:
            logger.info(f"Consumed one use of discount code {discount_id}")
        return consumed


class OrderRepository:
    """Repository for Order persistence and conditional state changes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, order: Order) -> Order:
        """Persist a new order together with its items and history.

        Args:
            order: Order instance built by the caller.

        Returns:
            The flushed Order instance.
        """
        self.session.add(order)
        await self.session.flush()
        logger.info(f"Created order {order.id} with status {order.status}")
        return order

    async def get_by_id(self, order_id: str, refresh: bool = False) -> Optional[Order]:
        """Get an order by its ID.

        Args:
            order_id: Order ID.
            refresh: Overwrite any copy already held by the session.

        Returns:
            Order if found, None otherwise.
        """
        stmt = select(Order).where(Order.id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_reference(
        self,
        provider: PaymentProvider,
        reference: str,
        refresh: bool = False,
    ) -> Optional[Order]:
        """Get the order whose payment is tracked under a provider reference.

        Args:
            provider: Provider owning the reference.
            reference: Payment intent ID or provider order ID.
            refresh: Overwrite any copy already held by the session.

        Returns:
            Order if found, None otherwise.
        """
        stmt = select(Order).where(_reference_column(provider) == reference)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def apply_transition(
        self,
        provider: PaymentProvider,
        reference: str,
        transition: Transition,
    ) -> bool:
        """Apply a webhook transition unless the payment status blocks it.

        The guard is evaluated by the database inside the UPDATE, so of any
        number of concurrent or repeated deliveries at most one changes the row.

        Args:
            provider: Provider owning the reference.
            reference: Payment intent ID or provider order ID.
            transition: Target state and blocking payment statuses.

        Returns:
            True if the order row was changed.
        """
        blocked = [status.value for status in transition.blocked_by]
        result = await self.session.execute(
            update(Order)
            .where(
                _reference_column(provider) == reference,
                Order.payment_status.notin_(blocked),
            )
            .values(
                status=transition.status.value,
                payment_status=transition.payment_status.value,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_status(
        self,
        order: Order,
        status: OrderStatus,
        payment_status: PaymentStatus,
    ) -> Order:
        """Set an order's status pair.

        Args:
            order: Order instance to update.
            status: New order status.
            payment_status: New payment status.

        Returns:
            Updated Order instance.
        """
        order.status = OrderStatus(status).value
        order.payment_status = PaymentStatus(payment_status).value
        order.updated_at = utcnow()
        await self.session.flush()
        logger.info(
            f"Updated order {order.id} status to {order.status}/{order.payment_status}"
        )
        return order

    async def list_pending_older_than(
        self,
        cutoff: datetime,
        limit: int = 100,
    ) -> List[Order]:
        """List orders still awaiting payment that were created before a cutoff.

        Args:
            cutoff: Only orders created before this time are returned.
            limit: Maximum number of results.

        Returns:
            List of Order instances, oldest first.
        """
        result = await self.session.execute(
            select(Order)
            .where(
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.created_at < cutoff,
            )
            .order_by(Order.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class OrderStatusHistoryRepository:
    """Repository for the order audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        order_id: str,
        action: str,
        new_status: str,
        new_payment_status: str,
        previous_status: Optional[str] = None,
        previous_payment_status: Optional[str] = None,
        source_event_id: Optional[str] = None,
        source_event_type: Optional[str] = None,
        note: Optional[str] = None,
    ) -> OrderStatusHistory:
        """Record a history entry.

        Args:
            order_id: Order the entry belongs to.
            action: What caused the entry (see HistoryAction).
            new_status: Order status after the change.
            new_payment_status: Payment status after the change.
            previous_status: Order status before the change.
            previous_payment_status: Payment status before the change.
            source_event_id: Provider event ID, for webhook-driven changes.
            source_event_type: Raw provider event type.
            note: Free-form note.

        Returns:
            Created OrderStatusHistory instance.
        """
        entry = OrderStatusHistory(
            order_id=order_id,
            action=str(getattr(action, "value", action)),
            previous_status=previous_status,
            new_status=new_status,
            previous_payment_status=previous_payment_status,
            new_payment_status=new_payment_status,
            source_event_id=source_event_id,
            source_event_type=source_event_type,
            note=note,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_order(self, order_id: str) -> List[OrderStatusHistory]:
        result = await self.session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at)
        )
        return list(result.scalars().all())


class OrphanedIntentRepository:
    """Repository for provider intents left without a local order."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        provider: PaymentProvider,
        provider_reference: str,
        amount: Decimal,
        currency: str,
        order_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> OrphanedPaymentIntent:
        orphan = OrphanedPaymentIntent(
            provider=PaymentProvider(provider).value,
            provider_reference=provider_reference,
            order_id=order_id,
            amount=Decimal(amount),
            currency=currency.upper(),
            error_message=error_message,
        )
        self.session.add(orphan)
        await self.session.flush()
        logger.warning(
            f"Recorded orphaned {orphan.provider} intent {provider_reference} "
            f"for order {order_id}"
        )
        return orphan

    async def list_unresolved(self, limit: int = 100) -> List[OrphanedPaymentIntent]:
        result = await self.session.execute(
            select(OrphanedPaymentIntent)
            .where(OrphanedPaymentIntent.resolved.is_(False))
            .order_by(OrphanedPaymentIntent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_resolved(
        self,
        orphan: OrphanedPaymentIntent,
        resolution: str,
    ) -> OrphanedPaymentIntent:
        """Mark an orphaned intent as handled.

        Args:
            orphan: Record to update.
            resolution: How it was resolved, e.g. "canceled" or "manual_review".

        Returns:
            Updated OrphanedPaymentIntent instance.
        """
        orphan.resolved = True
        orphan.resolution = resolution
        orphan.resolved_at = utcnow()
        await self.session.flush()
        return orphan

    async def set_reference(
        self,
        orphan: OrphanedPaymentIntent,
        provider_reference: str,
    ) -> OrphanedPaymentIntent:
        """Replace a placeholder reference with the one the provider reported."""
        orphan.provider_reference = provider_reference
        await self.session.flush()
        return orphan

    async def get_by_id(self, orphan_id: str) -> Optional[OrphanedPaymentIntent]:
        result = await self.session.execute(
            select(OrphanedPaymentIntent).where(OrphanedPaymentIntent.id == orphan_id)
        )
        return result.scalar_one_or_none()
