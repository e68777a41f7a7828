"""Order and payment services: checkout, admin overrides, capture and refund."""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import CENT
from .connectors.base import IntentResult, PaymentGateway, currency_exponent
from .currency import ConversionResult, CurrencyService
from .database.models import Order, OrderItem, OrderStatusHistory
from .database.repository import (
    OrderRepository,
    OrderStatusHistoryRepository,
    OrphanedIntentRepository,
    ProductRepository,
)
from .discounts import AppliedDiscount, DiscountValidator
from .errors import (
    AccessDenied,
    AmountTooLow,
    CheckoutError,
    InternalError,
    OrderNotFound,
    PaymentActionFailed,
    PaymentProcessingError,
    PaymentProviderError,
    ProductUnavailable,
    ProviderTimeout,
    ValidationError,
)
from .notifications import BackgroundNotifier
from .state_machine import (
    HistoryAction,
    OrderStatus,
    PaymentEventType,
    PaymentProvider,
    PaymentStatus,
    REFUND_TRANSITION,
    canonical_payment_status,
    is_valid_pair,
    transition_for,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


async def call_provider(func: Callable[..., Any], *args: Any, timeout: float, **kwargs: Any) -> Any:
    """Run a blocking gateway call in a worker thread with a time bound.

    Raises:
        PaymentProviderError: The call failed or did not finish in time.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Provider call {getattr(func, '__name__', func)} timed out after {timeout}s")
        raise ProviderTimeout() from e


@dataclass(frozen=True)
class Caller:
    """Identity of whoever is making a request."""
    user_id: Optional[str] = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.is_admin or self.user_id is not None


ANONYMOUS = Caller()


def ensure_can_view(order: Order, caller: Caller) -> None:
    """Only administrators and the user who placed an order may see it."""
    if caller.is_admin:
        return
    if caller.user_id is not None and order.user_id == caller.user_id:
        return
    raise AccessDenied()


def intent_idempotency_key(order_id: str) -> str:
    """Idempotency key sent with the payment intent of an order."""
    return f"order-{order_id}"


class OrderItemRequest(BaseModel):
    """Accepts both ``productId`` and ``product_id``."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    quantity: int = 1


class CreateOrderRequest(BaseModel):
    """Checkout body. camelCase and snake_case field names are both accepted."""
    model_config = ConfigDict(populate_by_name=True)

    customer_email: str = Field(alias="customerEmail")
    customer_first_name: Optional[str] = Field(default=None, alias="customerFirstName")
    customer_last_name: Optional[str] = Field(default=None, alias="customerLastName")
    items: List[OrderItemRequest]
    payment_provider: str = Field(default=PaymentProvider.STRIPE.value, alias="paymentProvider")
    currency: Optional[str] = None
    discount_code: Optional[str] = Field(default=None, alias="discountCode")


@dataclass
class PricedOrder:
    items: List[OrderItem]
    subtotal: Decimal
    discount: Optional[AppliedDiscount]

    @property
    def discount_amount(self) -> Decimal:
        return self.discount.amount if self.discount else Decimal("0.00")

    @property
    def total(self) -> Decimal:
        return (self.subtotal - self.discount_amount).quantize(CENT)


@dataclass
class CreatedOrder:
    order: Order
    provider: PaymentProvider
    client_handle: Optional[str]
    conversion: ConversionResult


class OrderService:
    """
    Creates orders atomically with their payment intent and discount
    redemption, and applies administrative status changes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[PaymentProvider, PaymentGateway],
        currency_service: CurrencyService,
        discount_validator: DiscountValidator,
        notifier: BackgroundNotifier,
        base_currency: str = "EUR",
        provider_timeout: float = 10.0,
    ):
        """Initialize the service with its collaborators.

        Args:
            session_factory: Factory for database sessions.
            gateways: Configured payment gateways by provider.
            currency_service: Converts base-currency totals to the charged currency.
            discount_validator: Validates and redeems discount codes.
            notifier: Fire-and-forget notification dispatch.
            base_currency: Currency product prices are stored in.
            provider_timeout: Seconds allowed for each provider call.
        """
        self.session_factory = session_factory
        self.gateways = dict(gateways)
        self.currency_service = currency_service
        self.discount_validator = discount_validator
        self.notifier = notifier
        self.base_currency = base_currency.upper()
        self.provider_timeout = provider_timeout

    def _validate(self, request: CreateOrderRequest) -> Tuple[str, str, PaymentProvider]:
        email = (request.customer_email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format")
        if not request.items:
            raise ValidationError("Order must contain at least one item")
        for item in request.items:
            if not item.product_id:
                raise ValidationError("Each item requires a product ID")
            if item.quantity < 1:
                raise ValidationError("Item quantity must be at least 1")

        currency = (request.currency or self.base_currency).upper()
        if not self.currency_service.is_supported(currency):
            raise ValidationError(f"Unsupported currency: {currency}")

        try:
            provider = PaymentProvider((request.payment_provider or "").upper())
        except ValueError:
            raise ValidationError("Payment provider must be STRIPE or PAYPAL")
        if provider not in self.gateways:
            raise ValidationError(f"Payment provider {provider.value} is not available")
        return email, currency, provider

    async def _price(self, request: CreateOrderRequest) -> PricedOrder:
        """Snapshot product prices and validate the discount code."""
        async with self.session_factory() as session:
            async with session.begin():
                products = await ProductRepository(session).get_active_by_ids(
                    item.product_id for item in request.items
                )
                missing = []
                for item in request.items:
                    if item.product_id not in products and item.product_id not in missing:
                        missing.append(item.product_id)
                if missing:
                    raise ProductUnavailable(missing)

                items = [
                    OrderItem(
                        product_id=item.product_id,
                        price=products[item.product_id].price,
                        quantity=item.quantity,
                    )
                    for item in request.items
                ]
                subtotal = sum(
                    (Decimal(i.price) * i.quantity for i in items), Decimal("0")
                ).quantize(CENT)

                discount = None
                if request.discount_code and request.discount_code.strip():
                    discount = await self.discount_validator.validate(
                        session, request.discount_code, subtotal
                    )
        return PricedOrder(items=items, subtotal=subtotal, discount=discount)

    async def create_order(
        self,
        request: CreateOrderRequest,
        user_id: Optional[str] = None,
    ) -> CreatedOrder:
        """
        Create an order and its payment intent.

        Either the order, its items, the discount redemption and the provider
        reference are all committed, or none are. If the local commit fails
        after the provider intent exists, the intent is cancelled, or recorded
        as orphaned when it cannot be.

        Args:
            request: Checkout request.
            user_id: Authenticated user placing the order, if any.

        Returns:
            CreatedOrder with the order, the client handle and the conversion.

        Raises:
            CheckoutError: Any business rule rejected the order.
        """
        email, currency, provider = self._validate(request)
        gateway = self.gateways[provider]

        priced = await self._price(request)
        conversion = await self.currency_service.convert(
            priced.total, self.base_currency, currency, precision=currency_exponent(currency)
        )
        charged = conversion.converted_amount

        minimum = gateway.minimum_charge(currency)
        if charged < minimum:
            raise AmountTooLow(
                f"Minimum order amount for {currency} is {minimum}, order total is {charged}"
            )

        order_id = str(uuid.uuid4())
        intent: Optional[IntentResult] = None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if priced.discount:
                        await self.discount_validator.redeem(session, priced.discount.code_id)

                    intent = await self._create_intent(gateway, order_id, charged, currency, email)

                    order = Order(
                        id=order_id,
                        customer_email=email,
                        customer_first_name=request.customer_first_name,
                        customer_last_name=request.customer_last_name,
                        user_id=user_id,
                        subtotal=priced.subtotal,
                        discount_amount=priced.discount_amount,
                        total=priced.total,
                        currency=currency,
                        exchange_rate=conversion.rate,
                        original_amount=priced.total if currency != self.base_currency else None,
                        charged_amount=charged,
                        status=OrderStatus.PENDING.value,
                        payment_status=PaymentStatus.PENDING.value,
                        discount_code_id=priced.discount.code_id if priced.discount else None,
                        items=priced.items,
                        history=[
                            OrderStatusHistory(
                                action=HistoryAction.CREATED.value,
                                new_status=OrderStatus.PENDING.value,
                                new_payment_status=PaymentStatus.PENDING.value,
                            )
                        ],
                    )
                    if provider == PaymentProvider.STRIPE:
                        order.stripe_payment_intent_id = intent.reference
                    else:
                        order.paypal_order_id = intent.reference
                    await OrderRepository(session).add(order)
        except Exception as exc:
            if intent is None:
                if isinstance(exc.__cause__, ProviderTimeout):
                    await self._record_orphan(
                        gateway,
                        intent_idempotency_key(order_id),
                        order_id,
                        charged,
                        currency,
                        "Intent creation timed out; provider reference unknown",
                    )
                raise
            await self._compensate(gateway, intent, order_id, charged, currency, exc)
            if isinstance(exc, CheckoutError):
                raise
            raise InternalError("Order could not be completed. Please try again.") from exc

        logger.info(
            f"Order {order.id} created: {charged} {currency} via {provider.value} "
            f"(rate {conversion.rate}, {conversion.source})"
        )
        self.notifier.order_created(order.to_dict())
        return CreatedOrder(
            order=order,
            provider=provider,
            client_handle=intent.client_handle,
            conversion=conversion,
        )

    async def _create_intent(
        self,
        gateway: PaymentGateway,
        order_id: str,
        amount: Decimal,
        currency: str,
        email: str,
    ) -> IntentResult:
        try:
            return await call_provider(
                gateway.create_intent,
                amount,
                currency,
                {"order_id": order_id, "customer_email": email},
                intent_idempotency_key(order_id),
                timeout=self.provider_timeout,
            )
        except PaymentProviderError as e:
            logger.error(f"Payment intent creation failed for order {order_id}: {e}")
            raise PaymentProcessingError() from e

    async def _compensate(
        self,
        gateway: PaymentGateway,
        intent: IntentResult,
        order_id: str,
        amount: Decimal,
        currency: str,
        error: BaseException,
    ) -> None:
        """Undo a provider intent whose order was not committed."""
        logger.error(
            f"Order {order_id} was not committed after {gateway.provider.value} intent "
            f"{intent.reference} was created: {error!r}"
        )
        reason = repr(error)
        if gateway.supports_cancellation:
            try:
                cancelled = await call_provider(
                    gateway.cancel_intent, intent.reference, timeout=self.provider_timeout
                )
            except PaymentProviderError as e:
                cancelled = False
                reason = f"{reason}; cancel failed: {e}"
            if cancelled:
                logger.info(f"Cancelled intent {intent.reference} for uncommitted order {order_id}")
                return

        await self._record_orphan(gateway, intent.reference, order_id, amount, currency, reason)

    async def _record_orphan(
        self,
        gateway: PaymentGateway,
        reference: str,
        order_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
    ) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await OrphanedIntentRepository(session).create(
                        provider=gateway.provider,
                        provider_reference=reference,
                        amount=amount,
                        currency=currency,
                        order_id=order_id,
                        error_message=reason,
                    )
        except SQLAlchemyError as e:
            logger.critical(
                f"Could not record orphaned {gateway.provider.value} intent "
                f"{reference} for order {order_id}: {e}"
            )

    async def get_order(self, order_id: str) -> Order:
        """
        Load an order with its items and history.

        Raises:
            OrderNotFound: No order has this ID.
        """
        async with self.session_factory() as session:
            order = await OrderRepository(session).get_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def view_order(self, order_id: str, caller: Caller) -> Dict[str, Any]:
        order = await self.get_order(order_id)
        ensure_can_view(order, caller)
        return order.to_dict(include_internal=caller.is_admin)

    async def update_order_status(
        self,
        order_id: str,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Order:
        """
        Administrative override of an order's status pair.

        A missing payment status is derived from the order status; a missing
        order status keeps the current one. The resulting pair must be one the
        state machine allows.

        Raises:
            ValidationError: Unknown status or disallowed pair.
            OrderNotFound: No order has this ID.
        """
        if status is None and payment_status is None:
            raise ValidationError("Status or payment status is required")
        try:
            new_status = OrderStatus(status.upper()) if status else None
            new_payment_status = PaymentStatus(payment_status.upper()) if payment_status else None
        except ValueError:
            raise ValidationError("Invalid order status")

        async with self.session_factory() as session:
            async with session.begin():
                repo = OrderRepository(session)
                order = await repo.get_by_id(order_id)
                if order is None:
                    raise OrderNotFound(order_id)

                previous_status = order.status
                previous_payment_status = order.payment_status
                target_status = new_status or OrderStatus(order.status)
                target_payment = new_payment_status or (
                    canonical_payment_status(target_status) if new_status else PaymentStatus(order.payment_status)
                )
                if not is_valid_pair(target_status, target_payment):
                    raise ValidationError(
                        f"Status {target_status.value} cannot be combined with "
                        f"payment status {target_payment.value}"
                    )

                await repo.update_status(order, target_status, target_payment)
                await OrderStatusHistoryRepository(session).record(
                    order_id=order.id,
                    action=HistoryAction.ADMIN_UPDATE,
                    previous_status=previous_status,
                    new_status=order.status,
                    previous_payment_status=previous_payment_status,
                    new_payment_status=order.payment_status,
                    note=note,
                )
                order = await repo.get_by_id(order_id, refresh=True)

        if order.status != previous_status:
            self.notifier.order_status_changed(order.to_dict(), previous_status)
        return order


@dataclass
class CaptureOutcome:
    order: Order
    already_captured: bool


@dataclass
class RefundOutcome:
    order: Order
    amount: Decimal
    refund_id: Optional[str]


class PaymentService:
    """Merchant-initiated payment actions on existing orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[PaymentProvider, PaymentGateway],
        notifier: BackgroundNotifier,
        provider_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.gateways = dict(gateways)
        self.notifier = notifier
        self.provider_timeout = provider_timeout

    async def _load(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            order = await OrderRepository(session).get_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _gateway_for(self, order: Order) -> PaymentGateway:
        gateway = self.gateways.get(order.payment_provider)
        if gateway is None:
            raise PaymentActionFailed("No payment provider available for this order")
        return gateway

    async def _apply(
        self,
        order: Order,
        transition,
        action: HistoryAction,
        note: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """Apply a guarded transition and record it; returns the fresh order and whether it changed."""
        async with self.session_factory() as session:
            async with session.begin():
                repo = OrderRepository(session)
                changed = await repo.apply_transition(
                    order.payment_provider, order.provider_reference, transition
                )
                if changed:
                    await OrderStatusHistoryRepository(session).record(
                        order_id=order.id,
                        action=action,
                        previous_status=order.status,
                        new_status=transition.status.value,
                        previous_payment_status=order.payment_status,
                        new_payment_status=transition.payment_status.value,
                        note=note,
                    )
                fresh = await repo.get_by_id(order.id, refresh=True)
        return fresh, changed

    async def capture(self, order_id: str, caller: Caller) -> CaptureOutcome:
        """
        Capture the payment of an approved order.

        Raises:
            OrderNotFound: No order has this ID.
            AccessDenied: Caller is neither the owner nor an administrator.
            PaymentActionFailed: The provider did not complete the capture;
                the order is left unchanged.
        """
        order = await self._load(order_id)
        ensure_can_view(order, caller)

        if order.payment_status == PaymentStatus.SUCCEEDED.value:
            return CaptureOutcome(order=order, already_captured=True)
        if order.payment_status != PaymentStatus.PENDING.value:
            raise PaymentActionFailed(
                f"Payment cannot be captured in status {order.payment_status}"
            )

        gateway = self._gateway_for(order)
        try:
            result = await call_provider(
                gateway.capture, order.provider_reference, timeout=self.provider_timeout
            )
        except PaymentProviderError as e:
            logger.error(f"Capture failed for order {order_id}: {e}")
            raise PaymentActionFailed("Payment capture failed") from e
        if not result.completed:
            logger.warning(f"Capture for order {order_id} ended with status {result.status}")
            raise PaymentActionFailed("Payment capture failed")

        previous_status = order.status
        order, changed = await self._apply(
            order,
            transition_for(PaymentEventType.CAPTURE_COMPLETED),
            HistoryAction.CAPTURE,
        )
        if changed:
            logger.info(f"Payment captured for order {order_id}")
            self.notifier.order_status_changed(order.to_dict(), previous_status)
        return CaptureOutcome(order=order, already_captured=not changed)

    async def refund(
        self,
        order_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Refund a paid order, fully or partially. Any refund moves the order
        to REFUNDED.

        Args:
            order_id: Order to refund.
            amount: Amount in the charged currency, defaults to the charged amount.
            reason: Refund reason passed on to the provider.

        Raises:
            OrderNotFound: No order has this ID.
            ValidationError: Order not refundable or invalid amount.
            PaymentActionFailed: The provider rejected the refund; the order
                is left unchanged.
        """
        order = await self._load(order_id)
        if order.status == OrderStatus.REFUNDED.value:
            raise ValidationError("Order already refunded")
        if order.payment_status != PaymentStatus.SUCCEEDED.value:
            raise ValidationError("Order payment not successful, cannot refund")

        charged = Decimal(order.charged_amount)
        try:
            refund_amount = charged if amount is None else Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError("Invalid refund amount")
        if refund_amount <= 0 or refund_amount > charged:
            raise ValidationError(f"Refund amount must be greater than 0 and at most {charged}")

        gateway = self._gateway_for(order)
        try:
            result = await call_provider(
                gateway.refund,
                order.provider_reference,
                refund_amount,
                order.currency,
                reason,
                timeout=self.provider_timeout,
            )
        except PaymentProviderError as e:
            logger.error(f"Refund failed for order {order_id}: {e}")
            raise PaymentActionFailed("Refund processing failed") from e

        previous_status = order.status
        order, changed = await self._apply(
            order,
            REFUND_TRANSITION,
            HistoryAction.REFUND,
            note=f"Refunded {refund_amount} {order.currency} ({result.refund_id})",
        )
        if changed:
            self.notifier.order_status_changed(order.to_dict(), previous_status)
        else:
            logger.warning(f"Refund {result.refund_id} issued but order {order_id} changed concurrently")
        logger.info(f"Refund {result.refund_id} of {refund_amount} {order.currency} for order {order_id}")
        return RefundOutcome(order=order, amount=refund_amount, refund_id=result.refund_id)

    async def payment_status(self, order_id: str, caller: Caller) -> Dict[str, Any]:
        """
        Local payment state plus the provider's live view of it.

        A failed live lookup is logged and reported as ``external_status: None``.
        """
        order = await self._load(order_id)
        ensure_can_view(order, caller)

        external = None
        gateway = self.gateways.get(order.payment_provider)
        if gateway is not None:
            try:
                live = await call_provider(
                    gateway.retrieve_status, order.provider_reference, timeout=self.provider_timeout
                )
                external = {
                    "provider": gateway.provider.value,
                    "status": live.status,
                    "payment_status": live.payment_status.value if live.payment_status else None,
                }
            except PaymentProviderError as e:
                logger.error(f"Error fetching external payment status for order {order_id}: {e}")

        return {
            "order_id": order.id,
            "status": order.status,
            "payment_status": order.payment_status,
            "total": str(order.total),
            "charged_amount": str(order.charged_amount),
            "currency": order.currency,
            "external_status": external,
        }
