"""Shared test fixtures and configuration."""

import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("ADMIN_API_KEY", "test_admin_key_67890")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from order_payments.connectors import SimulatorConfig, SimulatorConnector
from order_payments.currency import CurrencyService
from order_payments.database import (
    Base,
    DiscountCodeRepository,
    DiscountType,
    Order,
    OrderStatusHistory,
    ProductRepository,
    create_async_engine,
    get_async_session_factory,
)
from order_payments.discounts import DiscountValidator
from order_payments.notifications import BackgroundNotifier, NotificationDispatcher
from order_payments.services import CreateOrderRequest, OrderItemRequest, OrderService, PaymentService
from order_payments.state_machine import OrderStatus, PaymentProvider, PaymentStatus
from order_payments.webhooks import WebhookProcessor

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYPAL_WEBHOOK_SECRET = "paypal_test_secret"
USER_API_KEY = os.environ["API_KEY"]
ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that remembers every notification it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created: List[Dict[str, Any]] = []
        self.status_changes: List[tuple] = []

    async def order_created(self, order: Dict[str, Any]) -> None:
        self.created.append(order)
        if self.fail:
            raise RuntimeError("mail server unavailable")

    async def order_status_changed(self, order: Dict[str, Any], previous_status: str) -> None:
        self.status_changes.append((order["id"], previous_status, order["status"]))
        if self.fail:
            raise RuntimeError("mail server unavailable")


def offline_transport() -> httpx.MockTransport:
    """Transport for a rate provider that is always down."""
    return httpx.MockTransport(lambda request: httpx.Response(503))


def make_order_request(
    items: List[tuple],
    provider: str = "STRIPE",
    currency: Optional[str] = None,
    discount_code: Optional[str] = None,
    email: str = "jane@example.com",
) -> CreateOrderRequest:
    return CreateOrderRequest(
        customer_email=email,
        customer_first_name="Jane",
        customer_last_name="Doe",
        items=[OrderItemRequest(product_id=pid, quantity=qty) for pid, qty in items],
        payment_provider=provider,
        currency=currency,
        discount_code=discount_code,
    )


async def seed_catalog(session_factory) -> Dict[str, str]:
    """Create the products and discount codes used across tests."""
    async with session_factory() as session:
        async with session.begin():
            products = ProductRepository(session)
            notebook = await products.create("Notebook", Decimal("10.00"))
            pen = await products.create("Pen", Decimal("5.00"))
            sticker = await products.create("Sticker", Decimal("0.30"))
            retired = await products.create("Retired", Decimal("7.00"), is_active=False)
            discounts = DiscountCodeRepository(session)
            await discounts.create("SAVE10", DiscountType.PERCENTAGE, Decimal("10"))
    return {
        "notebook": notebook.id,
        "pen": pen.id,
        "sticker": sticker.id,
        "retired": retired.id,
    }


async def insert_order(
    session_factory,
    reference: str,
    provider: PaymentProvider = PaymentProvider.STRIPE,
    status: OrderStatus = OrderStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    user_id: Optional[str] = None,
) -> str:
    """Insert a bare order tracked under a provider reference."""
    order = Order(
        customer_email="jane@example.com",
        user_id=user_id,
        subtotal=Decimal("20.00"),
        discount_amount=Decimal("0.00"),
        total=Decimal("20.00"),
        currency="EUR",
        exchange_rate=Decimal("1"),
        charged_amount=Decimal("20.00"),
        status=status.value,
        payment_status=payment_status.value,
        history=[
            OrderStatusHistory(
                action="created",
                new_status=status.value,
                new_payment_status=payment_status.value,
            )
        ],
    )
    if provider == PaymentProvider.STRIPE:
        order.stripe_payment_intent_id = reference
    else:
        order.paypal_order_id = reference
    async with session_factory() as session:
        async with session.begin():
            session.add(order)
    return order.id


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def catalog(session_factory) -> Dict[str, str]:
    return await seed_catalog(session_factory)


# Provider fixtures
@pytest.fixture
def stripe_sim() -> SimulatorConnector:
    return SimulatorConnector(PaymentProvider.STRIPE)


@pytest.fixture
def paypal_sim() -> SimulatorConnector:
    """Simulated PayPal: no cancellation and a 1.00 minimum."""
    return SimulatorConnector(
        PaymentProvider.PAYPAL,
        SimulatorConfig(supports_cancellation=False, minimum=Decimal("1.00")),
    )


@pytest.fixture
def gateways(stripe_sim, paypal_sim):
    return {PaymentProvider.STRIPE: stripe_sim, PaymentProvider.PAYPAL: paypal_sim}


@pytest.fixture
def currency_service() -> CurrencyService:
    """Currency service whose live provider is down, so static rates apply."""
    return CurrencyService(transport=offline_transport())


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher) -> BackgroundNotifier:
    return BackgroundNotifier(dispatcher)


# Service fixtures
@pytest.fixture
def order_service(session_factory, gateways, currency_service, notifier) -> OrderService:
    return OrderService(
        session_factory,
        gateways,
        currency_service,
        DiscountValidator(),
        notifier,
        base_currency="EUR",
        provider_timeout=5.0,
    )


@pytest.fixture
def payment_service(session_factory, gateways, notifier) -> PaymentService:
    return PaymentService(session_factory, gateways, notifier, provider_timeout=5.0)


@pytest.fixture
def webhook_processor(session_factory, gateways, notifier) -> WebhookProcessor:
    return WebhookProcessor(
        session_factory,
        gateways,
        {
            PaymentProvider.STRIPE: STRIPE_WEBHOOK_SECRET,
            PaymentProvider.PAYPAL: PAYPAL_WEBHOOK_SECRET,
        },
        notifier,
    )


@pytest.fixture
def user_headers():
    """Headers of an authenticated customer."""
    return {"Authorization": f"Bearer {USER_API_KEY}", "X-User-Id": "user-1"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_API_KEY}"}
