"""Wiring of services and their collaborators, built once at start-up."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .connectors import PayPalConnector, PaymentGateway, SimulatorConnector, StripeConnector
from .currency import CurrencyService
from .discounts import DiscountValidator
from .notifications import BackgroundNotifier, NotificationDispatcher
from .services import OrderService, PaymentService
from .state_machine import PaymentProvider
from .webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


def build_gateways(settings: Settings) -> Dict[PaymentProvider, PaymentGateway]:
    """Create a gateway for every provider that has credentials configured."""
    if settings.gateway_mode == "simulator":
        logger.warning("Payment gateways running in simulator mode")
        return {
            PaymentProvider.STRIPE: SimulatorConnector(PaymentProvider.STRIPE),
            PaymentProvider.PAYPAL: SimulatorConnector(PaymentProvider.PAYPAL),
        }

    gateways: Dict[PaymentProvider, PaymentGateway] = {}
    if settings.stripe_api_key:
        gateways[PaymentProvider.STRIPE] = StripeConnector(settings.stripe_api_key)
    else:
        logger.warning("STRIPE_API_KEY not set; Stripe payments disabled")
    if settings.paypal_client_id and settings.paypal_client_secret:
        gateways[PaymentProvider.PAYPAL] = PayPalConnector(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            base_url=settings.paypal_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.warning("PayPal credentials not set; PayPal payments disabled")
    return gateways


@dataclass
class ServiceContainer:
    """Everything the API and CLI need, constructed explicitly."""
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateways: Dict[PaymentProvider, PaymentGateway]
    currency_service: CurrencyService
    notifier: BackgroundNotifier
    order_service: OrderService
    payment_service: PaymentService
    webhook_processor: WebhookProcessor
    discount_validator: DiscountValidator = field(default_factory=DiscountValidator)

    async def shutdown(self) -> None:
        await self.notifier.wait_idle()
        for gateway in self.gateways.values():
            close = getattr(gateway, "close", None)
            if close is not None:
                close()


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateways: Optional[Dict[PaymentProvider, PaymentGateway]] = None,
    currency_service: Optional[CurrencyService] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ServiceContainer:
    """
    Build the service graph.

    Args:
        settings: Runtime settings.
        session_factory: Factory for database sessions.
        gateways: Gateways to use instead of those derived from settings.
        currency_service: Currency service to use instead of a new one.
        dispatcher: Notification dispatcher, logging only by default.

    Returns:
        ServiceContainer with every service wired.
    """
    if gateways is None:
        gateways = build_gateways(settings)
    if currency_service is None:
        currency_service = CurrencyService(
            provider=settings.exchange_api_provider,
            api_key=settings.exchange_api_key,
            cache_ttl=settings.currency_cache_ttl,
            timeout=settings.currency_fetch_timeout,
        )
    notifier = BackgroundNotifier(dispatcher)
    discount_validator = DiscountValidator()
    secrets = {
        provider: settings.webhook_secret_for(provider.value) for provider in PaymentProvider
    }

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        gateways=gateways,
        currency_service=currency_service,
        notifier=notifier,
        discount_validator=discount_validator,
        order_service=OrderService(
            session_factory,
            gateways,
            currency_service,
            discount_validator,
            notifier,
            base_currency=settings.base_currency,
            provider_timeout=settings.provider_timeout_seconds,
        ),
        payment_service=PaymentService(
            session_factory,
            gateways,
            notifier,
            provider_timeout=settings.provider_timeout_seconds,
        ),
        webhook_processor=WebhookProcessor(session_factory, gateways, secrets, notifier),
    )
