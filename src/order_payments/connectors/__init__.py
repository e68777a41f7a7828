"""Payment provider connectors."""

from .base import (
    PaymentGateway,
    IntentResult,
    CaptureResult,
    RefundResult,
    ProviderStatus,
    WebhookEvent,
    ZERO_DECIMAL_CURRENCIES,
    currency_exponent,
    to_minor_units,
    from_minor_units,
    format_amount,
)
from .stripe_connector import StripeConnector
from .paypal_connector import PayPalConnector
from .simulator_connector import (
    SimulatorConnector,
    SimulatorConfig,
    SimulatedIntent,
)

__all__ = [
    # Base classes and models
    "PaymentGateway",
    "IntentResult",
    "CaptureResult",
    "RefundResult",
    "ProviderStatus",
    "WebhookEvent",
    # Amount helpers
    "ZERO_DECIMAL_CURRENCIES",
    "currency_exponent",
    "to_minor_units",
    "from_minor_units",
    "format_amount",
    # Connectors
    "StripeConnector",
    "PayPalConnector",
    "SimulatorConnector",
    "SimulatorConfig",
    "SimulatedIntent",
]
