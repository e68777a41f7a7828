"""Tests for the shared connector amount helpers and canonical models."""

from decimal import Decimal

import pytest

from order_payments.connectors import (
    PaymentGateway,
    WebhookEvent,
    currency_exponent,
    format_amount,
    from_minor_units,
    to_minor_units,
)
from order_payments.state_machine import PaymentEventType, PaymentProvider


class TestAmountHelpers:
    """Test minor unit conversion."""

    @pytest.mark.parametrize("currency,exponent", [("EUR", 2), ("usd", 2), ("JPY", 0), ("jpy", 0)])
    def test_currency_exponent(self, currency, exponent):
        assert currency_exponent(currency) == exponent

    @pytest.mark.parametrize("amount,currency,minor", [
        ("22.50", "EUR", 2250),
        ("0.505", "USD", 51),
        ("1650", "JPY", 1650),
        ("1650.5", "JPY", 1651),
    ])
    def test_to_minor_units(self, amount, currency, minor):
        assert to_minor_units(Decimal(amount), currency) == minor

    def test_from_minor_units(self):
        assert from_minor_units(2250, "EUR") == Decimal("22.50")
        assert from_minor_units(1650, "JPY") == Decimal("1650")

    def test_format_amount(self):
        assert format_amount(Decimal("22.5"), "EUR") == "22.50"
        assert format_amount(Decimal("1650"), "JPY") == "1650"


class TestCanonicalModels:
    """Test the provider-agnostic models."""

    def test_webhook_event_defaults(self):
        event = WebhookEvent(
            id="evt_1",
            type=PaymentEventType.UNKNOWN,
            raw_type="something.else",
            provider=PaymentProvider.STRIPE,
        )
        assert event.reference is None
        assert event.payload == {}

    def test_gateway_is_abstract(self):
        with pytest.raises(TypeError):
            PaymentGateway()
