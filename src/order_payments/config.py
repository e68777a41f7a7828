"""Runtime configuration read from environment variables."""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./orders.db"
DEFAULT_PAYPAL_BASE_URL = "https://api-m.sandbox.paypal.com"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    return float(value)


@dataclass
class Settings:
    """Process-wide settings, built once at start-up and passed to services."""
    database_url: Optional[str] = None
    base_currency: str = "EUR"

    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_secret: str = ""
    paypal_base_url: str = DEFAULT_PAYPAL_BASE_URL
    gateway_mode: str = "live"
    provider_timeout_seconds: float = 10.0

    exchange_api_provider: str = "exchangerate"
    exchange_api_key: str = ""
    currency_cache_ttl: float = 3600.0
    currency_fetch_timeout: float = 5.0

    rate_limit_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            base_currency=os.getenv("BASE_CURRENCY", "EUR").upper(),
            stripe_api_key=os.getenv("STRIPE_API_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
            paypal_webhook_secret=os.getenv("PAYPAL_WEBHOOK_SECRET", ""),
            paypal_base_url=os.getenv("PAYPAL_BASE_URL", DEFAULT_PAYPAL_BASE_URL),
            gateway_mode=os.getenv("PAYMENT_GATEWAY_MODE", "live").lower(),
            provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 10.0),
            exchange_api_provider=os.getenv("EXCHANGE_API_PROVIDER", "exchangerate").lower(),
            exchange_api_key=os.getenv("EXCHANGE_API_KEY", ""),
            currency_cache_ttl=_env_float("CURRENCY_CACHE_TTL", 3600.0),
            currency_fetch_timeout=_env_float("CURRENCY_FETCH_TIMEOUT", 5.0),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
        )

    def webhook_secret_for(self, provider: str) -> str:
        """Return the webhook signing secret for a provider name."""
        secrets = {
            "STRIPE": self.stripe_webhook_secret,
            "PAYPAL": self.paypal_webhook_secret,
        }
        return secrets.get(provider.upper(), "")


# Shared money quantum for base-currency amounts.
CENT = Decimal("0.01")
