from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any

from pydantic import BaseModel

from ..state_machine import PaymentEventType, PaymentProvider, PaymentStatus

# Currencies whose minor unit equals the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY"})


def currency_exponent(currency: str) -> int:
    """Number of decimal places used by a currency."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the integer minor units providers expect."""
    factor = Decimal(10) ** currency_exponent(currency)
    return int((Decimal(amount) * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert integer minor units back to a decimal amount."""
    exponent = currency_exponent(currency)
    return (Decimal(amount) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


def format_amount(amount: Decimal, currency: str) -> str:
    """Render an amount with the currency's number of decimals, e.g. for REST payloads."""
    exponent = currency_exponent(currency)
    return str(Decimal(amount).quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP))


# Canonical models
class IntentResult(BaseModel):
    reference: str
    client_handle: Optional[str] = None  # client secret or approval URL
    status: str
    raw_provider_response: Optional[Dict[str, Any]] = None


class CaptureResult(BaseModel):
    reference: str
    completed: bool
    status: str
    raw_provider_response: Optional[Dict[str, Any]] = None


class RefundResult(BaseModel):
    reference: str
    refund_id: Optional[str] = None
    status: str
    amount: Decimal
    raw_provider_response: Optional[Dict[str, Any]] = None


class ProviderStatus(BaseModel):
    reference: str
    status: str  # provider's own status string
    payment_status: Optional[PaymentStatus] = None  # mapped, None if inconclusive


class WebhookEvent(BaseModel):
    id: str
    type: PaymentEventType
    raw_type: str
    provider: PaymentProvider
    reference: Optional[str] = None
    payload: Dict[str, Any] = {}


class PaymentGateway(ABC):
    """
    Uniform interface over an external payment provider.

    Implementations are synchronous and perform blocking network I/O; the
    services run them in a worker thread with a bounded timeout. Failures are
    raised as ``PaymentProviderError`` and never carry secrets.
    """

    provider: PaymentProvider
    supports_cancellation: bool = True
    signature_header: str = ""

    @abstractmethod
    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        """
        Create a payment intent for the given amount in ``currency``.
        """
        raise NotImplementedError

    @abstractmethod
    def capture(self, reference: str) -> CaptureResult:
        raise NotImplementedError

    @abstractmethod
    def refund(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        raise NotImplementedError

    @abstractmethod
    def cancel_intent(self, reference: str) -> bool:
        """
        Cancel an intent that has not been paid. Returns False when the
        provider has no cancellation; raises on a failed attempt.
        """
        raise NotImplementedError

    @abstractmethod
    def retrieve_status(self, reference: str) -> ProviderStatus:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        """
        Authenticate a raw webhook body and normalise it to a WebhookEvent.
        Raises SignatureVerificationFailed when the payload is not authentic.
        """
        raise NotImplementedError

    @abstractmethod
    def minimum_charge(self, currency: str) -> Decimal:
        raise NotImplementedError

    def find_intent(self, order_id: str) -> Optional[str]:
        """
        Look up the reference of the intent created for ``order_id``.

        Used when intent creation timed out and the reference was never
        returned. Providers without a search API return None.
        """
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.provider.value}
