import json
import logging
from decimal import Decimal
from typing import Dict, Any, Optional

import stripe

from ..errors import PaymentProviderError, SignatureVerificationFailed
from ..state_machine import PaymentEventType, PaymentProvider, PaymentStatus
from .base import (
    PaymentGateway,
    IntentResult,
    CaptureResult,
    RefundResult,
    ProviderStatus,
    WebhookEvent,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Stripe event types and the provider-agnostic events they map to
EVENT_TYPES: Dict[str, PaymentEventType] = {
    "payment_intent.succeeded": PaymentEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventType.PAYMENT_FAILED,
    "payment_intent.canceled": PaymentEventType.PAYMENT_CANCELED,
    "charge.dispute.created": PaymentEventType.DISPUTE_CREATED,
}

STATUS_MAP: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.FAILED,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
}

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


class StripeConnector(PaymentGateway):
    """
    Stripe connector using stripe-python PaymentIntents with automatic payment
    methods. The frontend confirms the intent with the returned client secret;
    the outcome reaches us through webhooks.
    """

    provider = PaymentProvider.STRIPE
    signature_header = "stripe-signature"
    supports_cancellation = True

    DEFAULT_MINIMUM = Decimal("0.50")
    MINIMUM_CHARGES: Dict[str, Decimal] = {
        "GBP": Decimal("0.30"),
        "JPY": Decimal("50"),
        "SEK": Decimal("3.00"),
        "NOK": Decimal("3.00"),
        "DKK": Decimal("2.50"),
    }

    def __init__(self, api_key: str, webhook_tolerance: int = 300):
        self.api_key = api_key
        self.webhook_tolerance = webhook_tolerance

    def _error(self, operation: str, exc: "stripe.StripeError") -> PaymentProviderError:
        logger.error(f"Stripe {operation} failed: {exc}")
        retriable = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError))
        return PaymentProviderError(
            f"Stripe {operation} failed",
            provider=self.provider.value,
            retriable=retriable,
        )

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
            "api_key": self.api_key,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            pi = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise self._error("create_intent", e) from e
        logger.info(f"Created Stripe payment intent {pi.id}")
        return IntentResult(reference=pi.id, client_handle=pi.client_secret, status=pi.status)

    def capture(self, reference: str) -> CaptureResult:
        # Intents use automatic capture; only capture what is still awaiting it
        try:
            pi = stripe.PaymentIntent.retrieve(reference, api_key=self.api_key)
            if pi.status == "requires_capture":
                pi = stripe.PaymentIntent.capture(reference, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._error("capture", e) from e
        return CaptureResult(
            reference=reference,
            completed=pi.status == "succeeded",
            status=pi.status,
        )

    def refund(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        stripe_reason = reason if reason in REFUND_REASONS else "requested_by_customer"
        metadata = {"note": reason} if reason and reason not in REFUND_REASONS else {}
        try:
            r = stripe.Refund.create(
                payment_intent=reference,
                amount=to_minor_units(amount, currency),
                reason=stripe_reason,
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise self._error("refund", e) from e
        if r.status in ("failed", "canceled"):
            raise PaymentProviderError(
                f"Stripe refund {r.id} ended with status {r.status}",
                provider=self.provider.value,
            )
        logger.info(f"Created Stripe refund {r.id} for {reference}")
        return RefundResult(reference=reference, refund_id=r.id, status=r.status, amount=amount)

    def cancel_intent(self, reference: str) -> bool:
        try:
            stripe.PaymentIntent.cancel(reference, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._error("cancel", e) from e
        logger.info(f"Canceled Stripe payment intent {reference}")
        return True

    def find_intent(self, order_id: str) -> Optional[str]:
        try:
            result = stripe.PaymentIntent.search(
                query=f"metadata['order_id']:'{order_id}'",
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise self._error("search", e) from e
        return result.data[0].id if result.data else None

    def retrieve_status(self, reference: str) -> ProviderStatus:
        try:
            pi = stripe.PaymentIntent.retrieve(reference, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._error("retrieve", e) from e
        return ProviderStatus(
            reference=reference,
            status=pi.status,
            payment_status=STATUS_MAP.get(pi.status),
        )

    def verify_webhook(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        if not signature_header:
            raise SignatureVerificationFailed()
        try:
            payload = raw_payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, self.webhook_tolerance
            )
            data = json.loads(payload)
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise SignatureVerificationFailed() from e
        if not isinstance(data, dict):
            logger.warning("Stripe webhook payload is not a JSON object")
            raise SignatureVerificationFailed("Invalid webhook payload")

        raw_type = data.get("type", "")
        obj = data.get("data")
        obj = obj.get("object") if isinstance(obj, dict) else None
        if not isinstance(obj, dict):
            obj = {}
        event_type = EVENT_TYPES.get(raw_type, PaymentEventType.UNKNOWN)
        if event_type == PaymentEventType.DISPUTE_CREATED:
            reference = obj.get("payment_intent")
        else:
            reference = obj.get("id")

        return WebhookEvent(
            id=data.get("id", ""),
            type=event_type,
            raw_type=raw_type,
            provider=self.provider,
            reference=reference,
            payload=obj,
        )

    def minimum_charge(self, currency: str) -> Decimal:
        return self.MINIMUM_CHARGES.get(currency.upper(), self.DEFAULT_MINIMUM)
