"""Simulator connector for exercising payment flows without real PSP calls."""

import hashlib
import hmac
import json
import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional, Tuple

from ..errors import PaymentProviderError, SignatureVerificationFailed
from ..state_machine import PaymentEventType, PaymentProvider, PaymentStatus
from .base import (
    PaymentGateway,
    IntentResult,
    CaptureResult,
    RefundResult,
    ProviderStatus,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-simulator-signature"

STATUS_MAP: Dict[str, PaymentStatus] = {
    "created": PaymentStatus.PENDING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
}


@dataclass
class SimulatedIntent:
    """In-memory representation of a simulated payment intent."""
    id: str
    amount: Decimal
    currency: str
    status: str
    idempotency_key: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    refunded_amount: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    fail_create: bool = False
    fail_capture: bool = False
    fail_refund: bool = False
    fail_cancel: bool = False
    supports_cancellation: bool = True
    delay_ms: int = 0  # Simulated response delay in ms
    minimum: Decimal = Decimal("0.50")


class SimulatorConnector(PaymentGateway):
    """
    Simulator gateway for tests and local development.

    Features:
    - In-memory intent storage
    - Idempotent intent creation per idempotency key
    - Switchable failures per operation
    - Optional lack of cancellation, like PayPal
    - Signed webhook generation via ``sign_webhook``
    """

    signature_header = SIGNATURE_HEADER

    def __init__(
        self,
        provider: PaymentProvider = PaymentProvider.STRIPE,
        config: Optional[SimulatorConfig] = None,
    ):
        """Initialize the simulator with optional configuration."""
        self.provider = PaymentProvider(provider)
        self.config = config or SimulatorConfig()
        self._intents: Dict[str, SimulatedIntent] = {}
        self._by_idempotency_key: Dict[str, str] = {}
        self.cancelled: list = []
        logger.info(f"SimulatorConnector initialized for {self.provider.value}")

    @property
    def supports_cancellation(self) -> bool:
        return self.config.supports_cancellation

    def _generate_id(self) -> str:
        return f"sim_{uuid.uuid4().hex[:24]}"

    def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

    def _get(self, reference: str) -> SimulatedIntent:
        intent = self._intents.get(reference)
        if intent is None:
            raise PaymentProviderError(
                f"Unknown simulated intent {reference}", provider=self.provider.value
            )
        return intent

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        """Create a simulated intent, replaying the original for a repeated key."""
        self._apply_delay()
        if self.config.fail_create:
            raise PaymentProviderError("Simulated intent failure", provider=self.provider.value)

        if idempotency_key and idempotency_key in self._by_idempotency_key:
            intent = self._intents[self._by_idempotency_key[idempotency_key]]
        else:
            intent = SimulatedIntent(
                id=self._generate_id(),
                amount=Decimal(amount),
                currency=currency.upper(),
                status="created",
                idempotency_key=idempotency_key,
                metadata=dict(metadata or {}),
            )
            self._intents[intent.id] = intent
            if idempotency_key:
                self._by_idempotency_key[idempotency_key] = intent.id

        return IntentResult(
            reference=intent.id,
            client_handle=f"{intent.id}_secret",
            status=intent.status,
        )

    def capture(self, reference: str) -> CaptureResult:
        self._apply_delay()
        intent = self._get(reference)
        if self.config.fail_capture:
            raise PaymentProviderError("Simulated capture failure", provider=self.provider.value)
        if intent.status == "created":
            intent.status = "succeeded"
        return CaptureResult(
            reference=reference,
            completed=intent.status == "succeeded",
            status=intent.status,
        )

    def refund(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        self._apply_delay()
        intent = self._get(reference)
        if self.config.fail_refund:
            raise PaymentProviderError("Simulated refund failure", provider=self.provider.value)
        if intent.status not in ("succeeded", "refunded"):
            raise PaymentProviderError(
                f"Cannot refund intent in status {intent.status}", provider=self.provider.value
            )
        intent.refunded_amount += Decimal(amount)
        intent.status = "refunded"
        return RefundResult(
            reference=reference,
            refund_id=f"re_{uuid.uuid4().hex[:16]}",
            status="succeeded",
            amount=Decimal(amount),
        )

    def cancel_intent(self, reference: str) -> bool:
        self._apply_delay()
        if not self.config.supports_cancellation:
            return False
        if self.config.fail_cancel:
            raise PaymentProviderError("Simulated cancel failure", provider=self.provider.value)
        intent = self._get(reference)
        if intent.status != "created":
            raise PaymentProviderError(
                f"Cannot cancel intent in status {intent.status}", provider=self.provider.value
            )
        intent.status = "canceled"
        self.cancelled.append(reference)
        return True

    def find_intent(self, order_id: str) -> Optional[str]:
        for intent in self._intents.values():
            if intent.metadata.get("order_id") == order_id:
                return intent.id
        return None

    def retrieve_status(self, reference: str) -> ProviderStatus:
        intent = self._get(reference)
        return ProviderStatus(
            reference=reference,
            status=intent.status,
            payment_status=STATUS_MAP.get(intent.status),
        )

    def verify_webhook(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        if not signature_header:
            raise SignatureVerificationFailed()
        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode("ascii"), signature_header.encode("utf-8", "replace")):
            raise SignatureVerificationFailed()
        try:
            data = json.loads(raw_payload)
        except ValueError as e:
            raise SignatureVerificationFailed("Invalid webhook payload") from e
        if not isinstance(data, dict):
            raise SignatureVerificationFailed("Invalid webhook payload")

        raw_type = data.get("type", "")
        try:
            event_type = PaymentEventType(raw_type)
        except ValueError:
            event_type = PaymentEventType.UNKNOWN
        return WebhookEvent(
            id=data.get("id", ""),
            type=event_type,
            raw_type=raw_type,
            provider=self.provider,
            reference=data.get("reference"),
            payload=data,
        )

    def minimum_charge(self, currency: str) -> Decimal:
        return self.config.minimum

    def sign_webhook(
        self,
        event_type: PaymentEventType,
        reference: str,
        secret: str,
        event_id: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        """Build a webhook body and its signature header value (simulator-specific method)."""
        body = json.dumps({
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "type": PaymentEventType(event_type).value,
            "reference": reference,
        }).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return body, signature

    def get_intent(self, reference: str) -> Optional[SimulatedIntent]:
        """Get an intent from in-memory storage (for testing)."""
        return self._intents.get(reference)

    def get_all_intents(self) -> Dict[str, SimulatedIntent]:
        return dict(self._intents)

    def health_check(self) -> Dict[str, Any]:
        """Return health status of the simulator."""
        return {
            "ok": True,
            "provider": self.provider.value,
            "simulator": True,
            "intent_count": len(self._intents),
        }
