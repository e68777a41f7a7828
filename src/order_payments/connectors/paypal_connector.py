"""PayPal connector over the REST v2 Orders API using httpx."""

import base64
import hashlib
import hmac
import json
import logging
import threading
import time
from decimal import Decimal
from typing import Dict, Any, Optional

import httpx

from ..errors import PaymentProviderError, SignatureVerificationFailed
from ..state_machine import PaymentEventType, PaymentProvider, PaymentStatus
from .base import (
    PaymentGateway,
    IntentResult,
    CaptureResult,
    RefundResult,
    ProviderStatus,
    WebhookEvent,
    format_amount,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "paypal-transmission-sig"

EVENT_TYPES: Dict[str, PaymentEventType] = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentEventType.CAPTURE_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": PaymentEventType.PAYMENT_FAILED,
    "CHECKOUT.ORDER.APPROVED": PaymentEventType.ORDER_APPROVED,
    "CUSTOMER.DISPUTE.CREATED": PaymentEventType.DISPUTE_CREATED,
}

STATUS_MAP: Dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "VOIDED": PaymentStatus.FAILED,
}


def sign_payload(raw_payload: bytes, secret: str) -> str:
    """Compute the base64 HMAC-SHA256 signature expected in ``paypal-transmission-sig``."""
    digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _resource_reference(event_type: PaymentEventType, resource: Dict[str, Any]) -> Optional[str]:
    """Find the PayPal order ID an event refers to."""
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    if related.get("order_id"):
        return related["order_id"]
    if event_type == PaymentEventType.DISPUTE_CREATED:
        # Disputes only name the capture, which is never stored locally
        return None
    return resource.get("id")


class PayPalConnector(PaymentGateway):
    """
    PayPal connector. Orders are created with intent CAPTURE; the buyer
    approves them through the returned approval URL and the merchant captures
    afterwards. PayPal orders cannot be cancelled, they simply expire.
    """

    provider = PaymentProvider.PAYPAL
    signature_header = SIGNATURE_HEADER
    supports_cancellation = False

    DEFAULT_MINIMUM = Decimal("1.00")
    MINIMUM_CHARGES: Dict[str, Decimal] = {
        "JPY": Decimal("100"),
    }

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _access_token(self) -> str:
        """Return a cached OAuth token, requesting a new one shortly before expiry."""
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                response = self._client.post(
                    self._url("/v1/oauth2/token"),
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                logger.error(f"PayPal token request failed: {e}")
                raise PaymentProviderError(
                    "PayPal authentication failed", provider=self.provider.value, retriable=True
                ) from e
            if response.status_code >= 400:
                logger.error(f"PayPal token request rejected with HTTP {response.status_code}")
                raise PaymentProviderError(
                    "PayPal authentication failed", provider=self.provider.value
                )
            body = response.json()
            self._token = body["access_token"]
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
            return self._token

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)
        try:
            response = self._client.request(
                method, self._url(path), json=json_body, headers=request_headers
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal {operation} failed: {e}")
            raise PaymentProviderError(
                f"PayPal {operation} failed", provider=self.provider.value, retriable=True
            ) from e
        if response.status_code >= 400:
            logger.error(
                f"PayPal {operation} rejected with HTTP {response.status_code}: {response.text}"
            )
            raise PaymentProviderError(
                f"PayPal {operation} failed",
                provider=self.provider.value,
                retriable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json() if response.content else {}

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        order_id = (metadata or {}).get("order_id")
        purchase_unit: Dict[str, Any] = {
            "amount": {
                "currency_code": currency.upper(),
                "value": format_amount(amount, currency),
            },
        }
        if order_id:
            purchase_unit["reference_id"] = order_id
            purchase_unit["custom_id"] = order_id
        headers = {"PayPal-Request-Id": idempotency_key} if idempotency_key else None
        body = self._request(
            "POST",
            "/v2/checkout/orders",
            "create_order",
            json_body={"intent": "CAPTURE", "purchase_units": [purchase_unit]},
            headers=headers,
        )
        approval_url = None
        for link in body.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                approval_url = link.get("href")
                break
        logger.info(f"Created PayPal order {body.get('id')}")
        return IntentResult(
            reference=body["id"],
            client_handle=approval_url,
            status=body.get("status", "CREATED"),
        )

    def capture(self, reference: str) -> CaptureResult:
        body = self._request(
            "POST", f"/v2/checkout/orders/{reference}/capture", "capture", json_body={}
        )
        status = body.get("status", "")
        return CaptureResult(reference=reference, completed=status == "COMPLETED", status=status)

    def refund(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        order = self._request("GET", f"/v2/checkout/orders/{reference}", "get_order")
        try:
            capture_id = order["purchase_units"][0]["payments"]["captures"][0]["id"]
        except (KeyError, IndexError, TypeError) as e:
            raise PaymentProviderError(
                f"PayPal order {reference} has no capture to refund",
                provider=self.provider.value,
            ) from e

        refund_body: Dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": format_amount(amount, currency)},
        }
        if reason:
            refund_body["note_to_payer"] = reason
        body = self._request(
            "POST", f"/v2/payments/captures/{capture_id}/refund", "refund", json_body=refund_body
        )
        status = body.get("status", "")
        if status in ("FAILED", "CANCELLED"):
            raise PaymentProviderError(
                f"PayPal refund {body.get('id')} ended with status {status}",
                provider=self.provider.value,
            )
        logger.info(f"Created PayPal refund {body.get('id')} for {reference}")
        return RefundResult(reference=reference, refund_id=body.get("id"), status=status, amount=amount)

    def cancel_intent(self, reference: str) -> bool:
        logger.info(f"PayPal order {reference} cannot be cancelled; it will expire unapproved")
        return False

    def retrieve_status(self, reference: str) -> ProviderStatus:
        body = self._request("GET", f"/v2/checkout/orders/{reference}", "get_order")
        status = body.get("status", "")
        return ProviderStatus(
            reference=reference,
            status=status,
            payment_status=STATUS_MAP.get(status),
        )

    def verify_webhook(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        if not signature_header:
            raise SignatureVerificationFailed()
        expected = sign_payload(raw_payload, secret).encode("ascii")
        if not hmac.compare_digest(expected, signature_header.strip().encode("utf-8", "replace")):
            logger.warning("PayPal webhook signature mismatch")
            raise SignatureVerificationFailed()
        try:
            data = json.loads(raw_payload)
        except ValueError as e:
            raise SignatureVerificationFailed("Invalid webhook payload") from e
        if not isinstance(data, dict):
            raise SignatureVerificationFailed("Invalid webhook payload")

        raw_type = data.get("event_type", "")
        resource = data.get("resource")
        if not isinstance(resource, dict):
            resource = {}
        event_type = EVENT_TYPES.get(raw_type, PaymentEventType.UNKNOWN)
        return WebhookEvent(
            id=data.get("id", ""),
            type=event_type,
            raw_type=raw_type,
            provider=self.provider,
            reference=_resource_reference(event_type, resource),
            payload=resource,
        )

    def minimum_charge(self, currency: str) -> Decimal:
        return self.MINIMUM_CHARGES.get(currency.upper(), self.DEFAULT_MINIMUM)
