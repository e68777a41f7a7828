"""Tests for PayPalConnector against a mocked REST API."""

import json
from decimal import Decimal

import httpx
import pytest

from order_payments.connectors.paypal_connector import PayPalConnector, sign_payload
from order_payments.errors import PaymentProviderError, SignatureVerificationFailed
from order_payments.state_machine import PaymentEventType, PaymentProvider, PaymentStatus

BASE_URL = "https://paypal.test"
WEBHOOK_SECRET = "paypal_test_secret"


class FakePayPal:
    """Minimal PayPal REST API served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self.fail_with = None
        self.order_status = "CREATED"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": 3600})

        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"name": "INTERNAL_SERVER_ERROR"})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(201, json={
                "id": "PAYORDER1",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"{BASE_URL}/v2/checkout/orders/PAYORDER1"},
                    {"rel": "approve", "href": "https://www.paypal.test/checkoutnow?token=PAYORDER1"},
                ],
            })
        if path == "/v2/checkout/orders/PAYORDER1/capture":
            return httpx.Response(201, json={"id": "PAYORDER1", "status": "COMPLETED"})
        if path == "/v2/checkout/orders/PAYORDER1":
            return httpx.Response(200, json={
                "id": "PAYORDER1",
                "status": self.order_status,
                "purchase_units": [{"payments": {"captures": [{"id": "CAPTURE1"}]}}],
            })
        if path == "/v2/payments/captures/CAPTURE1/refund":
            return httpx.Response(201, json={"id": "REFUND1", "status": "COMPLETED"})
        return httpx.Response(404)


@pytest.fixture
def fake_paypal():
    return FakePayPal()


@pytest.fixture
def connector(fake_paypal):
    client = httpx.Client(transport=httpx.MockTransport(fake_paypal))
    connector = PayPalConnector("client-id", "client-secret", base_url=BASE_URL, client=client)
    yield connector
    connector.close()


class TestPayPalOrders:
    """Tests for order creation, capture and refund."""

    def test_create_intent(self, connector, fake_paypal):
        result = connector.create_intent(Decimal("22.5"), "eur", {"order_id": "order_1"}, "order-order_1")

        assert result.reference == "PAYORDER1"
        assert result.client_handle == "https://www.paypal.test/checkoutnow?token=PAYORDER1"
        request = fake_paypal.requests[0]
        assert request.headers["PayPal-Request-Id"] == "order-order_1"
        assert request.headers["Authorization"] == "Bearer token-1"
        body = json.loads(request.content)
        assert body["intent"] == "CAPTURE"
        unit = body["purchase_units"][0]
        assert unit["amount"] == {"currency_code": "EUR", "value": "22.50"}
        assert unit["custom_id"] == "order_1"

    def test_token_is_cached(self, connector, fake_paypal):
        connector.create_intent(Decimal("10"), "EUR", {})
        connector.retrieve_status("PAYORDER1")
        assert fake_paypal.token_calls == 1

    def test_capture(self, connector):
        result = connector.capture("PAYORDER1")
        assert result.completed is True
        assert result.status == "COMPLETED"

    def test_refund_uses_first_capture(self, connector, fake_paypal):
        result = connector.refund("PAYORDER1", Decimal("5"), "USD", reason="damaged")

        assert result.refund_id == "REFUND1"
        refund_request = fake_paypal.requests[-1]
        assert refund_request.url.path == "/v2/payments/captures/CAPTURE1/refund"
        body = json.loads(refund_request.content)
        assert body["amount"] == {"currency_code": "USD", "value": "5.00"}
        assert body["note_to_payer"] == "damaged"

    def test_cannot_cancel(self, connector, fake_paypal):
        assert connector.supports_cancellation is False
        assert connector.cancel_intent("PAYORDER1") is False
        assert fake_paypal.requests == []

    @pytest.mark.parametrize("paypal_status,payment_status", [
        ("CREATED", PaymentStatus.PENDING),
        ("APPROVED", PaymentStatus.PENDING),
        ("COMPLETED", PaymentStatus.SUCCEEDED),
        ("VOIDED", PaymentStatus.FAILED),
    ])
    def test_retrieve_status(self, connector, fake_paypal, paypal_status, payment_status):
        fake_paypal.order_status = paypal_status
        assert connector.retrieve_status("PAYORDER1").payment_status == payment_status

    def test_server_error_is_retriable(self, connector, fake_paypal):
        fake_paypal.fail_with = 503
        with pytest.raises(PaymentProviderError) as exc_info:
            connector.create_intent(Decimal("10"), "EUR", {})
        assert exc_info.value.retriable is True
        assert exc_info.value.provider == "PAYPAL"

    def test_client_error_is_not_retriable(self, connector, fake_paypal):
        fake_paypal.fail_with = 422
        with pytest.raises(PaymentProviderError) as exc_info:
            connector.capture("PAYORDER1")
        assert exc_info.value.retriable is False

    def test_minimum_charge(self, connector):
        assert connector.minimum_charge("EUR") == Decimal("1.00")
        assert connector.minimum_charge("JPY") == Decimal("100")


class TestPayPalWebhooks:
    """Tests for webhook verification and normalisation."""

    def _event(self, event_type, resource):
        return json.dumps({"id": "WH-1", "event_type": event_type, "resource": resource}).encode()

    def test_capture_completed_refers_to_order(self, connector):
        payload = self._event("PAYMENT.CAPTURE.COMPLETED", {
            "id": "CAPTURE1",
            "supplementary_data": {"related_ids": {"order_id": "PAYORDER1"}},
        })
        event = connector.verify_webhook(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)

        assert event.type == PaymentEventType.CAPTURE_COMPLETED
        assert event.reference == "PAYORDER1"
        assert event.provider == PaymentProvider.PAYPAL

    def test_order_approved_uses_resource_id(self, connector):
        payload = self._event("CHECKOUT.ORDER.APPROVED", {"id": "PAYORDER1"})
        event = connector.verify_webhook(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)
        assert event.type == PaymentEventType.ORDER_APPROVED
        assert event.reference == "PAYORDER1"

    def test_denied_capture_is_a_failure(self, connector):
        payload = self._event("PAYMENT.CAPTURE.DENIED", {
            "id": "CAPTURE1",
            "supplementary_data": {"related_ids": {"order_id": "PAYORDER1"}},
        })
        event = connector.verify_webhook(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)
        assert event.type == PaymentEventType.PAYMENT_FAILED

    def test_dispute_without_order_id_has_no_reference(self, connector):
        payload = self._event("CUSTOMER.DISPUTE.CREATED", {"dispute_id": "PP-D-1", "id": "PP-D-1"})
        event = connector.verify_webhook(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)
        assert event.type == PaymentEventType.DISPUTE_CREATED
        assert event.reference is None

    def test_bad_signature(self, connector):
        payload = self._event("PAYMENT.CAPTURE.COMPLETED", {"id": "CAPTURE1"})
        with pytest.raises(SignatureVerificationFailed):
            connector.verify_webhook(payload, sign_payload(payload, "other"), WEBHOOK_SECRET)

    def test_missing_signature(self, connector):
        with pytest.raises(SignatureVerificationFailed):
            connector.verify_webhook(b"{}", "", WEBHOOK_SECRET)

    def test_non_ascii_signature(self, connector):
        payload = self._event("PAYMENT.CAPTURE.COMPLETED", {"id": "CAPTURE1"})
        with pytest.raises(SignatureVerificationFailed):
            connector.verify_webhook(payload, "sigé", WEBHOOK_SECRET)

    def test_payload_must_be_an_object(self, connector):
        payload = b'["PAYMENT.CAPTURE.COMPLETED"]'
        with pytest.raises(SignatureVerificationFailed) as exc_info:
            connector.verify_webhook(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)
        assert exc_info.value.message == "Invalid webhook payload"

    def test_no_intent_lookup(self, connector, fake_paypal):
        assert connector.find_intent("order-1") is None
        assert fake_paypal.requests == []
