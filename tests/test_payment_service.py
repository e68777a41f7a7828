"""Tests for capture, refund and payment status."""

from decimal import Decimal

import pytest

from order_payments.errors import AccessDenied, OrderNotFound, PaymentActionFailed, ValidationError
from order_payments.services import Caller
from order_payments.state_machine import OrderStatus, PaymentStatus

from conftest import make_order_request

OWNER = Caller(user_id="user-1")
ADMIN = Caller(is_admin=True)


@pytest.fixture
async def pending_order(order_service, catalog):
    created = await order_service.create_order(
        make_order_request([(catalog["notebook"], 2)]), user_id="user-1"
    )
    return created.order


@pytest.fixture
async def paid_order(payment_service, pending_order):
    outcome = await payment_service.capture(pending_order.id, OWNER)
    return outcome.order


class TestCapture:
    """Test merchant-initiated capture."""

    async def test_capture_marks_order_paid(self, payment_service, pending_order, stripe_sim, notifier, dispatcher):
        outcome = await payment_service.capture(pending_order.id, OWNER)

        assert outcome.already_captured is False
        assert outcome.order.status == OrderStatus.PAID.value
        assert outcome.order.payment_status == PaymentStatus.SUCCEEDED.value
        assert outcome.order.history[-1].action == "capture"
        assert stripe_sim.get_intent(pending_order.stripe_payment_intent_id).status == "succeeded"
        await notifier.wait_idle()
        assert dispatcher.status_changes == [(pending_order.id, "PENDING", "PAID")]

    async def test_second_capture_reports_already_captured(self, payment_service, paid_order):
        outcome = await payment_service.capture(paid_order.id, OWNER)
        assert outcome.already_captured is True
        assert outcome.order.status == OrderStatus.PAID.value

    async def test_capture_failure_leaves_order_unchanged(self, payment_service, order_service, pending_order, stripe_sim):
        stripe_sim.config.fail_capture = True
        with pytest.raises(PaymentActionFailed):
            await payment_service.capture(pending_order.id, OWNER)

        order = await order_service.get_order(pending_order.id)
        assert order.status == OrderStatus.PENDING.value
        assert len(order.history) == 1

    async def test_capture_of_failed_order(self, payment_service, order_service, pending_order):
        await order_service.update_order_status(pending_order.id, status="FAILED")
        with pytest.raises(PaymentActionFailed):
            await payment_service.capture(pending_order.id, OWNER)

    async def test_capture_by_other_user(self, payment_service, pending_order):
        with pytest.raises(AccessDenied):
            await payment_service.capture(pending_order.id, Caller(user_id="user-2"))

    async def test_capture_unknown_order(self, payment_service):
        with pytest.raises(OrderNotFound):
            await payment_service.capture("missing", ADMIN)


class TestRefund:
    """Test full and partial refunds."""

    async def test_full_refund(self, payment_service, paid_order, stripe_sim):
        outcome = await payment_service.refund(paid_order.id, reason="requested_by_customer")

        assert outcome.amount == Decimal("20.00")
        assert outcome.refund_id.startswith("re_")
        assert outcome.order.status == OrderStatus.REFUNDED.value
        assert outcome.order.payment_status == PaymentStatus.REFUNDED.value
        assert outcome.order.history[-1].action == "refund"
        assert "20.00 EUR" in outcome.order.history[-1].note
        assert stripe_sim.get_intent(paid_order.stripe_payment_intent_id).refunded_amount == Decimal("20.00")

    async def test_partial_refund_moves_to_refunded(self, payment_service, paid_order):
        outcome = await payment_service.refund(paid_order.id, amount=Decimal("5.00"))
        assert outcome.amount == Decimal("5.00")
        assert outcome.order.status == OrderStatus.REFUNDED.value

    async def test_refund_twice(self, payment_service, paid_order):
        await payment_service.refund(paid_order.id)
        with pytest.raises(ValidationError):
            await payment_service.refund(paid_order.id)

    async def test_refund_of_unpaid_order(self, payment_service, pending_order):
        with pytest.raises(ValidationError):
            await payment_service.refund(pending_order.id)

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("20.01")])
    async def test_refund_amount_out_of_range(self, payment_service, paid_order, amount):
        with pytest.raises(ValidationError):
            await payment_service.refund(paid_order.id, amount=amount)

    async def test_refund_failure_leaves_order_unchanged(self, payment_service, order_service, paid_order, stripe_sim):
        stripe_sim.config.fail_refund = True
        with pytest.raises(PaymentActionFailed) as exc_info:
            await payment_service.refund(paid_order.id)

        assert exc_info.value.message == "Refund processing failed"
        order = await order_service.get_order(paid_order.id)
        assert order.status == OrderStatus.PAID.value


class TestPaymentStatus:
    """Test the combined local and provider status view."""

    async def test_reports_live_status(self, payment_service, pending_order):
        data = await payment_service.payment_status(pending_order.id, OWNER)

        assert data["status"] == "PENDING"
        assert data["charged_amount"] == "20.00"
        assert data["external_status"] == {
            "provider": "STRIPE",
            "status": "created",
            "payment_status": "PENDING",
        }

    async def test_provider_failure_is_reported_as_none(self, payment_service, pending_order, stripe_sim):
        stripe_sim._intents.clear()
        data = await payment_service.payment_status(pending_order.id, OWNER)
        assert data["external_status"] is None
        assert data["payment_status"] == "PENDING"

    async def test_requires_access(self, payment_service, pending_order):
        with pytest.raises(AccessDenied):
            await payment_service.payment_status(pending_order.id, Caller(user_id="someone-else"))
