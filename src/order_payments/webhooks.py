"""Webhook event processing: authenticate, normalise, and apply at most once."""

import logging
from typing import Mapping, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .connectors.base import PaymentGateway, WebhookEvent
from .database.repository import OrderRepository, OrderStatusHistoryRepository
from .errors import WebhookConfigurationError
from .notifications import BackgroundNotifier
from .state_machine import (
    HistoryAction,
    OrderStatus,
    PaymentEventType,
    PaymentProvider,
    transition_for,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
ORDER_NOT_FOUND = "order_not_found"
IGNORED = "ignored"
FLAGGED = "flagged"


class WebhookResult(BaseModel):
    outcome: str
    event_id: str
    event_type: str
    order_id: Optional[str] = None


class WebhookProcessor:
    """
    Applies provider webhook events to orders.

    Deliveries may be duplicated, reordered or arrive before the order they
    refer to is committed. Every state change is a conditional update, so a
    repeated event is reported as ``already_applied`` and changes nothing.
    An event for an unknown reference is acknowledged so the provider's
    retry can deliver it again once the order exists.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[PaymentProvider, PaymentGateway],
        secrets: Mapping[PaymentProvider, str],
        notifier: BackgroundNotifier,
    ):
        self.session_factory = session_factory
        self.gateways = dict(gateways)
        self.secrets = dict(secrets)
        self.notifier = notifier

    def signature_header_name(self, provider: PaymentProvider) -> Optional[str]:
        """Name of the HTTP header carrying the provider's webhook signature."""
        gateway = self.gateways.get(PaymentProvider(provider))
        return gateway.signature_header if gateway is not None else None

    def _verify(
        self,
        provider: PaymentProvider,
        raw_payload: bytes,
        signature_header: Optional[str],
    ) -> WebhookEvent:
        gateway = self.gateways.get(provider)
        secret = self.secrets.get(provider)
        if gateway is None or not secret:
            logger.error(f"{provider.value} webhook received but no webhook secret is configured")
            raise WebhookConfigurationError(f"{provider.value} webhook secret not configured")
        return gateway.verify_webhook(raw_payload, signature_header, secret)

    async def process(
        self,
        provider: PaymentProvider,
        raw_payload: bytes,
        signature_header: Optional[str],
    ) -> WebhookResult:
        """
        Verify and apply one webhook delivery.

        Args:
            provider: Provider the webhook endpoint belongs to.
            raw_payload: Request body exactly as received.
            signature_header: Value of the provider's signature header.

        Returns:
            WebhookResult describing what happened.

        Raises:
            WebhookConfigurationError: No secret configured for the provider.
            SignatureVerificationFailed: The payload is not authentic.
            SQLAlchemyError: Persistence failed; the provider should retry.
        """
        provider = PaymentProvider(provider)
        event = self._verify(provider, raw_payload, signature_header)
        logger.info(f"Received {provider.value} event {event.raw_type} ({event.id})")

        if event.type == PaymentEventType.DISPUTE_CREATED:
            return await self._flag_dispute(event)

        transition = transition_for(event.type)
        if transition is None:
            logger.info(f"Unhandled {provider.value} event type: {event.raw_type}")
            return self._result(IGNORED, event)
        if not event.reference:
            logger.warning(f"{provider.value} event {event.id} carries no payment reference")
            return self._result(ORDER_NOT_FOUND, event)

        async with self.session_factory() as session:
            async with session.begin():
                repo = OrderRepository(session)
                order = await repo.get_by_provider_reference(provider, event.reference)
                if order is None:
                    logger.warning(
                        f"Order not found for {provider.value} reference {event.reference}"
                    )
                    return self._result(ORDER_NOT_FOUND, event)

                previous_status = order.status
                previous_payment_status = order.payment_status
                changed = await repo.apply_transition(provider, event.reference, transition)
                if changed:
                    await OrderStatusHistoryRepository(session).record(
                        order_id=order.id,
                        action=HistoryAction.WEBHOOK,
                        previous_status=previous_status,
                        new_status=transition.status.value,
                        previous_payment_status=previous_payment_status,
                        new_payment_status=transition.payment_status.value,
                        source_event_id=event.id,
                        source_event_type=event.raw_type,
                    )
                    order = await repo.get_by_id(order.id, refresh=True)

        if not changed:
            logger.info(
                f"Event {event.id} already applied to order {order.id} "
                f"(payment status {order.payment_status})"
            )
            return self._result(ALREADY_APPLIED, event, order.id)

        logger.info(
            f"Order {order.id} moved {previous_status} -> {order.status} by {event.raw_type}"
        )
        if transition.status == OrderStatus.PAID:
            self.notifier.order_status_changed(order.to_dict(), previous_status)
        return self._result(APPLIED, event, order.id)

    async def _flag_dispute(self, event: WebhookEvent) -> WebhookResult:
        if not event.reference:
            logger.warning(f"Dispute {event.id} could not be matched to an order")
            return self._result(ORDER_NOT_FOUND, event)

        async with self.session_factory() as session:
            async with session.begin():
                order = await OrderRepository(session).get_by_provider_reference(
                    event.provider, event.reference
                )
                if order is None:
                    logger.warning(
                        f"Dispute {event.id} for unknown {event.provider.value} "
                        f"reference {event.reference}"
                    )
                    return self._result(ORDER_NOT_FOUND, event)
                await OrderStatusHistoryRepository(session).record(
                    order_id=order.id,
                    action=HistoryAction.DISPUTE_FLAGGED,
                    previous_status=order.status,
                    new_status=order.status,
                    previous_payment_status=order.payment_status,
                    new_payment_status=order.payment_status,
                    source_event_id=event.id,
                    source_event_type=event.raw_type,
                    note="Dispute opened with the payment provider",
                )

        logger.warning(f"Dispute {event.id} opened for order {order.id}; manual review required")
        return self._result(FLAGGED, event, order.id)

    @staticmethod
    def _result(outcome: str, event: WebhookEvent, order_id: Optional[str] = None) -> WebhookResult:
        return WebhookResult(
            outcome=outcome,
            event_id=event.id,
            event_type=event.raw_type,
            order_id=order_id,
        )
