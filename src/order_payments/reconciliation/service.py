"""Service layer for reconciliation operations."""

import logging
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..connectors.base import PaymentGateway
from ..database.models import OrphanedPaymentIntent, utcnow
from ..database.repository import OrderRepository, OrphanedIntentRepository
from ..errors import PaymentProviderError
from ..services import call_provider, intent_idempotency_key
from ..state_machine import PaymentProvider, PaymentStatus
from .models import (
    OrphanOutcome,
    OrphanSweepRecord,
    OrphanSweepResult,
    PendingDiscrepancy,
    PendingReport,
)

logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Repairs and reports divergence between local orders and providers.

    Provider calls are made outside any database transaction; every
    database change is its own short transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[PaymentProvider, PaymentGateway],
        provider_timeout: float = 10.0,
    ):
        """Initialize the reconciliation service.

        Args:
            session_factory: Factory for database sessions.
            gateways: Configured payment gateways by provider.
            provider_timeout: Seconds allowed for each provider call.
        """
        self.session_factory = session_factory
        self.gateways = dict(gateways)
        self.provider_timeout = provider_timeout

    async def _resolve(self, orphan_id: str, resolution: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                repo = OrphanedIntentRepository(session)
                orphan = await repo.get_by_id(orphan_id)
                if orphan is not None and not orphan.resolved:
                    await repo.mark_resolved(orphan, resolution)

    async def _locate_intent(
        self,
        orphan: OrphanedPaymentIntent,
        gateway: PaymentGateway,
        record: OrphanSweepRecord,
    ) -> bool:
        """Find the provider reference of an intent whose creation timed out."""
        try:
            reference = await call_provider(
                gateway.find_intent, orphan.order_id, timeout=self.provider_timeout
            )
        except PaymentProviderError as e:
            logger.error(f"Intent lookup for order {orphan.order_id} failed: {e}")
            record.detail = f"Intent lookup failed: {e}"
            return False
        if reference is None:
            record.detail = f"No {orphan.provider} intent found for order {orphan.order_id}"
            return False

        async with self.session_factory() as session:
            async with session.begin():
                repo = OrphanedIntentRepository(session)
                stored = await repo.get_by_id(orphan.id)
                if stored is not None:
                    await repo.set_reference(stored, reference)
        logger.info(f"Orphan for order {orphan.order_id} is {orphan.provider} intent {reference}")
        orphan.provider_reference = reference
        record.provider_reference = reference
        return True

    async def _referenced_by_order(self, orphan: OrphanedPaymentIntent) -> Optional[str]:
        async with self.session_factory() as session:
            order = await OrderRepository(session).get_by_provider_reference(
                PaymentProvider(orphan.provider), orphan.provider_reference
            )
        return order.id if order is not None else None

    async def _sweep_one(self, orphan: OrphanedPaymentIntent) -> OrphanSweepRecord:
        record = OrphanSweepRecord(
            orphan_id=orphan.id,
            provider=orphan.provider,
            provider_reference=orphan.provider_reference,
            order_id=orphan.order_id,
            amount=orphan.amount,
            currency=orphan.currency,
            outcome=OrphanOutcome.UNRESOLVED,
        )

        gateway = self.gateways.get(PaymentProvider(orphan.provider))
        if orphan.order_id and orphan.provider_reference == intent_idempotency_key(orphan.order_id):
            if gateway is None:
                record.detail = f"No gateway configured for {orphan.provider}"
                return record
            if not await self._locate_intent(orphan, gateway, record):
                return record

        order_id = await self._referenced_by_order(orphan)
        if order_id is not None:
            await self._resolve(orphan.id, OrphanOutcome.ORDER_EXISTS.value)
            logger.info(f"Orphan {orphan.provider_reference} belongs to order {order_id}; resolved")
            record.order_id = order_id
            record.outcome = OrphanOutcome.ORDER_EXISTS
            return record

        if gateway is None:
            record.detail = f"No gateway configured for {orphan.provider}"
            return record
        if not gateway.supports_cancellation:
            record.detail = f"{orphan.provider} intents cannot be cancelled"
            return record

        try:
            cancelled = await call_provider(
                gateway.cancel_intent, orphan.provider_reference, timeout=self.provider_timeout
            )
        except PaymentProviderError as e:
            logger.error(f"Retry cancel of orphan {orphan.provider_reference} failed: {e}")
            record.detail = f"Cancel failed: {e}"
            return record
        if not cancelled:
            record.detail = "Provider declined cancellation"
            return record

        await self._resolve(orphan.id, OrphanOutcome.CANCELED.value)
        logger.info(f"Cancelled orphaned {orphan.provider} intent {orphan.provider_reference}")
        record.outcome = OrphanOutcome.CANCELED
        return record

    async def sweep_orphaned_intents(self, limit: int = 100) -> OrphanSweepResult:
        """
        Retry compensation for provider intents whose order was never committed.

        An orphan whose reference is now held by a local order is resolved as
        ``order_exists``. Otherwise cancellation is retried; orphans that
        cannot be cancelled stay unresolved and are reported.

        Args:
            limit: Maximum number of orphans handled in one sweep.

        Returns:
            OrphanSweepResult with one record per examined orphan.
        """
        async with self.session_factory() as session:
            orphans = await OrphanedIntentRepository(session).list_unresolved(limit)

        result = OrphanSweepResult()
        for orphan in orphans:
            result.add(await self._sweep_one(orphan))
        result.completed_at = utcnow()

        if result.total_unresolved:
            logger.warning(f"{result.total_unresolved} orphaned intents need manual review")
        logger.info(
            f"Orphan sweep examined {result.total_examined}: "
            f"{result.total_canceled} cancelled, {result.total_order_exists} matched to orders"
        )
        return result

    async def find_pending_discrepancies(
        self,
        older_than: datetime,
        limit: int = 100,
    ) -> PendingReport:
        """
        Compare stale PENDING orders with the provider's live status.

        Nothing is changed; webhooks or an administrator settle the orders.

        Args:
            older_than: Only orders created before this time are checked.
            limit: Maximum number of orders checked.

        Returns:
            PendingReport listing every order the provider sees differently,
            or could not be asked about.
        """
        async with self.session_factory() as session:
            orders = await OrderRepository(session).list_pending_older_than(older_than, limit)

        report = PendingReport(cutoff=older_than)
        for order in orders:
            report.total_checked += 1
            provider = order.payment_provider
            entry = PendingDiscrepancy(
                order_id=order.id,
                provider=provider.value,
                provider_reference=order.provider_reference,
                created_at=order.created_at,
                local_status=order.status,
                local_payment_status=order.payment_status,
            )

            gateway = self.gateways.get(provider)
            if gateway is None:
                entry.error = f"No gateway configured for {provider.value}"
                report.discrepancies.append(entry)
                continue
            try:
                live = await call_provider(
                    gateway.retrieve_status, order.provider_reference, timeout=self.provider_timeout
                )
            except PaymentProviderError as e:
                logger.error(f"Could not fetch provider status for order {order.id}: {e}")
                entry.error = str(e)
                report.discrepancies.append(entry)
                continue

            entry.provider_status = live.status
            if live.payment_status is None or live.payment_status == PaymentStatus.PENDING:
                report.total_consistent += 1
                continue
            entry.provider_payment_status = live.payment_status.value
            logger.warning(
                f"Order {order.id} is {order.payment_status} locally but "
                f"{live.payment_status.value} at {provider.value}"
            )
            report.discrepancies.append(entry)

        return report
