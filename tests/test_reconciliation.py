"""Tests for the reconciliation service and CLI."""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from order_payments.connectors import SimulatorConfig, SimulatorConnector
from order_payments.database import (
    Base,
    OrderRepository,
    OrphanedIntentRepository,
    OrphanedPaymentIntent,
    create_async_engine,
    get_async_session_factory,
    utcnow,
)
from order_payments.reconciliation import OrphanOutcome, ReconciliationService
from order_payments.reconciliation.cli import create_parser, main
from order_payments.services import intent_idempotency_key
from order_payments.state_machine import OrderStatus, PaymentProvider, PaymentStatus

from conftest import insert_order


async def record_orphan(session_factory, provider, reference, order_id="order-x"):
    async with session_factory() as session:
        async with session.begin():
            orphan = await OrphanedIntentRepository(session).create(
                provider=provider,
                provider_reference=reference,
                amount=Decimal("22.50"),
                currency="EUR",
                order_id=order_id,
                error_message="commit failed",
            )
    return orphan.id


async def unresolved_references(session_factory):
    async with session_factory() as session:
        orphans = await OrphanedIntentRepository(session).list_unresolved()
    return [o.provider_reference for o in orphans]


@pytest.fixture
def reconciliation_service(session_factory, gateways):
    return ReconciliationService(session_factory, gateways, provider_timeout=5.0)


class TestOrphanSweep:
    """Test retrying compensation for orphaned intents."""

    async def test_cancels_stripe_orphan(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("22.50"), "EUR", {})
        await record_orphan(session_factory, PaymentProvider.STRIPE, intent.reference)

        result = await reconciliation_service.sweep_orphaned_intents()

        assert result.total_examined == 1
        assert result.total_canceled == 1
        assert result.records[0].outcome == OrphanOutcome.CANCELED
        assert result.completed_at is not None
        assert stripe_sim.cancelled == [intent.reference]
        assert await unresolved_references(session_factory) == []

    async def test_paypal_orphan_stays_unresolved(self, reconciliation_service, session_factory, paypal_sim):
        intent = paypal_sim.create_intent(Decimal("22.50"), "EUR", {})
        await record_orphan(session_factory, PaymentProvider.PAYPAL, intent.reference)

        result = await reconciliation_service.sweep_orphaned_intents()

        assert result.total_unresolved == 1
        assert result.records[0].detail == "PAYPAL intents cannot be cancelled"
        assert await unresolved_references(session_factory) == [intent.reference]

    async def test_orphan_referenced_by_order(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("20.00"), "EUR", {})
        order_id = await insert_order(session_factory, intent.reference)
        await record_orphan(session_factory, PaymentProvider.STRIPE, intent.reference)

        result = await reconciliation_service.sweep_orphaned_intents()

        assert result.total_order_exists == 1
        assert result.records[0].order_id == order_id
        assert stripe_sim.cancelled == []
        assert await unresolved_references(session_factory) == []

    async def test_failed_cancel_keeps_orphan(self, session_factory):
        failing = SimulatorConnector(PaymentProvider.STRIPE, SimulatorConfig(fail_cancel=True))
        service = ReconciliationService(session_factory, {PaymentProvider.STRIPE: failing})
        intent = failing.create_intent(Decimal("22.50"), "EUR", {})
        await record_orphan(session_factory, PaymentProvider.STRIPE, intent.reference)

        result = await service.sweep_orphaned_intents()

        assert result.total_unresolved == 1
        assert result.records[0].detail.startswith("Cancel failed:")
        assert await unresolved_references(session_factory) == [intent.reference]

    async def test_missing_gateway(self, session_factory):
        service = ReconciliationService(session_factory, {})
        await record_orphan(session_factory, PaymentProvider.STRIPE, "pi_nowhere")

        result = await service.sweep_orphaned_intents()

        assert result.records[0].outcome == OrphanOutcome.UNRESOLVED
        assert result.records[0].detail == "No gateway configured for STRIPE"

    async def test_second_sweep_skips_resolved(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("22.50"), "EUR", {})
        await record_orphan(session_factory, PaymentProvider.STRIPE, intent.reference)

        await reconciliation_service.sweep_orphaned_intents()
        second = await reconciliation_service.sweep_orphaned_intents()

        assert second.total_examined == 0

    async def test_timed_out_intent_is_found_and_cancelled(
        self, reconciliation_service, session_factory, stripe_sim
    ):
        intent = stripe_sim.create_intent(Decimal("22.50"), "EUR", {"order_id": "order-42"})
        await record_orphan(
            session_factory, PaymentProvider.STRIPE, intent_idempotency_key("order-42"), order_id="order-42"
        )

        result = await reconciliation_service.sweep_orphaned_intents()

        assert result.total_canceled == 1
        assert result.records[0].provider_reference == intent.reference
        assert stripe_sim.cancelled == [intent.reference]
        async with session_factory() as session:
            orphans = list((await session.execute(select(OrphanedPaymentIntent))).scalars())
        assert orphans[0].provider_reference == intent.reference
        assert orphans[0].resolution == OrphanOutcome.CANCELED.value

    async def test_timed_out_intent_not_found(self, reconciliation_service, session_factory, stripe_sim):
        placeholder = intent_idempotency_key("order-43")
        await record_orphan(session_factory, PaymentProvider.STRIPE, placeholder, order_id="order-43")

        result = await reconciliation_service.sweep_orphaned_intents()

        assert result.total_unresolved == 1
        assert result.records[0].detail == "No STRIPE intent found for order order-43"
        assert await unresolved_references(session_factory) == [placeholder]


class TestPendingDiscrepancies:
    """Test the report of stale PENDING orders."""

    async def test_settled_at_provider_is_reported(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("20.00"), "EUR", {})
        order_id = await insert_order(session_factory, intent.reference)
        stripe_sim.capture(intent.reference)

        report = await reconciliation_service.find_pending_discrepancies(utcnow() + timedelta(seconds=5))

        assert report.total_checked == 1
        assert report.total_discrepancies == 1
        entry = report.discrepancies[0]
        assert entry.order_id == order_id
        assert entry.provider_status == "succeeded"
        assert entry.provider_payment_status == "SUCCEEDED"

        async with session_factory() as session:
            order = await OrderRepository(session).get_by_id(order_id)
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == PaymentStatus.PENDING.value

    async def test_untouched_order_is_consistent(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("20.00"), "EUR", {})
        await insert_order(session_factory, intent.reference)

        report = await reconciliation_service.find_pending_discrepancies(utcnow() + timedelta(seconds=5))

        assert report.total_checked == 1
        assert report.total_consistent == 1
        assert report.discrepancies == []

    async def test_unknown_at_provider_is_reported_with_error(self, reconciliation_service, session_factory):
        await insert_order(session_factory, "sim_unknown")

        report = await reconciliation_service.find_pending_discrepancies(utcnow() + timedelta(seconds=5))

        assert report.total_discrepancies == 1
        assert "Unknown simulated intent" in report.discrepancies[0].error

    async def test_recent_orders_are_skipped(self, reconciliation_service, session_factory):
        await insert_order(session_factory, "sim_recent")

        report = await reconciliation_service.find_pending_discrepancies(utcnow() - timedelta(hours=1))

        assert report.total_checked == 0

    async def test_summary_dict(self, reconciliation_service, session_factory, stripe_sim):
        intent = stripe_sim.create_intent(Decimal("20.00"), "EUR", {})
        await insert_order(session_factory, intent.reference)
        stripe_sim.capture(intent.reference)

        report = await reconciliation_service.find_pending_discrepancies(utcnow() + timedelta(seconds=5))
        summary = report.to_summary_dict()

        assert summary["statistics"] == {
            "total_checked": 1,
            "total_consistent": 0,
            "total_discrepancies": 1,
        }
        assert summary["discrepancies"][0]["provider"] == "STRIPE"


class TestReconciliationCli:
    """Test the reconciliation command line."""

    @pytest.fixture
    def database_url(self, tmp_path, monkeypatch):
        url = f"sqlite+aiosqlite:///{tmp_path / 'reconcile.db'}"
        monkeypatch.setenv("DATABASE_URL", url)
        monkeypatch.setenv("PAYMENT_GATEWAY_MODE", "simulator")
        return url

    def test_parser(self):
        args = create_parser().parse_args(["--limit", "5", "pending", "--older-than-minutes", "15"])
        assert args.command == "pending"
        assert args.limit == 5
        assert args.older_than_minutes == 15

    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "sweep-orphans" in capsys.readouterr().out

    def test_negative_age(self, database_url):
        assert main(["pending", "--older-than-minutes", "-5"]) == 1

    def test_pending_on_empty_database(self, database_url, capsys):
        assert main(["pending"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["statistics"]["total_checked"] == 0

    def test_sweep_writes_output_file(self, database_url, tmp_path):
        output_file = tmp_path / "sweep.json"
        assert main(["--output", str(output_file), "sweep-orphans"]) == 0
        data = json.loads(output_file.read_text())
        assert data["total_examined"] == 0

    def test_sweep_reports_unresolved(self, database_url, capsys):
        async def seed():
            engine = create_async_engine(database_url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            await record_orphan(get_async_session_factory(engine), PaymentProvider.STRIPE, "sim_lost")
            await engine.dispose()

        asyncio.run(seed())

        assert main(["sweep-orphans"]) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["total_unresolved"] == 1
        assert output["records"][0]["outcome"] == "unresolved"
        assert output["records"][0]["provider_reference"] == "sim_lost"
