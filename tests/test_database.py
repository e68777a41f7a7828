"""Tests for database models, session helpers and repositories."""

import os
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from order_payments.config import DEFAULT_DATABASE_URL
from order_payments.database import (
    DatabaseManager,
    Order,
    OrderRepository,
    OrderStatusHistoryRepository,
    OrphanedIntentRepository,
    ProductRepository,
    get_database_url,
    utcnow,
)
from order_payments.state_machine import (
    OrderStatus,
    PaymentEventType,
    PaymentProvider,
    PaymentStatus,
    transition_for,
)

from conftest import insert_order


class TestDatabaseUrl:
    """Test database URL resolution."""

    def test_explicit_url(self):
        assert get_database_url("sqlite+aiosqlite:///test.db") == "sqlite+aiosqlite:///test.db"

    @pytest.mark.parametrize("url", [
        "postgresql://user:pw@host/db",
        "postgres://user:pw@host/db",
    ])
    def test_postgres_uses_asyncpg(self, url):
        assert get_database_url(url) == "postgresql+asyncpg://user:pw@host/db"

    def test_environment_fallback(self):
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite+aiosqlite:///env.db"}):
            assert get_database_url() == "sqlite+aiosqlite:///env.db"

    def test_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_database_url() == DEFAULT_DATABASE_URL


class TestDatabaseManager:
    """Test engine lifecycle."""

    async def test_initialize_and_shutdown(self):
        manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
        with pytest.raises(RuntimeError):
            manager.session_factory

        await manager.initialize()
        async with manager.session() as session:
            product = await ProductRepository(session).create("Notebook", Decimal("10.00"))
        async with manager.session() as session:
            found = await ProductRepository(session).get_active_by_ids([product.id])
        assert list(found) == [product.id]

        await manager.shutdown()
        with pytest.raises(RuntimeError):
            manager.engine


class TestOrderModel:
    """Test Order constraints and serialisation."""

    async def test_requires_exactly_one_provider_reference(self, session_factory):
        order = Order(
            customer_email="jane@example.com",
            subtotal=Decimal("10.00"),
            total=Decimal("10.00"),
            currency="EUR",
            charged_amount=Decimal("10.00"),
        )
        with pytest.raises(IntegrityError):
            async with session_factory() as session:
                async with session.begin():
                    session.add(order)

    async def test_provider_reference_is_unique(self, session_factory):
        await insert_order(session_factory, "pi_dup")
        with pytest.raises(IntegrityError):
            await insert_order(session_factory, "pi_dup")

    async def test_to_dict_hides_internal_fields(self, session_factory):
        order_id = await insert_order(session_factory, "pi_dict", user_id="user-1")
        async with session_factory() as session:
            order = await OrderRepository(session).get_by_id(order_id)

        public = order.to_dict()
        assert public["payment_provider"] == "STRIPE"
        assert public["total"] == "20.00"
        assert "stripe_payment_intent_id" not in public
        assert "history" not in public

        internal = order.to_dict(include_internal=True)
        assert internal["stripe_payment_intent_id"] == "pi_dict"
        assert internal["history"][0]["action"] == "created"


class TestOrderRepository:
    """Test conditional transitions and queries."""

    async def test_apply_transition_once(self, session_factory):
        await insert_order(session_factory, "pi_once")
        transition = transition_for(PaymentEventType.PAYMENT_SUCCEEDED)

        async with session_factory() as session:
            async with session.begin():
                repo = OrderRepository(session)
                first = await repo.apply_transition(PaymentProvider.STRIPE, "pi_once", transition)
                second = await repo.apply_transition(PaymentProvider.STRIPE, "pi_once", transition)
                order = await repo.get_by_provider_reference(PaymentProvider.STRIPE, "pi_once", refresh=True)

        assert first is True
        assert second is False
        assert order.status == OrderStatus.PAID.value

    async def test_apply_transition_unknown_reference(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                changed = await OrderRepository(session).apply_transition(
                    PaymentProvider.PAYPAL, "missing", transition_for(PaymentEventType.PAYMENT_FAILED)
                )
        assert changed is False

    async def test_list_pending_older_than(self, session_factory):
        old_id = await insert_order(session_factory, "pi_old")
        await insert_order(
            session_factory, "pi_paid", status=OrderStatus.PAID, payment_status=PaymentStatus.SUCCEEDED
        )
        async with session_factory() as session:
            pending = await OrderRepository(session).list_pending_older_than(utcnow() + timedelta(seconds=5))
            none_yet = await OrderRepository(session).list_pending_older_than(utcnow() - timedelta(hours=1))
        assert [o.id for o in pending] == [old_id]
        assert none_yet == []

    async def test_history_listing(self, session_factory):
        order_id = await insert_order(session_factory, "pi_hist")
        async with session_factory() as session:
            async with session.begin():
                await OrderStatusHistoryRepository(session).record(
                    order_id=order_id,
                    action="admin_update",
                    new_status="PAID",
                    new_payment_status="SUCCEEDED",
                    previous_status="PENDING",
                    previous_payment_status="PENDING",
                )
        async with session_factory() as session:
            history = await OrderStatusHistoryRepository(session).list_for_order(order_id)
        assert [h.action for h in history] == ["created", "admin_update"]


class TestOrphanedIntentRepository:
    """Test the orphaned intent ledger."""

    async def test_create_list_and_resolve(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                orphan = await OrphanedIntentRepository(session).create(
                    provider=PaymentProvider.PAYPAL,
                    provider_reference="PAYORDER9",
                    amount=Decimal("12.00"),
                    currency="usd",
                    order_id="order-9",
                    error_message="commit failed",
                )
        assert orphan.currency == "USD"

        async with session_factory() as session:
            async with session.begin():
                repo = OrphanedIntentRepository(session)
                unresolved = await repo.list_unresolved()
                assert [o.provider_reference for o in unresolved] == ["PAYORDER9"]
                await repo.mark_resolved(unresolved[0], "manual_review")

        async with session_factory() as session:
            repo = OrphanedIntentRepository(session)
            assert await repo.list_unresolved() == []
            stored = await repo.get_by_id(orphan.id)
        assert stored.resolution == "manual_review"
        assert stored.resolved_at is not None
