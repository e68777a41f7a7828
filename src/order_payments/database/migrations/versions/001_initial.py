"""Initial migration - create products, discount_codes, orders, order_items,
order_status_history and orphaned_payment_intents tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create products table
    op.create_table(
        'products',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Create discount_codes table
    op.create_table(
        'discount_codes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('valid_from', sa.DateTime(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            'max_uses IS NULL OR current_uses <= max_uses',
            name='ck_discount_codes_quota',
        ),
    )
    op.create_index('ix_discount_codes_code', 'discount_codes', ['code'], unique=True)

    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('customer_first_name', sa.String(100), nullable=True),
        sa.Column('customer_last_name', sa.String(100), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('exchange_rate', sa.Numeric(18, 8), nullable=False, server_default='1'),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('charged_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('stripe_payment_intent_id', sa.String(255), nullable=True, unique=True),
        sa.Column('paypal_order_id', sa.String(255), nullable=True, unique=True),
        sa.Column('discount_code_id', sa.String(36), sa.ForeignKey('discount_codes.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            '(stripe_payment_intent_id IS NULL) <> (paypal_order_id IS NULL)',
            name='ck_orders_single_provider_reference',
        ),
    )

    # Create indexes for orders
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])

    # Create order_items table
    op.create_table(
        'order_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    # Create order_status_history table
    op.create_table(
        'order_status_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('previous_payment_status', sa.String(20), nullable=True),
        sa.Column('new_payment_status', sa.String(20), nullable=False),
        sa.Column('source_event_id', sa.String(255), nullable=True),
        sa.Column('source_event_type', sa.String(100), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])
    op.create_index('ix_order_status_history_action', 'order_status_history', ['action'])

    # Create orphaned_payment_intents table
    op.create_table(
        'orphaned_payment_intents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_reference', sa.String(255), nullable=False),
        sa.Column('order_id', sa.String(36), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolution', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_orphaned_payment_intents_provider_reference',
        'orphaned_payment_intents',
        ['provider_reference'],
    )


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_orphaned_payment_intents_provider_reference', table_name='orphaned_payment_intents')
    op.drop_index('ix_order_status_history_action', table_name='order_status_history')
    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_discount_codes_code', table_name='discount_codes')

    # Drop tables
    op.drop_table('orphaned_payment_intents')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('discount_codes')
    op.drop_table('products')
