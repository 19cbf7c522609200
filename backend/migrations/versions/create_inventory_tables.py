"""create_inventory_tables: product variants, stock reservations, audit, orders, coupons

Revision ID: create_inventory_tables
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'create_inventory_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_RESERVATION = sa.text('NOT is_released AND NOT is_confirmed')


def upgrade() -> None:
    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('sku', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('price', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('discount_price', sa.DECIMAL(12, 2), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reorder_level', sa.Integer(), nullable=False, server_default='10'),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_product_variants_stock_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
    )
    op.create_index('ix_product_variants_product_id', 'product_variants', ['product_id'], unique=False)

    op.create_table(
        'stock_reservations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('holder_id', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('is_released', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_confirmed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('order_ref', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_stock_reservations_quantity_positive'),
        sa.CheckConstraint('NOT (is_released AND is_confirmed)', name='ck_stock_reservations_single_terminal'),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_stock_reservations_active_holder',
        'stock_reservations',
        ['variant_id', 'holder_id'],
        unique=True,
        postgresql_where=ACTIVE_RESERVATION,
    )
    op.create_index(
        'uq_stock_reservations_order_ref',
        'stock_reservations',
        ['variant_id', 'holder_id', 'order_ref'],
        unique=True,
        postgresql_where=sa.text('order_ref IS NOT NULL'),
    )
    op.create_index('ix_stock_reservations_expires_at', 'stock_reservations', ['expires_at'], unique=False)
    op.create_index(
        'ix_stock_reservations_variant_active',
        'stock_reservations',
        ['variant_id', 'is_released', 'is_confirmed'],
        unique=False,
    )

    op.create_table(
        'stock_audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('quantity_changed', sa.Integer(), nullable=False),
        sa.Column('stock_before', sa.Integer(), nullable=False),
        sa.Column('stock_after', sa.Integer(), nullable=False),
        sa.Column('holder_id', sa.String(255), nullable=True),
        sa.Column('reservation_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_stock_audit_logs_variant_id', 'stock_audit_logs', ['variant_id'], unique=False)
    op.create_index('ix_stock_audit_logs_action', 'stock_audit_logs', ['action'], unique=False)
    op.create_index('ix_stock_audit_logs_timestamp', 'stock_audit_logs', ['timestamp'], unique=False)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_number', sa.String(32), nullable=False),
        sa.Column('holder_id', sa.String(255), nullable=False),
        sa.Column('payment_method', sa.String(32), nullable=False),
        sa.Column('order_status', sa.String(32), nullable=False),
        sa.Column('payment_status', sa.String(32), nullable=False),
        sa.Column('total_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('applied_coupon_code', sa.String(64), nullable=True),
        sa.Column('pidx', sa.String(128), nullable=True),
        sa.Column('payment_url', sa.Text(), nullable=True),
        sa.Column('transaction_id', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
    )
    op.create_index(
        'uq_orders_pidx', 'orders', ['pidx'],
        unique=True,
        postgresql_where=sa.text('pidx IS NOT NULL'),
    )
    op.create_index('ix_orders_holder_id', 'orders', ['holder_id'], unique=False)
    op.create_index(
        'ix_orders_payment_scan', 'orders',
        ['payment_method', 'payment_status', 'created_at'],
        unique=False,
    )

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.DECIMAL(12, 2), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'], unique=False)

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )

    op.create_table(
        'payment_audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('pidx', sa.String(128), nullable=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('raw_response', sa.Text(), nullable=True),
        sa.Column('checked_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_audit_logs_order_id', 'payment_audit_logs', ['order_id'], unique=False)
    op.create_index('ix_payment_audit_logs_pidx', 'payment_audit_logs', ['pidx'], unique=False)


def downgrade() -> None:
    op.drop_table('payment_audit_logs')
    op.drop_table('coupons')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('stock_audit_logs')
    op.drop_table('stock_reservations')
    op.drop_table('product_variants')
