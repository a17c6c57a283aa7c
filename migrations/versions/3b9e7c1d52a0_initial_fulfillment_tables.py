"""initial fulfillment tables

Revision ID: 3b9e7c1d52a0
Revises:
Create Date: 2026-10-12 10:41:17.204913

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b9e7c1d52a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('image', sa.String(1024), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_product_product_id', 'product', ['product_id'], unique=True)

    op.create_table(
        'productstock',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.String(64), sa.ForeignKey('product.product_id', ondelete='CASCADE'), nullable=False),
        sa.Column('size', sa.String(8), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _ts('updated_at'),
        sa.UniqueConstraint('product_id', 'size', name='uq_product_stock_size'),
    )
    op.create_index('ix_productstock_product_id', 'productstock', ['product_id'])

    op.create_table(
        'cart',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('total_items', sa.Integer(), nullable=False),
        sa.Column('total_price', sa.BigInteger(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_cart_user_id', 'cart', ['user_id'], unique=True)

    op.create_table(
        'cartitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cart_id', sa.Integer(), sa.ForeignKey('cart.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('size', sa.String(8), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('image', sa.String(1024), nullable=True),
        sa.Column('saved_for_later', sa.Boolean(), nullable=False),
        _ts('created_at'),
        sa.UniqueConstraint('cart_id', 'product_id', 'size', 'saved_for_later', name='uq_cart_product_size'),
    )
    op.create_index('ix_cartitem_cart_id', 'cartitem', ['cart_id'])

    op.create_table(
        'coupon',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(16), nullable=False),
        sa.Column('discount_value', sa.BigInteger(), nullable=False),
        sa.Column('min_purchase_amount', sa.BigInteger(), nullable=False),
        sa.Column('max_discount_amount', sa.BigInteger(), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _ts('valid_from', nullable=True),
        _ts('valid_until', nullable=True),
        sa.Column('first_time_purchase_only', sa.Boolean(), nullable=False),
        sa.Column('once_per_account', sa.Boolean(), nullable=False),
        _ts('created_at'),
    )
    op.create_index('ix_coupon_code', 'coupon', ['code'], unique=True)

    op.create_table(
        'couponusage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupon.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=True),
        _ts('used_at'),
    )
    op.create_index('ix_couponusage_coupon_id', 'couponusage', ['coupon_id'])
    op.create_index('ix_couponusage_user_id', 'couponusage', ['user_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('intent_id', sa.String(128), nullable=True, unique=True),
        sa.Column('payment_id', sa.String(128), nullable=True, unique=True),
        sa.Column('payment_signature', sa.String(256), nullable=True),
        sa.Column('subtotal', sa.BigInteger(), nullable=False),
        sa.Column('discount', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('coupon', sa.JSON(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('payment_method', sa.String(16), nullable=False),
        sa.Column('payment_status', sa.String(16), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('cod_token_amount', sa.BigInteger(), nullable=True),
        sa.Column('vendor_order_id', sa.String(64), nullable=True),
        sa.Column('vendor_shipment_id', sa.String(64), nullable=True),
        sa.Column('awb_code', sa.String(64), nullable=True),
        sa.Column('courier_name', sa.String(128), nullable=True),
        sa.Column('tracking_url', sa.String(512), nullable=True),
        _ts('cancellation_window_ends_at', nullable=True),
        _ts('delivered_at', nullable=True),
        _ts('cancelled_at', nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        _ts('return_requested_at', nullable=True),
        sa.Column('return_reason', sa.Text(), nullable=True),
        sa.Column('return_comments', sa.Text(), nullable=True),
        sa.Column('refund_id', sa.String(128), nullable=True, unique=True),
        sa.Column('refund_amount', sa.BigInteger(), nullable=True),
        sa.Column('refund_status', sa.String(16), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refund_notes', sa.Text(), nullable=True),
        _ts('refunded_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_orders_public_id', 'orders', ['public_id'], unique=True)
    op.create_index('ix_orders_order_id', 'orders', ['order_id'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_vendor_order_id', 'orders', ['vendor_order_id'])

    op.create_table(
        'orderitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('size', sa.String(8), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('image', sa.String(1024), nullable=True),
    )
    op.create_index('ix_orderitem_order_id', 'orderitem', ['order_id'])

    op.create_table(
        'orderstatushistory',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('actor', sa.String(16), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        _ts('created_at'),
    )
    op.create_index('ix_orderstatushistory_order_id', 'orderstatushistory', ['order_id'])

    op.create_table(
        'ordernote',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('note', sa.Text(), nullable=False),
        _ts('created_at'),
    )
    op.create_index('ix_ordernote_order_id', 'ordernote', ['order_id'])

    op.create_table(
        'paymentwebhookevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('provider_event_id', sa.String(128), nullable=True),
        sa.Column('event', sa.String(64), nullable=True),
        sa.Column('intent_id', sa.String(128), nullable=True),
        sa.Column('payment_id', sa.String(128), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        _ts('processed_at', nullable=True),
        _ts('created_at'),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_provider_event'),
    )
    op.create_index('ix_paymentwebhookevent_provider', 'paymentwebhookevent', ['provider'])
    op.create_index('ix_paymentwebhookevent_intent_id', 'paymentwebhookevent', ['intent_id'])
    op.create_index('ix_paymentwebhookevent_processed_at', 'paymentwebhookevent', ['processed_at'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in ('paymentwebhookevent', 'ordernote', 'orderstatushistory', 'orderitem', 'orders',
                  'couponusage', 'coupon', 'cartitem', 'cart', 'productstock', 'product'):
        op.drop_table(table)
