"""Edition ledger: orders, line items, products, edition events

Revision ID: 20261019_ledger
Revises:
Create Date: 2026-10-19

This migration adds:
1. Orders (platform + manually keyed-in rows, nullable archived flag)
2. Line items (validity flags, edition number/total, ownership snapshot)
3. Products (edition size reference)
4. Edition events (append-only audit trail)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. ORDERS TABLE
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=True),
        sa.Column('order_name', sa.String(length=64), nullable=True),
        sa.Column('financial_status', sa.String(length=32), nullable=True),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived', sa.Boolean(), nullable=True),
        sa.Column('platform_status', sa.String(length=16), nullable=True),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='platform'),
        sa.Column('customer_id', sa.String(length=64), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_order_number', ['order_number'], unique=False)
        batch_op.create_index('ix_orders_customer_email', ['customer_email'], unique=False)
        batch_op.create_index('ix_orders_created', ['created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_customer_id'), ['customer_id'], unique=False)

    # ==========================================================================
    # 2. LINE ITEMS TABLE
    # ==========================================================================
    op.create_table('line_items',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('edition_number', sa.Integer(), nullable=True),
        sa.Column('edition_total', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('restocked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('refund_status', sa.String(length=16), nullable=True, server_default='none'),
        sa.Column('owner_id', sa.String(length=64), nullable=True),
        sa.Column('owner_email', sa.String(length=255), nullable=True),
        sa.Column('owner_name', sa.String(length=255), nullable=True),
        sa.Column('certificate_access_token', sa.String(length=128), nullable=True),
        sa.Column('nfc_tag_id', sa.String(length=128), nullable=True),
        sa.Column('nfc_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('line_items', schema=None) as batch_op:
        batch_op.create_index('ix_line_items_product_created', ['product_id', 'created_at'], unique=False)
        batch_op.create_index('ix_line_items_owner_email', ['owner_email'], unique=False)
        batch_op.create_index(batch_op.f('ix_line_items_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_line_items_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_line_items_owner_id'), ['owner_id'], unique=False)

    # ==========================================================================
    # 3. PRODUCTS TABLE
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('edition_size', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # ==========================================================================
    # 4. EDITION EVENTS TABLE (append-only)
    # ==========================================================================
    op.create_table('edition_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('line_item_id', sa.String(length=64), nullable=True),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column('edition_number', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('owner_id', sa.String(length=64), nullable=True),
        sa.Column('owner_email', sa.String(length=255), nullable=True),
        sa.Column('owner_name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('edition_events', schema=None) as batch_op:
        batch_op.create_index('ix_edition_events_line_item_created', ['line_item_id', 'created_at'], unique=False)
        batch_op.create_index('ix_edition_events_product_created', ['product_id', 'created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_edition_events_line_item_id'), ['line_item_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_edition_events_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_edition_events_event_type'), ['event_type'], unique=False)


def downgrade():
    with op.batch_alter_table('edition_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_edition_events_event_type'))
        batch_op.drop_index(batch_op.f('ix_edition_events_product_id'))
        batch_op.drop_index(batch_op.f('ix_edition_events_line_item_id'))
        batch_op.drop_index('ix_edition_events_product_created')
        batch_op.drop_index('ix_edition_events_line_item_created')
    op.drop_table('edition_events')

    op.drop_table('products')

    with op.batch_alter_table('line_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_line_items_owner_id'))
        batch_op.drop_index(batch_op.f('ix_line_items_product_id'))
        batch_op.drop_index(batch_op.f('ix_line_items_order_id'))
        batch_op.drop_index('ix_line_items_owner_email')
        batch_op.drop_index('ix_line_items_product_created')
    op.drop_table('line_items')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_orders_customer_id'))
        batch_op.drop_index('ix_orders_created')
        batch_op.drop_index('ix_orders_customer_email')
        batch_op.drop_index('ix_orders_order_number')
    op.drop_table('orders')
