"""channel sync initial schema

Revision ID: channel_sync_0001
Revises:
Create Date: 2026-10-19 00:00:01.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = 'channel_sync_0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_PAYLOAD = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created(name: str = 'created_at') -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _account_fk() -> sa.Column:
    return sa.Column(
        'channel_account_id', sa.String(36),
        sa.ForeignKey('channel_accounts.id', ondelete='CASCADE'), nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        'channel_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        _ts('access_token_expires_at'),
        _ts('refresh_token_expires_at'),
        _ts('last_refreshed_at'),
        sa.Column('refresh_error', sa.Text(), nullable=True),
        sa.Column('region', sa.String(8), nullable=True),
        sa.Column('marketplace_ids', JSON_PAYLOAD, nullable=True),
        sa.Column('orders_in', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('inventory_out', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('fulfillment_out', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('labels', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('status_reason', sa.Text(), nullable=True),
        _ts('last_sync_at'),
        _created(),
        _created('updated_at'),
        sa.UniqueConstraint('user_id', 'channel', 'external_id', name='uq_channel_accounts_natural_key'),
    )
    op.create_index('idx_channel_accounts_channel_status', 'channel_accounts', ['channel', 'status'])
    op.create_index('idx_channel_accounts_external_id', 'channel_accounts', ['external_id'])

    op.create_table(
        'items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('sku', sa.String(255), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        _created(),
        _created('updated_at'),
        sa.UniqueConstraint('user_id', 'sku', name='uq_items_user_sku'),
    )

    op.create_table(
        'item_externals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id', ondelete='CASCADE'), nullable=False),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('external_item_id', sa.String(255), nullable=False),
        sa.Column('external_variant_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('inventory_item_id', sa.String(255), nullable=True),
        sa.Column('sku', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('raw', JSON_PAYLOAD, nullable=True),
        _ts('synced_at'),
        sa.UniqueConstraint(
            'channel_account_id', 'external_item_id', 'external_variant_id',
            name='uq_item_externals_account_item_variant',
        ),
    )
    op.create_index('idx_item_externals_inventory_item', 'item_externals', ['channel_account_id', 'inventory_item_id'])
    op.create_index('idx_item_externals_item_id', 'item_externals', ['item_id'])

    op.create_table(
        'customers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(320), nullable=True),
        sa.Column('phone', sa.String(64), nullable=True),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('last_name', sa.Text(), nullable=True),
        _created(),
        _created('updated_at'),
    )
    op.create_index('idx_customers_user_email', 'customers', ['user_id', 'email'])
    op.create_index('idx_customers_user_phone', 'customers', ['user_id', 'phone'])

    op.create_table(
        'customer_externals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='CASCADE'), nullable=False),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('raw', JSON_PAYLOAD, nullable=True),
        _ts('synced_at'),
        sa.UniqueConstraint('channel_account_id', 'external_id', name='uq_customer_externals_account_external'),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('marketplace_id', sa.String(64), nullable=True),
        sa.Column('fulfillment_channel', sa.String(32), nullable=True),
        sa.Column('source', sa.String(16), nullable=True),
        sa.Column('external_order_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('channel_status', sa.String(64), nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('subtotal', sa.Numeric(14, 2), nullable=True),
        sa.Column('tax', sa.Numeric(14, 2), nullable=True),
        sa.Column('shipping', sa.Numeric(14, 2), nullable=True),
        sa.Column('discounts', sa.Numeric(14, 2), nullable=True),
        sa.Column('total', sa.Numeric(14, 2), nullable=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('ship_city', sa.Text(), nullable=True),
        sa.Column('ship_state', sa.Text(), nullable=True),
        sa.Column('ship_postal_code', sa.String(32), nullable=True),
        sa.Column('ship_country', sa.String(8), nullable=True),
        _ts('placed_at'),
        _ts('closed_at'),
        sa.Column('raw', JSON_PAYLOAD, nullable=True),
        _ts('synced_at'),
        _created(),
        sa.UniqueConstraint('channel_account_id', 'external_order_id', name='uq_orders_account_external'),
    )
    op.create_index('idx_orders_user_id', 'orders', ['user_id'])
    op.create_index('idx_orders_placed_at', 'orders', ['placed_at'])

    op.create_table(
        'order_lines',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_line_id', sa.String(255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sku', sa.String(255), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price', sa.Numeric(14, 2), nullable=True),
        sa.Column('tax', sa.Numeric(14, 2), nullable=True),
        sa.Column('discounts', sa.Numeric(14, 2), nullable=True),
        sa.Column('fulfillment_status', sa.String(64), nullable=True),
        sa.Column('weight_lbs', sa.Float(), nullable=True),
        sa.UniqueConstraint('order_id', 'external_line_id', name='uq_order_lines_order_external'),
    )

    op.create_table(
        'inventory_levels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id', ondelete='CASCADE'), nullable=False),
        _account_fk(),
        sa.Column('location_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('available', sa.Integer(), nullable=False, server_default='0'),
        _created('updated_at'),
        sa.UniqueConstraint(
            'item_id', 'channel_account_id', 'location_id', name='uq_inventory_levels_item_account_location'
        ),
    )

    op.create_table(
        'shipping_labels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=True),
        _account_fk(),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('shipment_id', sa.String(255), nullable=False),
        sa.Column('carrier', sa.String(64), nullable=True),
        sa.Column('service', sa.String(128), nullable=True),
        sa.Column('tracking_number', sa.String(128), nullable=True),
        sa.Column('label_url', sa.Text(), nullable=True),
        sa.Column('label_format', sa.String(16), nullable=True),
        sa.Column('cost', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('raw', JSON_PAYLOAD, nullable=True),
        _created(),
        sa.UniqueConstraint('channel_account_id', 'shipment_id', name='uq_shipping_labels_account_shipment'),
    )
    op.create_index('idx_shipping_labels_order_id', 'shipping_labels', ['order_id'])

    op.create_table(
        'inbound_shipments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('marketplace_id', sa.String(64), nullable=True),
        sa.Column('shipment_id', sa.String(64), nullable=False),
        sa.Column('destination_fulfillment_center_id', sa.String(32), nullable=True),
        sa.Column('label_prep_preference', sa.String(32), nullable=True),
        sa.Column('shipment_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('items', JSON_PAYLOAD, nullable=False),
        sa.Column('raw_plan', JSON_PAYLOAD, nullable=True),
        sa.Column('raw_shipment', JSON_PAYLOAD, nullable=True),
        sa.Column('label_url', sa.Text(), nullable=True),
        sa.Column('label_page_type', sa.String(64), nullable=True),
        sa.Column('label_type', sa.String(32), nullable=True),
        _ts('labels_fetched_at'),
        _created(),
        _created('updated_at'),
        sa.UniqueConstraint('channel_account_id', 'shipment_id', name='uq_inbound_shipments_account_shipment'),
    )

    op.create_table(
        'rate_shopping_quotes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('city_lower', sa.String(255), nullable=False),
        sa.Column('state_lower', sa.String(64), nullable=False),
        sa.Column('weight_band', sa.Float(), nullable=False),
        sa.Column('item_count', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False, server_default='USD'),
        sa.Column('provider', sa.String(64), nullable=True),
        sa.Column('raw', JSON_PAYLOAD, nullable=True),
        _ts('expires_at'),
        _created(),
        _created('updated_at'),
        sa.UniqueConstraint(
            'city_lower', 'state_lower', 'weight_band', 'item_count', name='uq_rate_shopping_quotes_bucket'
        ),
    )
    op.create_index(
        'idx_rate_shopping_quotes_lookup', 'rate_shopping_quotes',
        ['city_lower', 'state_lower', 'item_count', 'weight_band'],
    )

    op.create_table(
        'audit_order_lines',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('marketplace_id', sa.String(64), nullable=True),
        sa.Column('fulfillment_channel', sa.String(32), nullable=True),
        sa.Column('source', sa.String(16), nullable=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=True),
        sa.Column('order_external_id', sa.String(255), nullable=False),
        _ts('order_date'),
        sa.Column('sku', sa.String(255), nullable=False, server_default=''),
        sa.Column('item_name', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('weight_lbs', sa.Float(), nullable=True),
        sa.Column('item_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('ship_city', sa.Text(), nullable=True),
        sa.Column('ship_state', sa.Text(), nullable=True),
        sa.Column('ship_postal_code', sa.String(32), nullable=True),
        sa.Column('ship_country', sa.String(8), nullable=True),
        sa.Column('cost_fulfillment', sa.Numeric(14, 2), nullable=True),
        sa.Column('cost_label', sa.Numeric(14, 2), nullable=True),
        sa.Column('cost_prep', sa.Numeric(14, 2), nullable=True),
        sa.Column('cost_third_party', sa.Numeric(14, 2), nullable=True),
        sa.Column('original_cost_total', sa.Numeric(14, 2), nullable=True),
        sa.Column('prep_fee_required', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('data_quality_status', sa.String(16), nullable=False),
        sa.Column('data_quality_reasons', JSON_PAYLOAD, nullable=False),
        sa.Column(
            'rate_shopping_quote_id', sa.String(36),
            sa.ForeignKey('rate_shopping_quotes.id', ondelete='SET NULL'), nullable=True,
        ),
        _created('updated_at'),
        sa.UniqueConstraint('user_id', 'order_external_id', 'sku', name='uq_audit_order_lines_user_order_sku'),
    )
    op.create_index('idx_audit_order_lines_account', 'audit_order_lines', ['channel_account_id'])
    op.create_index('idx_audit_order_lines_status', 'audit_order_lines', ['data_quality_status'])

    op.create_table(
        'oauth_states',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('state', sa.String(128), nullable=False, unique=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('shop_domain', sa.String(255), nullable=True),
        sa.Column('region', sa.String(8), nullable=True),
        sa.Column('redirect_to', sa.Text(), nullable=True),
        _ts('expires_at', nullable=False),
        _created(),
    )
    op.create_index('idx_oauth_states_expires_at', 'oauth_states', ['expires_at'])

    op.create_table(
        'deletion_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('external_user_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('counts', JSON_PAYLOAD, nullable=True),
        sa.Column('payload', JSON_PAYLOAD, nullable=True),
        _created(),
        _ts('completed_at'),
    )
    op.create_index('idx_deletion_requests_provider_user', 'deletion_requests', ['provider', 'external_user_id'])

    op.create_table(
        'background_workers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('worker_name', sa.String(128), nullable=False, unique=True),
        sa.Column('interval_seconds', sa.Integer(), nullable=True),
        _ts('last_started_at'),
        _ts('last_finished_at'),
        sa.Column('last_status', sa.String(32), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('runs_ok_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('runs_error_in_row', sa.Integer(), nullable=False, server_default='0'),
        _created(),
        _created('updated_at'),
    )
    op.create_index('ix_background_workers_worker_name', 'background_workers', ['worker_name'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        _account_fk(),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('triggered_by', sa.String(16), nullable=False, server_default='scheduler'),
        sa.Column('status', sa.String(16), nullable=False, server_default='running'),
        _created('started_at'),
        _ts('finished_at'),
        sa.Column('summary', JSON_PAYLOAD, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
    )
    op.create_index('ix_sync_jobs_channel_account_id', 'sync_jobs', ['channel_account_id'])

    op.create_table(
        'token_refresh_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        _account_fk(),
        _created('started_at'),
        _ts('finished_at'),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _ts('old_expires_at'),
        _ts('new_expires_at'),
    )
    op.create_index('ix_token_refresh_logs_channel_account_id', 'token_refresh_logs', ['channel_account_id'])


def downgrade() -> None:
    for table in (
        'token_refresh_logs',
        'sync_jobs',
        'background_workers',
        'deletion_requests',
        'oauth_states',
        'audit_order_lines',
        'rate_shopping_quotes',
        'inbound_shipments',
        'shipping_labels',
        'inventory_levels',
        'order_lines',
        'orders',
        'customer_externals',
        'customers',
        'item_externals',
        'items',
        'channel_accounts',
    ):
        op.drop_table(table)
