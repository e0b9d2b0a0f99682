from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
import uuid

from . import Base
from channel_sync.utils.dates import utcnow


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local dev).
JsonPayload = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class Channel:
    SHOPIFY = "shopify"
    EBAY = "ebay"
    AMAZON = "amazon"

    ALL = (SHOPIFY, EBAY, AMAZON)


class ChannelAccount(Base):
    """One seller's connection to one marketplace.

    ``external_id`` is the marketplace-scoped identity of the seller: the shop
    domain on Shopify, the seller username on eBay and the selling partner id
    on Amazon. Tokens are stored encrypted; use the ``access_token`` /
    ``refresh_token`` properties rather than the underscored columns.
    """

    __tablename__ = "channel_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    channel = Column(String(32), nullable=False)
    external_id = Column(String(255), nullable=False)
    display_name = Column(Text, nullable=True)

    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_error = Column(Text, nullable=True)

    region = Column(String(8), nullable=True)
    marketplace_ids = Column(JsonPayload, nullable=True)

    orders_in = Column(Boolean, nullable=False, default=True)
    inventory_out = Column(Boolean, nullable=False, default=True)
    fulfillment_out = Column(Boolean, nullable=False, default=True)
    labels = Column(Boolean, nullable=False, default=False)

    status = Column(String(16), nullable=False, default="active")  # active, inactive
    status_reason = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "channel", "external_id", name="uq_channel_accounts_natural_key"),
        Index("idx_channel_accounts_channel_status", "channel", "status"),
        Index("idx_channel_accounts_external_id", "external_id"),
    )

    @property
    def access_token(self) -> str | None:
        from channel_sync.utils import crypto

        return crypto.decrypt(self._access_token)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        from channel_sync.utils import crypto

        self._access_token = crypto.encrypt(value) if value else None

    @property
    def refresh_token(self) -> str | None:
        from channel_sync.utils import crypto

        return crypto.decrypt(self._refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        from channel_sync.utils import crypto

        self._refresh_token = crypto.encrypt(value) if value else None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class Item(Base):
    __tablename__ = "items"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    sku = Column(String(255), nullable=False)
    title = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "sku", name="uq_items_user_sku"),
    )


class ItemExternal(Base):
    """Back-reference from a marketplace listing/variant to a canonical Item.

    ``external_variant_id`` is stored as an empty string when the marketplace
    has no variant concept so that the unique key is enforceable.
    """

    __tablename__ = "item_externals"

    id = Column(String(36), primary_key=True, default=_uuid)
    item_id = Column(String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(32), nullable=False)
    external_item_id = Column(String(255), nullable=False)
    external_variant_id = Column(String(255), nullable=False, default="")
    # Shopify reports inventory against inventory_item_id, not the variant id.
    inventory_item_id = Column(String(255), nullable=True)
    sku = Column(String(255), nullable=True)
    status = Column(String(32), nullable=True)
    raw = Column(JsonPayload, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "channel_account_id", "external_item_id", "external_variant_id",
            name="uq_item_externals_account_item_variant",
        ),
        Index("idx_item_externals_inventory_item", "channel_account_id", "inventory_item_id"),
        Index("idx_item_externals_item_id", "item_id"),
    )


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    email = Column(String(320), nullable=True)
    phone = Column(String(64), nullable=True)
    first_name = Column(Text, nullable=True)
    last_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_customers_user_email", "user_id", "email"),
        Index("idx_customers_user_phone", "user_id", "phone"),
    )


class CustomerExternal(Base):
    __tablename__ = "customer_externals"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(32), nullable=False)
    external_id = Column(String(255), nullable=False)
    raw = Column(JsonPayload, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("channel_account_id", "external_id", name="uq_customer_externals_account_external"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(32), nullable=False)
    marketplace_id = Column(String(64), nullable=True)
    fulfillment_channel = Column(String(32), nullable=True)
    source = Column(String(16), nullable=True)  # poll, webhook
    external_order_id = Column(String(255), nullable=False)

    # Canonical lifecycle (pending, open, partially_fulfilled, fulfilled,
    # cancelled) next to the marketplace's own status string.
    status = Column(String(32), nullable=True)
    channel_status = Column(String(64), nullable=True)
    currency = Column(String(8), nullable=True)
    subtotal = Column(Numeric(14, 2), nullable=True)
    tax = Column(Numeric(14, 2), nullable=True)
    shipping = Column(Numeric(14, 2), nullable=True)
    discounts = Column(Numeric(14, 2), nullable=True)
    total = Column(Numeric(14, 2), nullable=True)

    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    ship_city = Column(Text, nullable=True)
    ship_state = Column(Text, nullable=True)
    ship_postal_code = Column(String(32), nullable=True)
    ship_country = Column(String(8), nullable=True)

    placed_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    raw = Column(JsonPayload, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    lines = relationship(
        "OrderLine",
        order_by="OrderLine.position",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("channel_account_id", "external_order_id", name="uq_orders_account_external"),
        Index("idx_orders_user_id", "user_id"),
        Index("idx_orders_placed_at", "placed_at"),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(String(36), ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    external_line_id = Column(String(255), nullable=True)
    position = Column(Integer, nullable=False, default=0)

    sku = Column(String(255), nullable=True)
    title = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(14, 2), nullable=True)
    tax = Column(Numeric(14, 2), nullable=True)
    discounts = Column(Numeric(14, 2), nullable=True)
    fulfillment_status = Column(String(64), nullable=True)
    weight_lbs = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "external_line_id", name="uq_order_lines_order_external"),
    )


class InventoryLevel(Base):
    __tablename__ = "inventory_levels"

    id = Column(String(36), primary_key=True, default=_uuid)
    item_id = Column(String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    # Empty string when the channel reports a single, location-less quantity.
    location_id = Column(String(255), nullable=False, default="")
    available = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "channel_account_id", "location_id", name="uq_inventory_levels_item_account_location"),
    )


class ShippingLabel(Base):
    __tablename__ = "shipping_labels"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=True)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    shipment_id = Column(String(255), nullable=False)
    carrier = Column(String(64), nullable=True)
    service = Column(String(128), nullable=True)
    tracking_number = Column(String(128), nullable=True)
    label_url = Column(Text, nullable=True)
    label_format = Column(String(16), nullable=True)
    cost = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    raw = Column(JsonPayload, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("channel_account_id", "shipment_id", name="uq_shipping_labels_account_shipment"),
        Index("idx_shipping_labels_order_id", "order_id"),
    )


class InboundShipment(Base):
    """An FBA inbound shipment: stock the seller sends into Amazon's warehouses.

    Rows appear when a plan is created (status PLANNED) and are updated as the
    shipment is created, edited and its box labels fetched.
    """

    __tablename__ = "inbound_shipments"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(32), nullable=False, default=Channel.AMAZON)
    marketplace_id = Column(String(64), nullable=True)
    shipment_id = Column(String(64), nullable=False)
    destination_fulfillment_center_id = Column(String(32), nullable=True)
    label_prep_preference = Column(String(32), nullable=True)
    shipment_name = Column(String(255), nullable=True)
    status = Column(String(32), nullable=True)
    items = Column(JsonPayload, nullable=False, default=list)
    raw_plan = Column(JsonPayload, nullable=True)
    raw_shipment = Column(JsonPayload, nullable=True)
    label_url = Column(Text, nullable=True)
    label_page_type = Column(String(64), nullable=True)
    label_type = Column(String(32), nullable=True)
    labels_fetched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("channel_account_id", "shipment_id", name="uq_inbound_shipments_account_shipment"),
    )


class AuditOrderLine(Base):
    """Denormalized cost / data-quality projection of an order line.

    Rows are rebuilt from the order payload on every upsert; nothing patches
    individual columns in place.
    """

    __tablename__ = "audit_order_lines"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    channel_account_id = Column(String(36), ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(32), nullable=False)
    marketplace_id = Column(String(64), nullable=True)
    fulfillment_channel = Column(String(32), nullable=True)
    source = Column(String(16), nullable=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=True)
    order_external_id = Column(String(255), nullable=False)
    order_date = Column(DateTime(timezone=True), nullable=True)

    sku = Column(String(255), nullable=False, default="")
    item_name = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    weight_lbs = Column(Float, nullable=True)
    item_count = Column(Integer, nullable=False, default=1)

    ship_city = Column(Text, nullable=True)
    ship_state = Column(Text, nullable=True)
    ship_postal_code = Column(String(32), nullable=True)
    ship_country = Column(String(8), nullable=True)

    cost_fulfillment = Column(Numeric(14, 2), nullable=True)
    cost_label = Column(Numeric(14, 2), nullable=True)
    cost_prep = Column(Numeric(14, 2), nullable=True)
    cost_third_party = Column(Numeric(14, 2), nullable=True)
    original_cost_total = Column(Numeric(14, 2), nullable=True)
    prep_fee_required = Column(Boolean, nullable=False, default=True)

    data_quality_status = Column(String(16), nullable=False)  # valid, excluded
    data_quality_reasons = Column(JsonPayload, nullable=False, default=list)
    rate_shopping_quote_id = Column(String(36), ForeignKey("rate_shopping_quotes.id", ondelete="SET NULL"), nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "order_external_id", "sku", name="uq_audit_order_lines_user_order_sku"),
        Index("idx_audit_order_lines_account", "channel_account_id"),
        Index("idx_audit_order_lines_status", "data_quality_status"),
    )


class RateShoppingQuote(Base):
    __tablename__ = "rate_shopping_quotes"

    id = Column(String(36), primary_key=True, default=_uuid)
    city_lower = Column(String(255), nullable=False)
    state_lower = Column(String(64), nullable=False)
    weight_band = Column(Float, nullable=False)
    item_count = Column(Integer, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    provider = Column(String(64), nullable=True)
    raw = Column(JsonPayload, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("city_lower", "state_lower", "weight_band", "item_count", name="uq_rate_shopping_quotes_bucket"),
        Index("idx_rate_shopping_quotes_lookup", "city_lower", "state_lower", "item_count", "weight_band"),
    )


class OAuthState(Base):
    """Single-use nonce for an in-flight OAuth authorization."""

    __tablename__ = "oauth_states"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(32), nullable=False)
    state = Column(String(128), nullable=False, unique=True)
    user_id = Column(String(36), nullable=False)
    shop_domain = Column(String(255), nullable=True)
    region = Column(String(8), nullable=True)
    redirect_to = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_oauth_states_expires_at", "expires_at"),
    )


class DeletionRequest(Base):
    """Audit row for one run of the account erasure workflow."""

    __tablename__ = "deletion_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(32), nullable=False)
    external_user_id = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending, completed, no_match
    detail = Column(Text, nullable=True)
    counts = Column(JsonPayload, nullable=True)
    payload = Column(JsonPayload, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_deletion_requests_provider_user", "provider", "external_user_id"),
    )
