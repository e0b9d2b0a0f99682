"""Folds normalized marketplace records into the canonical store.

Every write is an upsert on a natural key, so a record delivered twice (poll
and webhook, or two overlapping polls) converges on the same rows:

* Order: (channel account, external order id); mutable fields fully replaced
* OrderLine: (order, external line id)
* Item: (seller, SKU); ItemExternal: (account, external item, variant)
* CustomerExternal: (account, external customer id)
* InventoryLevel: (item, account, location)

Customer matching is best-effort: the first customer of the seller with the
same email or the same phone is reused as is, otherwise a new one is created
from the incoming contact details.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import (
    ChannelAccount,
    Customer,
    CustomerExternal,
    InventoryLevel,
    Item,
    ItemExternal,
    Order,
    OrderLine,
)
from channel_sync.services import audit_projection
from channel_sync.services.errors import ChannelSyncError, InvalidExternalPayload
from channel_sync.services.normalizers import normalize
from channel_sync.services.normalizers.base import (
    InventoryDelta,
    NormalizedCustomer,
    NormalizedLine,
    NormalizedProduct,
    NormalizedRecord,
    RawOrder,
)
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger


@dataclass
class ApplySummary:
    orders: int = 0
    lines: int = 0
    items: int = 0
    inventory: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "orders": self.orders,
            "lines": self.lines,
            "items": self.items,
            "inventory": self.inventory,
            "skipped": self.skipped,
            "errors": self.errors[:20],
        }


class ReconciliationPipeline:
    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def resolve_customer(
        self, db: Session, account: ChannelAccount, customer: Optional[NormalizedCustomer]
    ) -> Optional[Customer]:
        if customer is None:
            return None

        criteria = []
        if customer.email:
            criteria.append(Customer.email == customer.email)
        if customer.phone:
            criteria.append(Customer.phone == customer.phone)

        canonical: Optional[Customer] = None
        if criteria:
            canonical = (
                db.query(Customer)
                .filter(Customer.user_id == account.user_id, or_(*criteria))
                .order_by(Customer.created_at.asc())
                .first()
            )

        mapping: Optional[CustomerExternal] = None
        if customer.external_id:
            mapping = (
                db.query(CustomerExternal)
                .filter(
                    CustomerExternal.channel_account_id == account.id,
                    CustomerExternal.external_id == customer.external_id,
                )
                .first()
            )
            # Nothing to match on: keep the customer this id already points at.
            if canonical is None and not criteria and mapping is not None:
                canonical = db.query(Customer).filter(Customer.id == mapping.customer_id).first()

        if canonical is None:
            if not (customer.email or customer.phone or customer.external_id):
                return None
            canonical = Customer(
                user_id=account.user_id,
                email=customer.email,
                phone=customer.phone,
                first_name=customer.first_name,
                last_name=customer.last_name,
            )
            db.add(canonical)
            db.flush()

        if customer.external_id:
            if mapping is None:
                mapping = CustomerExternal(
                    channel_account_id=account.id,
                    channel=account.channel,
                    external_id=customer.external_id,
                )
                db.add(mapping)
            mapping.customer_id = canonical.id
            mapping.raw = customer.raw
            mapping.synced_at = utcnow()
        return canonical

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def ensure_item(self, db: Session, user_id: str, sku: Optional[str], title: Optional[str] = None) -> Optional[Item]:
        """Look up (or create) the seller's item for ``sku``; no SKU, no item."""
        if not sku:
            return None
        item = db.query(Item).filter(Item.user_id == user_id, Item.sku == sku).first()
        if item is None:
            item = Item(user_id=user_id, sku=sku, title=title)
            db.add(item)
            db.flush()
        elif title and not item.title:
            item.title = title
        return item

    def _link_item_external(
        self,
        db: Session,
        account: ChannelAccount,
        item: Item,
        external_item_id: str,
        external_variant_id: Optional[str],
        *,
        sku: Optional[str] = None,
        inventory_item_id: Optional[str] = None,
        status: Optional[str] = None,
        raw: Optional[dict] = None,
    ) -> ItemExternal:
        variant = external_variant_id or ""
        mapping = (
            db.query(ItemExternal)
            .filter(
                ItemExternal.channel_account_id == account.id,
                ItemExternal.external_item_id == external_item_id,
                ItemExternal.external_variant_id == variant,
            )
            .first()
        )
        if mapping is None:
            mapping = ItemExternal(
                channel_account_id=account.id,
                channel=account.channel,
                external_item_id=external_item_id,
                external_variant_id=variant,
            )
            db.add(mapping)
        mapping.item_id = item.id
        mapping.sku = sku or mapping.sku
        mapping.inventory_item_id = inventory_item_id or mapping.inventory_item_id
        mapping.status = status or mapping.status
        if raw is not None:
            mapping.raw = raw
        mapping.synced_at = utcnow()
        return mapping

    def _resolve_line_item(self, db: Session, account: ChannelAccount, line: NormalizedLine) -> Optional[Item]:
        item = self.ensure_item(db, account.user_id, line.sku, line.title)
        if item is not None and line.external_item_id:
            self._link_item_external(
                db, account, item, line.external_item_id, line.external_variant_id, sku=line.sku,
            )
        return item

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def apply_order(
        self,
        db: Session,
        account: ChannelAccount,
        record: NormalizedRecord,
        *,
        source: str = "poll",
        commit: bool = True,
    ) -> Order:
        normalized = record.order
        if normalized is None or not normalized.external_order_id:
            raise InvalidExternalPayload("Record has no order to apply")

        customer = self.resolve_customer(db, account, record.customer)

        order = (
            db.query(Order)
            .filter(
                Order.channel_account_id == account.id,
                Order.external_order_id == normalized.external_order_id,
            )
            .first()
        )
        created = order is None
        if created:
            order = Order(
                user_id=account.user_id,
                channel_account_id=account.id,
                channel=account.channel,
                external_order_id=normalized.external_order_id,
            )
            db.add(order)

        # Full replace: absent upstream means absent here.
        order.status = normalized.status
        order.channel_status = normalized.channel_status
        order.currency = normalized.currency
        order.subtotal = normalized.subtotal
        order.tax = normalized.tax
        order.shipping = normalized.shipping
        order.discounts = normalized.discounts
        order.total = normalized.total
        order.customer_id = customer.id if customer is not None else None
        order.ship_city = normalized.ship_to.city
        order.ship_state = normalized.ship_to.state
        order.ship_postal_code = normalized.ship_to.postal_code
        order.ship_country = normalized.ship_to.country
        order.placed_at = normalized.placed_at
        order.closed_at = normalized.closed_at
        order.marketplace_id = normalized.marketplace_id
        order.fulfillment_channel = normalized.fulfillment_channel
        order.source = source
        order.raw = normalized.raw
        order.synced_at = utcnow()
        db.flush()

        lines = self._apply_lines(db, account, order, record.lines)
        audit_projection.rebuild_for_order(
            db, account, order, lines, channel_shipping=normalized.has_channel_shipping,
        )

        if commit:
            db.commit()
        logger.info(
            "[reconcile] %s order account=%s external_id=%s lines=%d status=%s",
            "created" if created else "updated",
            account.id,
            order.external_order_id,
            len(lines),
            order.status,
        )
        return order

    def ingest_order(
        self,
        db: Session,
        account: ChannelAccount,
        raw: RawOrder,
        summary: ApplySummary,
        *,
        source: str = "poll",
    ) -> Optional[Order]:
        """Normalize and apply one raw order; failures are counted, not raised."""
        try:
            record = normalize(raw)
        except InvalidExternalPayload as exc:
            summary.skipped += 1
            summary.errors.append(exc.message)
            logger.warning("[reconcile] skipped %s payload account=%s: %s", account.channel, account.id, exc.message)
            return None

        try:
            order = self.apply_order(db, account, record, source=source)
        except SQLAlchemyError as exc:
            db.rollback()
            summary.skipped += 1
            summary.errors.append(f"{record.order.external_order_id}: {exc.__class__.__name__}")
            logger.error(
                "[reconcile] order upsert failed account=%s external_id=%s",
                account.id, record.order.external_order_id, exc_info=True,
            )
            return None

        summary.orders += 1
        summary.lines += len(record.lines)
        return order

    def _apply_lines(
        self, db: Session, account: ChannelAccount, order: Order, lines: List[NormalizedLine]
    ) -> List[OrderLine]:
        existing = {
            line.external_line_id: line
            for line in db.query(OrderLine).filter(OrderLine.order_id == order.id)
            if line.external_line_id is not None
        }

        applied: List[OrderLine] = []
        for position, line in enumerate(lines):
            item: Optional[Item] = None
            try:
                with db.begin_nested():
                    item = self._resolve_line_item(db, account, line)
            except (SQLAlchemyError, ChannelSyncError) as exc:
                logger.warning(
                    "[reconcile] item lookup failed order=%s sku=%s: %s",
                    order.external_order_id, line.sku, exc,
                )
                item = None

            row = existing.get(line.external_line_id) if line.external_line_id else None
            if row is None:
                row = OrderLine(order_id=order.id, external_line_id=line.external_line_id)
                db.add(row)
                if line.external_line_id:
                    existing[line.external_line_id] = row

            row.item_id = item.id if item is not None else None
            row.position = position
            row.sku = line.sku
            row.title = line.title
            row.quantity = line.quantity
            row.price = line.price
            row.tax = line.tax
            row.discounts = line.discounts
            row.fulfillment_status = line.fulfillment_status
            row.weight_lbs = line.weight_lbs
            applied.append(row)

        db.flush()
        return applied

    # ------------------------------------------------------------------
    # Catalog / inventory
    # ------------------------------------------------------------------

    def apply_product(
        self, db: Session, account: ChannelAccount, product: NormalizedProduct, *, commit: bool = True
    ) -> int:
        """Upsert items for each SKU-bearing variant; returns how many were linked."""
        linked = 0
        for variant in product.variants:
            if not variant.sku:
                continue
            item = self.ensure_item(db, account.user_id, variant.sku, variant.title or product.title)
            if variant.title and item.title != variant.title:
                item.title = variant.title
            self._link_item_external(
                db,
                account,
                item,
                product.external_item_id,
                variant.external_variant_id,
                sku=variant.sku,
                inventory_item_id=variant.inventory_item_id,
                status=product.status,
                raw=variant.raw,
            )
            linked += 1
        if commit:
            db.commit()
        return linked

    def _item_for_inventory(self, db: Session, account: ChannelAccount, delta: InventoryDelta) -> Optional[Item]:
        if delta.inventory_item_id:
            mapping = (
                db.query(ItemExternal)
                .filter(
                    ItemExternal.channel_account_id == account.id,
                    ItemExternal.inventory_item_id == delta.inventory_item_id,
                )
                .first()
            )
            if mapping is not None:
                return db.query(Item).filter(Item.id == mapping.item_id).first()
        if delta.sku:
            return db.query(Item).filter(Item.user_id == account.user_id, Item.sku == delta.sku).first()
        return None

    def apply_inventory(
        self, db: Session, account: ChannelAccount, delta: InventoryDelta, *, commit: bool = True
    ) -> Optional[InventoryLevel]:
        item = self._item_for_inventory(db, account, delta)
        if item is None:
            logger.info(
                "[reconcile] inventory for unknown item account=%s inventory_item_id=%s sku=%s",
                account.id, delta.inventory_item_id, delta.sku,
            )
            return None

        location_id = delta.location_id or ""
        level = (
            db.query(InventoryLevel)
            .filter(
                InventoryLevel.item_id == item.id,
                InventoryLevel.channel_account_id == account.id,
                InventoryLevel.location_id == location_id,
            )
            .first()
        )
        if level is None:
            level = InventoryLevel(item_id=item.id, channel_account_id=account.id, location_id=location_id)
            db.add(level)
        level.available = delta.available
        level.updated_at = utcnow()
        if commit:
            db.commit()
        return level


reconciliation_pipeline = ReconciliationPipeline()
