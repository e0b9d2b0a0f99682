"""AuditOrderLine projection: per-line cost and data-quality verdict.

The projection is rebuilt for a whole order on every upsert. Rows of this order
for SKUs no longer on it are deleted; rows owned by another order that shares
the external order id are left alone.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import AuditOrderLine, ChannelAccount, Order, OrderLine, ShippingLabel
from channel_sync.services.normalizers.base import NormalizedAddress
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger

VALID = "valid"
EXCLUDED = "excluded"

MISSING_ADDRESS = "missing_address"
MISSING_LABEL = "missing_label"

DEFAULT_PREP_FEE = Decimal("0")


def data_quality(address: NormalizedAddress, label_present: bool) -> tuple[str, List[str]]:
    reasons: List[str] = []
    if not address.is_usable:
        reasons.append(MISSING_ADDRESS)
    if not label_present:
        reasons.append(MISSING_LABEL)
    return (EXCLUDED if reasons else VALID), reasons


def sum_costs(costs: Iterable[Optional[Decimal]]) -> Optional[Decimal]:
    known = [c for c in costs if c is not None and c.is_finite()]
    if not known:
        return None
    return sum(known, Decimal("0"))


def has_shipping_label(db: Session, order: Order) -> bool:
    return db.query(ShippingLabel.id).filter(ShippingLabel.order_id == order.id).first() is not None


def _order_address(order: Order) -> NormalizedAddress:
    return NormalizedAddress(
        city=order.ship_city,
        state=order.ship_state,
        postal_code=order.ship_postal_code,
        country=order.ship_country,
    )


def _group_by_sku(lines: Sequence[OrderLine]) -> Dict[str, List[OrderLine]]:
    grouped: Dict[str, List[OrderLine]] = {}
    for line in lines:
        grouped.setdefault(line.sku or "", []).append(line)
    return grouped


def rebuild_for_order(
    db: Session,
    account: ChannelAccount,
    order: Order,
    lines: Optional[Sequence[OrderLine]] = None,
    *,
    channel_shipping: bool = False,
) -> List[AuditOrderLine]:
    """Recompute every audit row for ``order`` from its lines.

    ``channel_shipping`` marks orders where the marketplace itself reports
    purchased shipping; a local ShippingLabel row counts as well.
    """
    if lines is None:
        lines = order.lines
    address = _order_address(order)
    label_present = channel_shipping or has_shipping_label(db, order)
    status, reasons = data_quality(address, label_present)

    fulfillment_cost = order.shipping
    prep_cost = DEFAULT_PREP_FEE
    original_total = sum_costs([fulfillment_cost, prep_cost])

    existing = {
        row.sku: row
        for row in db.query(AuditOrderLine).filter(
            AuditOrderLine.user_id == account.user_id,
            AuditOrderLine.order_external_id == order.external_order_id,
        )
    }

    rows: List[AuditOrderLine] = []
    for sku, sku_lines in _group_by_sku(lines).items():
        quantity = sum(line.quantity or 0 for line in sku_lines)
        weights = [line.weight_lbs for line in sku_lines if line.weight_lbs is not None]

        row = existing.pop(sku, None)
        if row is None:
            row = AuditOrderLine(
                user_id=account.user_id,
                order_external_id=order.external_order_id,
                sku=sku,
            )
            db.add(row)

        row.channel_account_id = account.id
        row.channel = account.channel
        row.marketplace_id = order.marketplace_id
        row.fulfillment_channel = order.fulfillment_channel
        row.source = order.source
        row.order_id = order.id
        row.order_date = order.placed_at
        row.item_name = sku_lines[0].title
        row.quantity = quantity
        row.weight_lbs = weights[0] if weights else None
        row.item_count = quantity or 1
        row.ship_city = address.city
        row.ship_state = address.state
        row.ship_postal_code = address.postal_code
        row.ship_country = address.country
        row.cost_fulfillment = fulfillment_cost
        row.cost_label = None
        row.cost_prep = prep_cost
        row.cost_third_party = None
        row.original_cost_total = original_total
        row.prep_fee_required = True
        row.data_quality_status = status
        row.data_quality_reasons = list(reasons)
        row.rate_shopping_quote_id = None
        row.updated_at = utcnow()
        rows.append(row)

    for stale in existing.values():
        if stale.order_id == order.id:
            db.delete(stale)

    if status == EXCLUDED:
        logger.debug(
            "[audit] order=%s excluded reasons=%s", order.external_order_id, ",".join(reasons)
        )
    return rows
