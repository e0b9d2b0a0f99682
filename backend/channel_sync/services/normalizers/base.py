"""Canonical shapes produced by the per-marketplace normalizers.

Nothing marketplace-specific crosses this boundary: the reconciliation
pipeline only ever sees the dataclasses below. Money is ``Decimal`` or
``None``; ``None`` means "the marketplace did not tell us", which is not the
same thing as zero.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Union


class OrderStatus:
    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


def parse_amount(value: Any) -> Optional[Decimal]:
    """Permissive numeric parse: ``Decimal`` for anything number-like, else ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def parse_int(value: Any, default: int = 0) -> int:
    parsed = parse_amount(value)
    if parsed is None:
        return default
    return int(parsed)


def sum_amounts(values: Iterable[Any]) -> Optional[Decimal]:
    """Sum of the parseable values; ``None`` when none of them parse."""
    total: Optional[Decimal] = None
    for value in values:
        parsed = parse_amount(value)
        if parsed is not None:
            total = parsed if total is None else total + parsed
    return total


def clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class NormalizedAddress:
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        return bool(self.city and self.state and self.postal_code)


@dataclass
class NormalizedCustomer:
    external_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class NormalizedLine:
    external_line_id: Optional[str]
    sku: Optional[str] = None
    title: Optional[str] = None
    quantity: int = 0
    price: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    discounts: Optional[Decimal] = None
    fulfillment_status: Optional[str] = None
    weight_lbs: Optional[float] = None
    external_item_id: Optional[str] = None
    external_variant_id: Optional[str] = None


@dataclass
class NormalizedOrder:
    channel: str
    external_order_id: str
    status: str = OrderStatus.OPEN
    channel_status: Optional[str] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    discounts: Optional[Decimal] = None
    total: Optional[Decimal] = None
    placed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    ship_to: NormalizedAddress = field(default_factory=NormalizedAddress)
    marketplace_id: Optional[str] = None
    fulfillment_channel: Optional[str] = None
    # The marketplace itself shows the order has shipping purchased
    # (Shopify shipping lines); local ShippingLabel rows count as well.
    has_channel_shipping: bool = False
    raw: Optional[Dict[str, Any]] = None


@dataclass
class NormalizedVariant:
    external_variant_id: str
    sku: Optional[str] = None
    title: Optional[str] = None
    inventory_item_id: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class NormalizedProduct:
    channel: str
    external_item_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    variants: List[NormalizedVariant] = field(default_factory=list)


@dataclass
class InventoryDelta:
    """Available quantity at one location, identified the way the channel does it."""

    available: int
    location_id: str = ""
    sku: Optional[str] = None
    inventory_item_id: Optional[str] = None


@dataclass
class NormalizedRecord:
    order: Optional[NormalizedOrder] = None
    lines: List[NormalizedLine] = field(default_factory=list)
    customer: Optional[NormalizedCustomer] = None
    inventory: Optional[InventoryDelta] = None


@dataclass
class ShopifyOrder:
    payload: Dict[str, Any]


@dataclass
class AmazonOrder:
    order: Dict[str, Any]
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class EbayOrder:
    payload: Dict[str, Any]


RawOrder = Union[ShopifyOrder, AmazonOrder, EbayOrder]
