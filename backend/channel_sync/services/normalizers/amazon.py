"""SP-API Orders v0 payloads.

An Amazon order arrives in two calls (``getOrders`` + ``getOrderItems``), so
the raw shape handed to :func:`normalize_order` is the pair.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.services.errors import InvalidExternalPayload
from channel_sync.services.normalizers.base import (
    NormalizedAddress,
    NormalizedCustomer,
    NormalizedLine,
    NormalizedOrder,
    NormalizedRecord,
    OrderStatus,
    clean_str,
    parse_amount,
    parse_int,
)
from channel_sync.utils.dates import parse_datetime

_STATUS_MAP = {
    "pending": OrderStatus.PENDING,
    "pendingavailability": OrderStatus.PENDING,
    "unshipped": OrderStatus.OPEN,
    "invoiceunconfirmed": OrderStatus.OPEN,
    "unfulfillable": OrderStatus.OPEN,
    "partiallyshipped": OrderStatus.PARTIALLY_FULFILLED,
    "shipped": OrderStatus.FULFILLED,
    "canceled": OrderStatus.CANCELLED,
}

_POUND_UNITS = {"lb", "lbs", "pound", "pounds"}


def _money(obj: Any) -> Any:
    return obj.get("Amount") if isinstance(obj, dict) else None


def _weight_lbs(item: Dict[str, Any]) -> Optional[float]:
    weight = item.get("PackageWeight") or item.get("ItemWeight")
    if not isinstance(weight, dict):
        return None
    if str(weight.get("Unit") or "").lower() not in _POUND_UNITS:
        return None
    value = parse_amount(weight.get("Value"))
    return float(value) if value is not None else None


def _line(item: Dict[str, Any]) -> NormalizedLine:
    return NormalizedLine(
        external_line_id=clean_str(item.get("OrderItemId")),
        sku=clean_str(item.get("SellerSKU")),
        title=clean_str(item.get("Title")),
        quantity=parse_int(item.get("QuantityOrdered")),
        price=parse_amount(_money(item.get("ItemPrice"))),
        tax=parse_amount(_money(item.get("ItemTax"))),
        discounts=parse_amount(_money(item.get("PromotionDiscount"))),
        fulfillment_status=clean_str(item.get("ShipmentStatus")),
        weight_lbs=_weight_lbs(item),
        external_item_id=clean_str(item.get("ASIN")),
    )


def _customer(order: Dict[str, Any]) -> Optional[NormalizedCustomer]:
    buyer = order.get("BuyerInfo") or {}
    shipping = order.get("ShippingAddress") or {}
    email = clean_str(buyer.get("BuyerEmail"))
    phone = clean_str(shipping.get("Phone"))
    name = clean_str(buyer.get("BuyerName") or shipping.get("Name"))
    if not (email or phone or name or buyer):
        return None
    first_name, last_name = None, None
    if name:
        parts = name.split(" ", 1)
        first_name = parts[0]
        last_name = parts[1] if len(parts) > 1 else None
    return NormalizedCustomer(
        external_id=clean_str(buyer.get("BuyerId")) or clean_str(order.get("AmazonOrderId")),
        email=email.lower() if email else None,
        phone=phone,
        first_name=first_name,
        last_name=last_name,
        raw=buyer or None,
    )


def normalize_order(order: Dict[str, Any], items: List[Dict[str, Any]]) -> NormalizedRecord:
    external_order_id = clean_str(order.get("AmazonOrderId"))
    if not external_order_id:
        raise InvalidExternalPayload("Amazon order payload has no AmazonOrderId")

    channel_status = clean_str(order.get("OrderStatus")) or "Pending"
    address = order.get("ShippingAddress") or {}
    order_total = order.get("OrderTotal") or {}

    normalized = NormalizedOrder(
        channel=Channel.AMAZON,
        external_order_id=external_order_id,
        status=_STATUS_MAP.get(channel_status.lower(), OrderStatus.OPEN),
        channel_status=channel_status,
        currency=clean_str(order_total.get("CurrencyCode")),
        subtotal=None,
        tax=parse_amount(_money(order.get("Tax"))),
        shipping=parse_amount(_money(order.get("ShippingPrice"))),
        discounts=parse_amount(_money(order.get("PromotionDiscount"))),
        total=parse_amount(order_total.get("Amount")),
        placed_at=parse_datetime(order.get("PurchaseDate")),
        closed_at=parse_datetime(order.get("LatestDeliveryDate")),
        ship_to=NormalizedAddress(
            city=clean_str(address.get("City")),
            state=clean_str(address.get("StateOrRegion")),
            postal_code=clean_str(address.get("PostalCode")),
            country=clean_str(address.get("CountryCode")),
        ),
        marketplace_id=clean_str(order.get("MarketplaceId")),
        fulfillment_channel=clean_str(order.get("FulfillmentChannel")),
        raw={"order": order, "items": items},
    )
    lines = [_line(item) for item in items if isinstance(item, dict)]
    return NormalizedRecord(order=normalized, lines=lines, customer=_customer(order))
