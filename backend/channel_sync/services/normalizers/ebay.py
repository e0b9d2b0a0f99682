"""eBay Sell Fulfillment orders and Sell Inventory items."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.services.errors import InvalidExternalPayload
from channel_sync.services.normalizers.base import (
    InventoryDelta,
    NormalizedAddress,
    NormalizedCustomer,
    NormalizedLine,
    NormalizedOrder,
    NormalizedProduct,
    NormalizedRecord,
    NormalizedVariant,
    OrderStatus,
    clean_str,
    parse_amount,
    parse_int,
)
from channel_sync.utils.dates import parse_datetime

_FULFILLMENT_STATUS_MAP = {
    "NOT_STARTED": OrderStatus.OPEN,
    "IN_PROGRESS": OrderStatus.PARTIALLY_FULFILLED,
    "FULFILLED": OrderStatus.FULFILLED,
}


def _value(obj: Any) -> Any:
    return obj.get("value") if isinstance(obj, dict) else None


def _currency(obj: Any) -> Optional[str]:
    return clean_str(obj.get("currency")) if isinstance(obj, dict) else None


def order_status(payload: Dict[str, Any]) -> str:
    cancel_state = ((payload.get("cancelStatus") or {}).get("cancelState") or "").upper()
    if cancel_state == "CANCELED" or payload.get("cancelledDate"):
        return OrderStatus.CANCELLED
    if (payload.get("orderPaymentStatus") or "").upper() == "PENDING":
        return OrderStatus.PENDING
    return _FULFILLMENT_STATUS_MAP.get((payload.get("orderFulfillmentStatus") or "").upper(), OrderStatus.OPEN)


def _ship_to(payload: Dict[str, Any]) -> NormalizedAddress:
    instructions = payload.get("fulfillmentStartInstructions") or []
    step = (instructions[0] or {}).get("shippingStep") if instructions else None
    ship_to = (step or {}).get("shipTo") or {}
    address = ship_to.get("contactAddress") or ship_to
    if not address:
        buyer = payload.get("buyer") or {}
        address = buyer.get("taxAddress") or buyer.get("registrationAddress") or {}
    return NormalizedAddress(
        city=clean_str(address.get("city")),
        state=clean_str(address.get("stateOrProvince") or address.get("region")),
        postal_code=clean_str(address.get("postalCode")),
        country=clean_str(address.get("countryCode")),
    )


def _customer(payload: Dict[str, Any]) -> Optional[NormalizedCustomer]:
    buyer = payload.get("buyer")
    if not isinstance(buyer, dict):
        return None
    tax_address = buyer.get("taxAddress") or {}
    name = buyer.get("name") or {}
    email = clean_str(buyer.get("email") or (buyer.get("buyerRegistrationAddress") or {}).get("email"))
    return NormalizedCustomer(
        external_id=clean_str(buyer.get("username")),
        email=email.lower() if email else None,
        phone=clean_str(tax_address.get("phoneNumber")),
        first_name=clean_str(tax_address.get("firstName") or name.get("firstName")),
        last_name=clean_str(tax_address.get("lastName") or name.get("lastName")),
        raw=buyer,
    )


def _line(raw: Dict[str, Any]) -> NormalizedLine:
    sku = clean_str(raw.get("sku") or raw.get("legacySku"))
    price = None
    for key in ("lineItemCost", "netPrice", "originalPrice"):
        price = parse_amount(_value(raw.get(key)))
        if price is not None:
            break
    return NormalizedLine(
        external_line_id=clean_str(raw.get("lineItemId")),
        sku=sku,
        title=clean_str(raw.get("title") or raw.get("itemTitle")),
        quantity=parse_int(raw.get("quantity")),
        price=price,
        tax=parse_amount(_value(raw.get("totalTax"))),
        discounts=parse_amount(_value(raw.get("discountAmount"))),
        fulfillment_status=clean_str(raw.get("lineItemFulfillmentStatus") or raw.get("lineItemStatus")),
        external_item_id=clean_str(raw.get("legacyItemId") or raw.get("itemId")) or sku,
        external_variant_id=clean_str(raw.get("legacyVariationId")),
    )


def normalize_order(payload: Dict[str, Any]) -> NormalizedRecord:
    external_order_id = clean_str(payload.get("orderId") or payload.get("legacyOrderId"))
    if not external_order_id:
        raise InvalidExternalPayload("eBay order payload has no orderId")

    pricing = payload.get("pricingSummary") or {}
    shipping_cost = (pricing.get("deliveryCost") or {}).get("shippingCost")
    subtotal = pricing.get("subtotal") or pricing.get("priceSubtotal")

    order = NormalizedOrder(
        channel=Channel.EBAY,
        external_order_id=external_order_id,
        status=order_status(payload),
        channel_status=clean_str(
            payload.get("orderFulfillmentStatus") or payload.get("orderPaymentStatus") or payload.get("orderStatus")
        ) or "open",
        currency=(
            _currency(pricing.get("total"))
            or _currency(subtotal)
            or _currency(shipping_cost)
        ),
        subtotal=parse_amount(_value(subtotal)),
        tax=parse_amount(_value(pricing.get("totalTax"))),
        shipping=parse_amount(_value(shipping_cost)),
        discounts=parse_amount(_value(pricing.get("discount"))),
        total=parse_amount(_value(pricing.get("total"))),
        placed_at=parse_datetime(payload.get("creationDate")),
        closed_at=parse_datetime(payload.get("cancelledDate")),
        ship_to=_ship_to(payload),
        marketplace_id=clean_str(payload.get("marketplaceId")),
        fulfillment_channel=Channel.EBAY,
        raw=payload,
    )
    lines = [_line(raw) for raw in payload.get("lineItems") or [] if isinstance(raw, dict)]
    return NormalizedRecord(order=order, lines=lines, customer=_customer(payload))


def normalize_inventory_item(payload: Dict[str, Any]) -> Tuple[NormalizedProduct, Optional[InventoryDelta]]:
    """An inventory item is both the listing (keyed by SKU) and its quantity."""
    sku = clean_str(payload.get("sku"))
    if not sku:
        raise InvalidExternalPayload("eBay inventory item has no sku")

    title = clean_str((payload.get("product") or {}).get("title") or payload.get("title")) or sku
    product = NormalizedProduct(
        channel=Channel.EBAY,
        external_item_id=sku,
        title=title,
        status="active",
        variants=[NormalizedVariant(external_variant_id="", sku=sku, title=title, raw=payload)],
    )

    availability = ((payload.get("availability") or {}).get("shipToLocationAvailability") or {})
    quantity = parse_amount(availability.get("quantity"))
    delta = InventoryDelta(available=int(quantity), sku=sku) if quantity is not None else None
    return product, delta
