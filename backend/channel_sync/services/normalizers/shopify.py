"""Shopify Admin REST payloads (orders, products, inventory levels)."""

from __future__ import annotations

from typing import Any, Dict, Optional

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
    sum_amounts,
)
from channel_sync.utils.dates import parse_datetime

GRAMS_PER_POUND = 453.592


def order_status(payload: Dict[str, Any]) -> str:
    if payload.get("cancelled_at"):
        return OrderStatus.CANCELLED
    fulfillment = (payload.get("fulfillment_status") or "").lower()
    if fulfillment == "fulfilled":
        return OrderStatus.FULFILLED
    if fulfillment == "partial":
        return OrderStatus.PARTIALLY_FULFILLED
    if (payload.get("financial_status") or "").lower() in ("pending", "authorized"):
        return OrderStatus.PENDING
    return OrderStatus.OPEN


def _customer(payload: Dict[str, Any]) -> Optional[NormalizedCustomer]:
    raw = payload.get("customer")
    if not isinstance(raw, dict):
        return None
    email = clean_str(raw.get("email") or payload.get("email"))
    return NormalizedCustomer(
        external_id=clean_str(raw.get("id")),
        email=email.lower() if email else None,
        phone=clean_str(raw.get("phone") or payload.get("phone")),
        first_name=clean_str(raw.get("first_name")),
        last_name=clean_str(raw.get("last_name")),
        raw=raw,
    )


def _line(raw: Dict[str, Any]) -> NormalizedLine:
    grams = parse_amount(raw.get("grams"))
    return NormalizedLine(
        external_line_id=clean_str(raw.get("id")),
        sku=clean_str(raw.get("sku")),
        title=clean_str(raw.get("name") or raw.get("title")),
        quantity=parse_int(raw.get("quantity")),
        price=parse_amount(raw.get("price")),
        tax=parse_amount(raw.get("total_tax")),
        discounts=parse_amount(raw.get("total_discount")),
        fulfillment_status=clean_str(raw.get("fulfillment_status")),
        weight_lbs=float(grams) / GRAMS_PER_POUND if grams is not None else None,
        external_item_id=clean_str(raw.get("product_id")),
        external_variant_id=clean_str(raw.get("variant_id")),
    )


def normalize_order(payload: Dict[str, Any]) -> NormalizedRecord:
    external_order_id = clean_str(payload.get("id"))
    if not external_order_id:
        raise InvalidExternalPayload("Shopify order payload has no id")

    address = payload.get("shipping_address") or {}
    shipping_lines = payload.get("shipping_lines") or []
    discount_applications = payload.get("discount_applications") or []

    order = NormalizedOrder(
        channel=Channel.SHOPIFY,
        external_order_id=external_order_id,
        status=order_status(payload),
        channel_status=clean_str(payload.get("financial_status")),
        currency=clean_str(payload.get("currency")),
        subtotal=parse_amount(payload.get("subtotal_price")),
        tax=parse_amount(payload.get("total_tax")),
        shipping=sum_amounts(line.get("price") for line in shipping_lines),
        discounts=sum_amounts(d.get("value") for d in discount_applications),
        total=parse_amount(payload.get("total_price")),
        placed_at=parse_datetime(payload.get("created_at")),
        closed_at=parse_datetime(payload.get("closed_at")),
        ship_to=NormalizedAddress(
            city=clean_str(address.get("city")),
            state=clean_str(address.get("province") or address.get("province_code")),
            postal_code=clean_str(address.get("zip")),
            country=clean_str(address.get("country_code") or address.get("country")),
        ),
        fulfillment_channel=Channel.SHOPIFY,
        has_channel_shipping=len(shipping_lines) > 0,
        raw=payload,
    )
    lines = [_line(raw) for raw in payload.get("line_items") or [] if isinstance(raw, dict)]
    return NormalizedRecord(order=order, lines=lines, customer=_customer(payload))


def normalize_product(payload: Dict[str, Any]) -> NormalizedProduct:
    product_id = clean_str(payload.get("id"))
    if not product_id:
        raise InvalidExternalPayload("Shopify product payload has no id")

    title = clean_str(payload.get("title"))
    variants = []
    for raw in payload.get("variants") or []:
        variant_id = clean_str(raw.get("id"))
        if not variant_id:
            continue
        variant_title = clean_str(raw.get("title"))
        if variant_title and variant_title != "Default Title":
            full_title = f"{title} - {variant_title}" if title else variant_title
        else:
            full_title = title
        variants.append(
            NormalizedVariant(
                external_variant_id=variant_id,
                sku=clean_str(raw.get("sku")),
                title=full_title,
                inventory_item_id=clean_str(raw.get("inventory_item_id")),
                raw=raw,
            )
        )
    return NormalizedProduct(
        channel=Channel.SHOPIFY,
        external_item_id=product_id,
        title=title,
        status="active" if payload.get("status", "active") == "active" else "inactive",
        variants=variants,
    )


def normalize_inventory_level(payload: Dict[str, Any]) -> InventoryDelta:
    inventory_item_id = clean_str(payload.get("inventory_item_id"))
    if not inventory_item_id:
        raise InvalidExternalPayload("Shopify inventory level has no inventory_item_id")
    return InventoryDelta(
        available=parse_int(payload.get("available")),
        location_id=clean_str(payload.get("location_id")) or "",
        inventory_item_id=inventory_item_id,
    )
