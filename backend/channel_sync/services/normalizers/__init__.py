from channel_sync.services.normalizers import amazon, ebay, shopify
from channel_sync.services.normalizers.base import (
    AmazonOrder,
    EbayOrder,
    InventoryDelta,
    NormalizedAddress,
    NormalizedCustomer,
    NormalizedLine,
    NormalizedOrder,
    NormalizedProduct,
    NormalizedRecord,
    NormalizedVariant,
    OrderStatus,
    RawOrder,
    ShopifyOrder,
    parse_amount,
)


def normalize(raw: RawOrder) -> NormalizedRecord:
    """Translate any marketplace order into the canonical record."""
    if isinstance(raw, ShopifyOrder):
        return shopify.normalize_order(raw.payload)
    if isinstance(raw, AmazonOrder):
        return amazon.normalize_order(raw.order, raw.items)
    if isinstance(raw, EbayOrder):
        return ebay.normalize_order(raw.payload)
    raise TypeError(f"Unsupported raw order type: {type(raw).__name__}")


__all__ = [
    "AmazonOrder",
    "EbayOrder",
    "InventoryDelta",
    "NormalizedAddress",
    "NormalizedCustomer",
    "NormalizedLine",
    "NormalizedOrder",
    "NormalizedProduct",
    "NormalizedRecord",
    "NormalizedVariant",
    "OrderStatus",
    "RawOrder",
    "ShopifyOrder",
    "normalize",
    "parse_amount",
]
