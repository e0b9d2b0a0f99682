"""Routes verified marketplace webhook payloads into the sync pipeline.

Signature verification happens before anything here runs. Webhook deliveries
go through the same normalizers and upserts as polling, so a record that
arrives both ways converges on one canonical row.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from channel_sync.models.sync import WebhookAck
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.erasure import erase_external_identity
from channel_sync.services.errors import AccountNotFound, InvalidExternalPayload, UnsupportedChannel
from channel_sync.services.normalizers import EbayOrder, ShopifyOrder, normalize
from channel_sync.services.normalizers import ebay as ebay_normalizer
from channel_sync.services.normalizers import shopify as shopify_normalizer
from channel_sync.services.reconciliation import reconciliation_pipeline
from channel_sync.utils.logger import logger

SHOPIFY_ORDER_TOPICS = {
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/cancelled",
    "orders/fulfilled",
    "orders/partially_fulfilled",
}
SHOPIFY_PRODUCT_TOPICS = {"products/create", "products/update"}
SHOPIFY_INVENTORY_TOPICS = {"inventory_levels/update", "inventory_levels/connect"}

EBAY_ORDER_TOPICS = {"ORDER_CREATED", "ORDER_UPDATED", "ORDER"}
EBAY_ACCOUNT_DELETION_TOPICS = {"MARKETPLACE_ACCOUNT_DELETION", "ACCOUNT_DELETION"}


def ebay_topic(payload: Dict[str, Any]) -> Optional[str]:
    metadata = payload.get("metadata") or {}
    notification = payload.get("notification") or {}
    return metadata.get("topic") or notification.get("notificationType") or payload.get("topic")


def ebay_deleted_user(payload: Dict[str, Any]) -> Optional[str]:
    """The eBay identity named in an account-deletion notification.

    Accounts are keyed by eBay username, so that wins over the opaque userId.
    """
    notification = payload.get("notification") or {}
    data = notification.get("data") or {}
    value = data.get("username") or data.get("userId") or notification.get("userId")
    return str(value) if value else None


def _require_account(account: Optional[ChannelAccount], channel: str, topic: str) -> ChannelAccount:
    if account is None:
        raise AccountNotFound(f"No {channel} account for webhook topic {topic}")
    return account


def _handle_shopify(db: Session, topic: str, payload: Dict[str, Any], account: Optional[ChannelAccount]) -> WebhookAck:
    if topic in SHOPIFY_ORDER_TOPICS:
        account = _require_account(account, Channel.SHOPIFY, topic)
        order = reconciliation_pipeline.apply_order(
            db, account, normalize(ShopifyOrder(payload)), source="webhook"
        )
        return WebhookAck(topic=topic, processed=[order.external_order_id])

    if topic in SHOPIFY_PRODUCT_TOPICS:
        account = _require_account(account, Channel.SHOPIFY, topic)
        product = shopify_normalizer.normalize_product(payload)
        reconciliation_pipeline.apply_product(db, account, product)
        return WebhookAck(topic=topic, processed=[v.sku for v in product.variants if v.sku])

    if topic in SHOPIFY_INVENTORY_TOPICS:
        account = _require_account(account, Channel.SHOPIFY, topic)
        delta = shopify_normalizer.normalize_inventory_level(payload)
        level = reconciliation_pipeline.apply_inventory(db, account, delta)
        if level is None:
            return WebhookAck(topic=topic, skipped=True)
        return WebhookAck(topic=topic, processed=[delta.inventory_item_id])

    logger.info("[webhook] shopify topic=%s ignored (not handled)", topic)
    return WebhookAck(topic=topic, skipped=True)


def _handle_ebay(db: Session, topic: str, payload: Dict[str, Any], account: Optional[ChannelAccount]) -> WebhookAck:
    if topic in EBAY_ACCOUNT_DELETION_TOPICS:
        external_user_id = ebay_deleted_user(payload)
        if not external_user_id:
            raise InvalidExternalPayload("Account deletion notification has no user id")
        result = erase_external_identity(db, external_user_id, provider=Channel.EBAY, payload=payload)
        return WebhookAck(topic=topic, skipped=not result.deleted, processed=[result.deletion_request_id])

    if topic in EBAY_ORDER_TOPICS:
        account = _require_account(account, Channel.EBAY, topic)
        order_payload = payload.get("order") if isinstance(payload.get("order"), dict) else payload
        order = reconciliation_pipeline.apply_order(
            db, account, normalize(EbayOrder(order_payload)), source="webhook"
        )
        return WebhookAck(topic=topic, processed=[order.external_order_id])

    if topic == "INVENTORY_ITEM":
        account = _require_account(account, Channel.EBAY, topic)
        product, delta = ebay_normalizer.normalize_inventory_item(payload)
        reconciliation_pipeline.apply_product(db, account, product)
        if delta is not None:
            reconciliation_pipeline.apply_inventory(db, account, delta)
        return WebhookAck(topic=topic, processed=[product.external_item_id])

    logger.info("[webhook] ebay topic=%s ignored (not handled)", topic)
    return WebhookAck(topic=topic, skipped=True)


_HANDLERS = {
    Channel.SHOPIFY: _handle_shopify,
    Channel.EBAY: _handle_ebay,
}


def handle_webhook(
    db: Session,
    channel: str,
    topic: Optional[str],
    payload: Dict[str, Any],
    account: Optional[ChannelAccount] = None,
) -> WebhookAck:
    handler = _HANDLERS.get(channel)
    if handler is None:
        raise UnsupportedChannel(f"Webhooks are not supported for channel {channel!r}")
    if channel == Channel.EBAY and not topic:
        topic = ebay_topic(payload)
    if not topic:
        logger.warning("[webhook] %s delivery without a topic ignored", channel)
        return WebhookAck(skipped=True)

    logger.info(
        "[webhook] channel=%s topic=%s account=%s", channel, topic, account.id if account else None
    )
    return handler(db, topic, payload, account)
