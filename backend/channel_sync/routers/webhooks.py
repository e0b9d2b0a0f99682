from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header
from sqlalchemy.orm import Session

from channel_sync.database import get_db
from channel_sync.models.sync import WebhookAck
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.routers.deps import http_error
from channel_sync.services.errors import ChannelSyncError
from channel_sync.services.shopify_auth import normalize_shop_domain
from channel_sync.services.webhooks import (
    EBAY_ACCOUNT_DELETION_TOPICS,
    ebay_topic,
    handle_webhook,
)
from channel_sync.utils.logger import logger

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


def _accounts_for(db: Session, channel: str, external_id: str) -> list:
    return (
        db.query(ChannelAccount)
        .filter(ChannelAccount.channel == channel, ChannelAccount.external_id == external_id)
        .all()
    )


def _ebay_seller(payload: Dict[str, Any]) -> Optional[str]:
    order = payload.get("order") if isinstance(payload.get("order"), dict) else payload
    seller = order.get("sellerId") or (payload.get("metadata") or {}).get("sellerId")
    if seller:
        return str(seller)
    notification = payload.get("notification") or {}
    data = notification.get("data") or {}
    return data.get("sellerId") or data.get("username")


@router.post("/shopify", response_model=WebhookAck)
async def shopify_webhook(
    payload: Dict[str, Any] = Body(...),
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    db: Session = Depends(get_db),
):
    """Shopify delivery; the HMAC header is checked before the request gets here."""
    try:
        shop = normalize_shop_domain(x_shopify_shop_domain)
        accounts = _accounts_for(db, Channel.SHOPIFY, shop)
        if not accounts:
            return handle_webhook(db, Channel.SHOPIFY, x_shopify_topic, payload, None)

        ack = WebhookAck(topic=x_shopify_topic)
        # The same shop can be connected by more than one seller.
        for account in accounts:
            result = handle_webhook(db, Channel.SHOPIFY, x_shopify_topic, payload, account)
            ack.processed.extend(result.processed)
            ack.skipped = ack.skipped or result.skipped
        return ack
    except ChannelSyncError as exc:
        logger.error("[webhook] shopify topic=%s shop=%s failed: %s", x_shopify_topic, x_shopify_shop_domain, exc)
        raise http_error(exc)


@router.post("/ebay", response_model=WebhookAck)
async def ebay_webhook(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    topic = ebay_topic(payload)
    try:
        if topic in EBAY_ACCOUNT_DELETION_TOPICS:
            return handle_webhook(db, Channel.EBAY, topic, payload)

        seller = _ebay_seller(payload)
        accounts = _accounts_for(db, Channel.EBAY, seller) if seller else []
        if not accounts:
            return handle_webhook(db, Channel.EBAY, topic, payload, None)

        ack = WebhookAck(topic=topic)
        for account in accounts:
            result = handle_webhook(db, Channel.EBAY, topic, payload, account)
            ack.processed.extend(result.processed)
            ack.skipped = ack.skipped or result.skipped
        return ack
    except ChannelSyncError as exc:
        logger.error("[webhook] ebay topic=%s failed: %s", topic, exc)
        raise http_error(exc)
