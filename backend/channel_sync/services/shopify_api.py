from __future__ import annotations

import re
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.errors import FeatureDisabled, ProviderRejected
from channel_sync.services.signed_request import SignedRequestExecutor
from channel_sync.utils.logger import logger


DEFAULT_WEBHOOK_TOPICS = [
    "orders/create",
    "orders/updated",
    "products/create",
    "products/update",
    "inventory_levels/update",
]

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')


class ShopifyExecutor(SignedRequestExecutor):
    channel = Channel.SHOPIFY

    def base_url(self, account: ChannelAccount) -> str:
        return f"https://{account.external_id}/admin/api/{settings.SHOPIFY_API_VERSION}"

    def auth_headers(self, account: ChannelAccount, access_token: str) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": access_token}


def next_page_url(link_header: Optional[str]) -> Optional[str]:
    """Cursor URL from Shopify's ``Link`` header, if there is a next page."""
    if not link_header:
        return None
    match = _NEXT_LINK_RE.search(link_header)
    return match.group(1) if match else None


async def register_webhooks(
    db: Session,
    account: ChannelAccount,
    *,
    address: Optional[str] = None,
    topics: Optional[List[str]] = None,
    executor: Optional[ShopifyExecutor] = None,
) -> List[str]:
    """Subscribe the shop to our webhook address; safe to call repeatedly.

    Existing (topic, address) pairs are skipped, and a 422 on create (the
    subscription already exists) is treated as success. Returns the topics
    that were newly created.
    """
    executor = executor or shopify_executor
    address = address or settings.shopify_webhook_address
    topics = topics or DEFAULT_WEBHOOK_TOPICS

    existing = await executor.execute(db, account, "GET", "/webhooks.json", query={"limit": 250})
    webhooks = existing.get("webhooks", []) if isinstance(existing, dict) else []
    present = {
        (str(w.get("topic")), str(w.get("address")))
        for w in webhooks
        if w.get("topic") and w.get("address")
    }

    created: List[str] = []
    for topic in topics:
        if (topic, address) in present:
            continue
        try:
            await executor.execute(
                db,
                account,
                "POST",
                "/webhooks.json",
                body={"webhook": {"topic": topic, "address": address, "format": "json"}},
            )
        except ProviderRejected as exc:
            if exc.status_code == 422:
                continue
            raise
        created.append(topic)

    logger.info(
        "[shopify-webhooks] shop=%s created=%s already_present=%s",
        account.external_id, created, len(topics) - len(created),
    )
    return created


async def set_inventory_level(
    db: Session,
    account: ChannelAccount,
    inventory_item_id: str,
    location_id: str,
    available: int,
    *,
    executor: Optional[ShopifyExecutor] = None,
) -> dict:
    if not account.inventory_out:
        raise FeatureDisabled(f"inventory_out is disabled for account {account.id}", account_id=account.id)
    executor = executor or shopify_executor
    return await executor.execute(
        db,
        account,
        "POST",
        "/inventory_levels/set.json",
        body={
            "location_id": int(location_id),
            "inventory_item_id": int(inventory_item_id),
            "available": int(available),
        },
    )


async def create_fulfillment(
    db: Session,
    account: ChannelAccount,
    fulfillment_order_id: str,
    *,
    tracking_number: Optional[str] = None,
    tracking_company: Optional[str] = None,
    notify_customer: bool = False,
    executor: Optional[ShopifyExecutor] = None,
) -> dict:
    """Fulfil every open line of a fulfillment order."""
    if not account.fulfillment_out:
        raise FeatureDisabled(f"fulfillment_out is disabled for account {account.id}", account_id=account.id)
    executor = executor or shopify_executor
    fulfillment: dict = {
        "line_items_by_fulfillment_order": [{"fulfillment_order_id": int(fulfillment_order_id)}],
        "notify_customer": notify_customer,
    }
    if tracking_number:
        fulfillment["tracking_info"] = {"number": tracking_number, "company": tracking_company}
    return await executor.execute(db, account, "POST", "/fulfillments.json", body={"fulfillment": fulfillment})


shopify_executor = ShopifyExecutor()
