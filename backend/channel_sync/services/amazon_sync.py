from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.services.amazon_spapi import SpApiExecutor, marketplace_ids_for, spapi_executor
from channel_sync.services.errors import ProviderError
from channel_sync.services.normalizers import AmazonOrder
from channel_sync.services.reconciliation import ApplySummary, reconciliation_pipeline
from channel_sync.services.signed_request import log_provider_error
from channel_sync.utils.dates import isoformat_z, utcnow
from channel_sync.utils.logger import logger

ORDER_LOOKBACK = timedelta(days=2)
ORDER_STATUSES = ["Unshipped", "PartiallyShipped", "Shipped", "Unfulfillable"]
FULFILLMENT_CHANNELS = ["MFN", "AFN"]
MAX_PAGES = 50


def _payload(response: Any) -> Dict[str, Any]:
    if not isinstance(response, dict):
        return {}
    return response.get("payload") or response


async def fetch_orders(
    db: Session,
    account: ChannelAccount,
    executor: SpApiExecutor,
    marketplace_ids: List[str],
) -> List[Dict[str, Any]]:
    orders: List[Dict[str, Any]] = []
    query: Dict[str, Any] = {
        "MarketplaceIds": marketplace_ids,
        "CreatedAfter": isoformat_z(utcnow() - ORDER_LOOKBACK),
        "OrderStatuses": ORDER_STATUSES,
        "FulfillmentChannels": FULFILLMENT_CHANNELS,
    }
    for _ in range(MAX_PAGES):
        page = _payload(await executor.execute(db, account, "GET", "/orders/v0/orders", query=query))
        orders.extend(page.get("Orders") or [])
        next_token = page.get("NextToken")
        if not next_token:
            break
        # Continuation requests carry only the token.
        query = {"NextToken": next_token}
    return orders


async def fetch_order_items(
    db: Session,
    account: ChannelAccount,
    executor: SpApiExecutor,
    amazon_order_id: str,
) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    path = f"/orders/v0/orders/{quote(amazon_order_id, safe='')}/orderItems"
    query: Optional[Dict[str, Any]] = None
    for _ in range(MAX_PAGES):
        page = _payload(await executor.execute(db, account, "GET", path, query=query))
        items.extend(page.get("OrderItems") or [])
        next_token = page.get("NextToken")
        if not next_token:
            break
        query = {"NextToken": next_token}
    return items


async def pull_amazon_account(
    db: Session,
    account: ChannelAccount,
    *,
    executor: Optional[SpApiExecutor] = None,
) -> ApplySummary:
    """Orders created in the last two days, each with its order items."""
    executor = executor or spapi_executor
    summary = ApplySummary()
    marketplace_ids = marketplace_ids_for(account)

    orders = await fetch_orders(db, account, executor, marketplace_ids)
    for order in orders:
        amazon_order_id = order.get("AmazonOrderId")
        if not amazon_order_id:
            summary.skipped += 1
            continue
        try:
            items = await fetch_order_items(db, account, executor, amazon_order_id)
        except ProviderError as exc:
            log_provider_error("amazon-order-items", account, exc)
            summary.skipped += 1
            summary.errors.append(f"{amazon_order_id}: {exc.message}")
            continue
        if not order.get("MarketplaceId"):
            order = {**order, "MarketplaceId": marketplace_ids[0]}
        reconciliation_pipeline.ingest_order(db, account, AmazonOrder(order, items), summary)

    logger.info(
        "[amazon-sync] seller=%s marketplaces=%s orders=%d lines=%d skipped=%d",
        account.external_id, ",".join(marketplace_ids), summary.orders, summary.lines, summary.skipped,
    )
    return summary
