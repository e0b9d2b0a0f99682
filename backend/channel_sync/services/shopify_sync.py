from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.services.errors import InvalidExternalPayload, ProviderError
from channel_sync.services.normalizers import ShopifyOrder
from channel_sync.services.normalizers import shopify as shopify_normalizer
from channel_sync.services.reconciliation import ApplySummary, reconciliation_pipeline
from channel_sync.services.shopify_api import ShopifyExecutor, next_page_url, shopify_executor
from channel_sync.services.signed_request import log_provider_error
from channel_sync.utils.dates import isoformat_z, utcnow
from channel_sync.utils.logger import logger

ORDER_LOOKBACK = timedelta(days=2)
MAX_ORDER_PAGES = 20


async def pull_products(db: Session, account: ChannelAccount, executor: ShopifyExecutor, summary: ApplySummary) -> None:
    data = await executor.execute(db, account, "GET", "/products.json", query={"limit": 250})
    products = data.get("products", []) if isinstance(data, dict) else []
    for payload in products:
        try:
            product = shopify_normalizer.normalize_product(payload)
        except InvalidExternalPayload as exc:
            summary.skipped += 1
            summary.errors.append(exc.message)
            continue
        summary.items += reconciliation_pipeline.apply_product(db, account, product)


async def pull_orders(db: Session, account: ChannelAccount, executor: ShopifyExecutor, summary: ApplySummary) -> None:
    since = isoformat_z(utcnow() - ORDER_LOOKBACK)
    path: Optional[str] = "/orders.json"
    query = {"status": "any", "limit": 50, "order": "updated_at desc", "updated_at_min": since}

    pages = 0
    while path and pages < MAX_ORDER_PAGES:
        response = await executor.send(db, account, "GET", path, query=query)
        orders = response.data.get("orders", []) if isinstance(response.data, dict) else []
        for payload in orders:
            reconciliation_pipeline.ingest_order(db, account, ShopifyOrder(payload), summary)
        pages += 1
        # Cursor URLs carry their own query string.
        path = next_page_url(response.headers.get("link"))
        query = None


async def pull_inventory(db: Session, account: ChannelAccount, executor: ShopifyExecutor, summary: ApplySummary) -> None:
    data = await executor.execute(db, account, "GET", "/locations.json")
    locations = data.get("locations", []) if isinstance(data, dict) else []
    if not locations:
        return
    location_id = locations[0].get("id")
    data = await executor.execute(
        db, account, "GET", "/inventory_levels.json",
        query={"limit": 250, "location_ids": location_id},
    )
    levels = data.get("inventory_levels", []) if isinstance(data, dict) else []
    for payload in levels:
        try:
            delta = shopify_normalizer.normalize_inventory_level(payload)
        except InvalidExternalPayload as exc:
            summary.skipped += 1
            summary.errors.append(exc.message)
            continue
        if reconciliation_pipeline.apply_inventory(db, account, delta) is not None:
            summary.inventory += 1


async def pull_shopify_account(
    db: Session,
    account: ChannelAccount,
    *,
    executor: Optional[ShopifyExecutor] = None,
) -> ApplySummary:
    """Products, then orders from the last two days, then first-location inventory.

    Products go first so order lines and inventory levels find their items.
    A provider failure in one section is logged and the next section still
    runs; credential failures propagate.
    """
    executor = executor or shopify_executor
    summary = ApplySummary()
    failures: list = []
    for name, section in (
        ("products", pull_products),
        ("orders", pull_orders),
        ("inventory", pull_inventory),
    ):
        try:
            await section(db, account, executor, summary)
        except ProviderError as exc:
            failures.append(exc)
            log_provider_error(f"shopify-{name}", account, exc)
            summary.errors.append(f"{name}: {exc.message}")

    if len(failures) == 3:
        raise failures[-1]

    logger.info(
        "[shopify-sync] shop=%s products=%d orders=%d inventory=%d skipped=%d",
        account.external_id, summary.items, summary.orders, summary.inventory, summary.skipped,
    )
    return summary
