from __future__ import annotations

from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.services.ebay_api import EbayExecutor, ebay_executor
from channel_sync.services.errors import InvalidExternalPayload, ProviderError
from channel_sync.services.normalizers import EbayOrder
from channel_sync.services.normalizers import ebay as ebay_normalizer
from channel_sync.services.reconciliation import ApplySummary, reconciliation_pipeline
from channel_sync.services.signed_request import log_provider_error
from channel_sync.utils.dates import isoformat_z, utcnow
from channel_sync.utils.logger import logger

ORDER_LOOKBACK = timedelta(days=2)
MAX_PAGES = 50


async def _pages(
    db: Session,
    account: ChannelAccount,
    executor: EbayExecutor,
    path: str,
    query: Optional[Dict[str, Any]],
    key: str,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield records from every page, following eBay's absolute ``next`` links."""
    next_path: Optional[str] = path
    pages = 0
    while next_path and pages < MAX_PAGES:
        page = await executor.execute(db, account, "GET", next_path, query=query)
        if not isinstance(page, dict):
            return
        for record in page.get(key) or []:
            yield record
        pages += 1
        next_path = page.get("next") or None
        query = None


async def pull_orders(
    db: Session,
    account: ChannelAccount,
    executor: EbayExecutor,
    summary: ApplySummary,
    *,
    since: Optional[str] = None,
) -> None:
    now = utcnow()
    since = since or isoformat_z(now - ORDER_LOOKBACK)
    query = {"limit": 50, "filter": f"creationdate:[{since}..{isoformat_z(now)}]"}
    async for payload in _pages(db, account, executor, "/sell/fulfillment/v1/order", query, "orders"):
        reconciliation_pipeline.ingest_order(db, account, EbayOrder(payload), summary)


async def pull_inventory_items(
    db: Session,
    account: ChannelAccount,
    executor: EbayExecutor,
    summary: ApplySummary,
) -> None:
    async for payload in _pages(
        db, account, executor, "/sell/inventory/v1/inventory_item", {"limit": 50}, "inventoryItems"
    ):
        try:
            product, delta = ebay_normalizer.normalize_inventory_item(payload)
        except InvalidExternalPayload as exc:
            summary.skipped += 1
            summary.errors.append(exc.message)
            continue
        summary.items += reconciliation_pipeline.apply_product(db, account, product)
        if delta is not None and reconciliation_pipeline.apply_inventory(db, account, delta) is not None:
            summary.inventory += 1


async def pull_ebay_account(
    db: Session,
    account: ChannelAccount,
    *,
    executor: Optional[EbayExecutor] = None,
) -> ApplySummary:
    executor = executor or ebay_executor
    summary = ApplySummary()
    failures = []
    for name, section in (("orders", pull_orders), ("inventory", pull_inventory_items)):
        try:
            await section(db, account, executor, summary)
        except ProviderError as exc:
            failures.append(exc)
            log_provider_error(f"ebay-{name}", account, exc)
            summary.errors.append(f"{name}: {exc.message}")

    if len(failures) == 2:
        raise failures[-1]

    logger.info(
        "[ebay-sync] seller=%s orders=%d items=%d inventory=%d skipped=%d",
        account.external_id, summary.orders, summary.items, summary.inventory, summary.skipped,
    )
    return summary
