import httpx
import pytest

from channel_sync.models_sqlalchemy.models import Channel, InventoryLevel, ItemExternal, Order, OrderLine
from channel_sync.models_sqlalchemy.workers import SyncJob
from channel_sync.services import channel_refresh
from channel_sync.services.amazon_spapi import SpApiExecutor
from channel_sync.services.amazon_sync import pull_amazon_account
from channel_sync.services.ebay_api import EbayExecutor
from channel_sync.services.ebay_sync import pull_ebay_account
from channel_sync.services.errors import AccountNotFound, CredentialMissing, ProviderRejected
from channel_sync.services.reconciliation import ApplySummary
from channel_sync.services.shopify_api import ShopifyExecutor
from channel_sync.services.shopify_sync import pull_shopify_account
from channel_sync.services.token_lifecycle import TokenManager


class _Token(TokenManager):
    async def acquire_valid_credential(self, db, account, *, force_refresh=False):
        return "token"


async def _no_sleep(_seconds):
    return None


def _executor(cls, handler):
    return cls(_Token(), transport=httpx.MockTransport(handler), sleep=_no_sleep)


@pytest.mark.asyncio
async def test_successful_refresh_records_job_and_stamps_last_sync(db, make_account, monkeypatch):
    account = make_account()
    calls = []

    async def fake_pull(db, account):
        calls.append(account.id)
        return ApplySummary(orders=2, lines=3)

    monkeypatch.setitem(channel_refresh.PULLERS, Channel.EBAY, fake_pull)

    result = await channel_refresh.run_channel_refresh(db, account.id, triggered_by="manual")

    assert calls == [account.id]
    assert result.status == "completed"
    assert result.counts["orders"] == 2
    assert result.last_sync_at is not None
    job = db.query(SyncJob).filter(SyncJob.id == result.sync_job_id).one()
    assert (job.status, job.triggered_by) == ("completed", "manual")
    assert job.summary["lines"] == 3


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_sync_and_reraises(db, make_account, monkeypatch):
    account = make_account()

    async def failing_pull(db, account):
        raise ProviderRejected(403, {"message": "denied"}, "HTTP 403: denied")

    monkeypatch.setitem(channel_refresh.PULLERS, Channel.EBAY, failing_pull)

    with pytest.raises(ProviderRejected):
        await channel_refresh.run_channel_refresh(db, account.id, triggered_by="scheduler")

    db.expire_all()
    assert account.last_sync_at is None
    job = db.query(SyncJob).one()
    assert job.status == "error"
    assert "denied" in job.error_message
    assert job.finished_at is not None


@pytest.mark.asyncio
async def test_orders_in_disabled_only_checks_the_token(db, make_account, monkeypatch):
    account = make_account(orders_in=False)

    async def unexpected_pull(db, account):
        raise AssertionError("pull must not run")

    monkeypatch.setitem(channel_refresh.PULLERS, Channel.EBAY, unexpected_pull)

    result = await channel_refresh.run_channel_refresh(db, account.id)

    assert result.status == "completed"
    assert result.last_sync_at is not None


@pytest.mark.asyncio
async def test_inactive_or_unknown_accounts_are_typed_failures(db, make_account):
    account = make_account(status="inactive", status_reason="token refresh rejected: invalid_grant")

    with pytest.raises(CredentialMissing):
        await channel_refresh.run_channel_refresh(db, account.id)
    with pytest.raises(AccountNotFound):
        await channel_refresh.run_channel_refresh(db, "missing-id")
    assert db.query(SyncJob).count() == 0


@pytest.mark.asyncio
async def test_shopify_pull_follows_cursor_pages_and_loads_inventory(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    order_pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/products.json"):
            return httpx.Response(200, json={"products": [
                {"id": 1, "title": "Mug", "variants": [{"id": 11, "sku": "MUG", "inventory_item_id": 111}]},
            ]})
        if path.endswith("/orders.json"):
            order_pages.append(str(request.url))
            if "page_info" not in request.url.params:
                next_url = f"https://demo.myshopify.com{path}?page_info=p2&limit=50"
                return httpx.Response(
                    200,
                    json={"orders": [{"id": 1, "line_items": [{"id": 10, "sku": "MUG", "quantity": 1}]}]},
                    headers={"Link": f'<{next_url}>; rel="next"'},
                )
            return httpx.Response(200, json={"orders": [{"id": 2, "line_items": []}, {"line_items": []}]})
        if path.endswith("/locations.json"):
            return httpx.Response(200, json={"locations": [{"id": 55}]})
        if path.endswith("/inventory_levels.json"):
            assert request.url.params["location_ids"] == "55"
            return httpx.Response(200, json={"inventory_levels": [
                {"inventory_item_id": 111, "location_id": 55, "available": 9},
            ]})
        return httpx.Response(404, json={"errors": "Not Found"})

    summary = await pull_shopify_account(db, account, executor=_executor(ShopifyExecutor, handler))

    assert len(order_pages) == 2
    assert (summary.items, summary.orders, summary.inventory, summary.skipped) == (1, 2, 1, 1)
    assert db.query(Order).count() == 2
    assert db.query(InventoryLevel).one().available == 9


@pytest.mark.asyncio
async def test_shopify_pull_survives_one_failing_section(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/products.json"):
            return httpx.Response(403, json={"errors": "scope"})
        if request.url.path.endswith("/orders.json"):
            return httpx.Response(200, json={"orders": [{"id": 7, "line_items": []}]})
        return httpx.Response(200, json={"locations": []})

    summary = await pull_shopify_account(db, account, executor=_executor(ShopifyExecutor, handler))

    assert summary.orders == 1
    assert any(error.startswith("products:") for error in summary.errors)


@pytest.mark.asyncio
async def test_ebay_pull_reads_orders_and_inventory_items(db, make_account):
    account = make_account()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sell/fulfillment/v1/order":
            if "offset" in request.url.params:
                return httpx.Response(200, json={"orders": [{"orderId": "O-2", "lineItems": []}]})
            assert request.url.params["filter"].startswith("creationdate:[")
            return httpx.Response(200, json={
                "orders": [{"orderId": "O-1", "lineItems": [{"lineItemId": "L-1", "sku": "CUP", "quantity": 1}]}],
                "next": "https://api.ebay.com/sell/fulfillment/v1/order?limit=50&offset=50",
            })
        if request.url.path == "/sell/inventory/v1/inventory_item":
            return httpx.Response(200, json={"inventoryItems": [
                {"sku": "CUP", "availability": {"shipToLocationAvailability": {"quantity": 4}}},
                {"product": {"title": "no sku"}},
            ]})
        return httpx.Response(404)

    summary = await pull_ebay_account(db, account, executor=_executor(EbayExecutor, handler))

    assert summary.orders == 2
    assert summary.lines == 1
    assert summary.items == 1
    assert summary.inventory == 1
    assert summary.skipped == 1
    assert db.query(OrderLine).one().sku == "CUP"
    assert db.query(ItemExternal).filter(ItemExternal.external_item_id == "CUP").count() == 1


@pytest.mark.asyncio
async def test_ebay_pull_raises_when_every_section_fails(db, make_account):
    account = make_account()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"errors": [{"message": "insufficient scope"}]})

    with pytest.raises(ProviderRejected):
        await pull_ebay_account(db, account, executor=_executor(EbayExecutor, handler))


@pytest.mark.asyncio
async def test_amazon_pull_pages_orders_and_fetches_items(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    item_calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/orders/v0/orders":
            if request.url.params.get("NextToken") == "page-2":
                assert "MarketplaceIds" not in request.url.params
                return httpx.Response(200, json={"payload": {"Orders": [
                    {"AmazonOrderId": "111-0000002-0000002", "OrderStatus": "Unshipped"},
                ]}})
            assert request.url.params["MarketplaceIds"] == "ATVPDKIKX0DER"
            return httpx.Response(200, json={"payload": {
                "Orders": [{"AmazonOrderId": "111-0000001-0000001", "OrderStatus": "Shipped"}, {"OrderStatus": "Pending"}],
                "NextToken": "page-2",
            }})
        if path.endswith("/orderItems"):
            item_calls.append(path)
            if "0000002" in path:
                return httpx.Response(403, json={"errors": [{"message": "denied"}]})
            return httpx.Response(200, json={"payload": {"OrderItems": [
                {"OrderItemId": "I-1", "SellerSKU": "BOOK", "QuantityOrdered": 1},
            ]}})
        return httpx.Response(404)

    summary = await pull_amazon_account(db, account, executor=_executor(SpApiExecutor, handler))

    assert len(item_calls) == 2
    assert (summary.orders, summary.lines, summary.skipped) == (1, 1, 2)
    order = db.query(Order).one()
    assert order.marketplace_id == "ATVPDKIKX0DER"
    assert order.status == "fulfilled"
