import json

import httpx
import pytest

from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.services.ebay_api import EbayExecutor, update_inventory_quantities
from channel_sync.services.errors import (
    CredentialMissing,
    FeatureDisabled,
    ProviderRateLimited,
    ProviderRejected,
    ProviderTransientFailure,
)
from channel_sync.services.shopify_api import (
    ShopifyExecutor,
    create_fulfillment,
    next_page_url,
    register_webhooks,
    set_inventory_level,
)
from channel_sync.services.token_lifecycle import TokenManager


class StaticTokenManager(TokenManager):
    def __init__(self, token="static-token"):
        super().__init__()
        self.token = token
        self.calls = 0

    async def acquire_valid_credential(self, db, account, *, force_refresh=False):
        self.calls += 1
        return self.token


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _scripted(responses, seen):
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return queue.pop(0)

    return httpx.MockTransport(handler)


def _executor(cls, responses, seen, sleep, token_manager=None):
    return cls(token_manager or StaticTokenManager(), transport=_scripted(responses, seen), sleep=sleep)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        EbayExecutor,
        [httpx.Response(503, json={"message": "busy"}), httpx.Response(200, json={"orders": []})],
        seen,
        sleep,
    )

    data = await executor.execute(db, account, "GET", "/sell/fulfillment/v1/order", query={"limit": 50})

    assert data == {"orders": []}
    assert len(seen) == 2
    assert sleep.delays == [2]
    assert seen[0].headers["authorization"] == "Bearer static-token"
    assert seen[0].headers["x-ebay-c-marketplace-id"] == "EBAY_US"
    assert seen[0].url.params["limit"] == "50"


@pytest.mark.asyncio
async def test_rate_limit_exhausts_three_attempts(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    token_manager = StaticTokenManager()
    executor = _executor(
        EbayExecutor,
        [httpx.Response(429, json={"message": "slow down"}) for _ in range(3)],
        seen,
        sleep,
        token_manager,
    )

    with pytest.raises(ProviderRateLimited):
        await executor.execute(db, account, "GET", "/sell/inventory/v1/inventory_item")

    assert len(seen) == 3
    assert sleep.delays == [2, 4]
    # The credential is obtained once per logical call, not per attempt.
    assert token_manager.calls == 1


@pytest.mark.asyncio
async def test_rate_limit_twice_then_success_uses_the_third_attempt(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        EbayExecutor,
        [
            httpx.Response(429, json={"message": "slow down"}),
            httpx.Response(429, json={"message": "slow down"}),
            httpx.Response(200, json={"inventoryItems": []}),
        ],
        seen,
        sleep,
    )

    data = await executor.execute(db, account, "GET", "/sell/inventory/v1/inventory_item")

    assert data == {"inventoryItems": []}
    assert len(seen) == 3
    assert sleep.delays == [2, 4]


@pytest.mark.asyncio
async def test_retry_after_header_sets_the_wait(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        EbayExecutor,
        [httpx.Response(429, headers={"Retry-After": "1"}), httpx.Response(200, json={"ok": True})],
        seen,
        sleep,
    )

    assert await executor.execute(db, account, "GET", "/sell/fulfillment/v1/order") == {"ok": True}
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(EbayExecutor, [httpx.Response(404, json={"message": "missing"})], seen, sleep)

    with pytest.raises(ProviderRejected) as exc_info:
        await executor.execute(db, account, "GET", "/sell/fulfillment/v1/order/123")

    assert exc_info.value.status_code == 404
    assert len(seen) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_persistent_server_error_surfaces_after_retries(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(EbayExecutor, [httpx.Response(500, text="boom") for _ in range(3)], seen, sleep)

    with pytest.raises(ProviderTransientFailure) as exc_info:
        await executor.execute(db, account, "GET", "/sell/fulfillment/v1/order")

    assert exc_info.value.status_code == 500
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_missing_credential_stops_before_any_request(db, make_account):
    account = make_account(expires_in=0, refresh_token=None, access_token=None)
    seen, sleep = [], RecordingSleep()
    executor = EbayExecutor(transport=_scripted([], seen), sleep=sleep)

    with pytest.raises(CredentialMissing):
        await executor.execute(db, account, "GET", "/sell/fulfillment/v1/order")
    assert seen == []


@pytest.mark.asyncio
async def test_shopify_requests_carry_the_shop_token_header(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    seen, sleep = [], RecordingSleep()
    executor = _executor(ShopifyExecutor, [httpx.Response(200, json={"products": []})], seen, sleep)

    await executor.execute(db, account, "GET", "/products.json")

    request = seen[0]
    assert request.url.host == "demo.myshopify.com"
    assert request.url.path.startswith("/admin/api/")
    assert request.headers["x-shopify-access-token"] == "static-token"
    assert "authorization" not in request.headers


def test_next_page_url_reads_the_link_header():
    header = (
        '<https://demo.myshopify.com/admin/api/2024-01/orders.json?page_info=abc>; rel="previous", '
        '<https://demo.myshopify.com/admin/api/2024-01/orders.json?page_info=def>; rel="next"'
    )
    assert next_page_url(header).endswith("page_info=def")
    assert next_page_url(None) is None


@pytest.mark.asyncio
async def test_register_webhooks_skips_existing_and_tolerates_422(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    address = "https://sync.example.com/api/v1/webhooks/shopify"
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        ShopifyExecutor,
        [
            httpx.Response(200, json={"webhooks": [{"topic": "orders/create", "address": address}]}),
            httpx.Response(201, json={"webhook": {"id": 1}}),
            httpx.Response(422, json={"errors": {"address": ["for this topic has already been taken"]}}),
        ],
        seen,
        sleep,
    )

    created = await register_webhooks(
        db,
        account,
        address=address,
        topics=["orders/create", "orders/updated", "products/update"],
        executor=executor,
    )

    assert created == ["orders/updated"]
    assert [r.method for r in seen] == ["GET", "POST", "POST"]
    assert json.loads(seen[1].content)["webhook"]["topic"] == "orders/updated"


@pytest.mark.asyncio
async def test_ebay_bulk_quantity_update_is_chunked(db, make_account):
    account = make_account()
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        EbayExecutor,
        [
            httpx.Response(200, json={"responses": [{"statusCode": 200}] * 25}),
            httpx.Response(200, json={"responses": [{"statusCode": 200}] * 5}),
        ],
        seen,
        sleep,
    )

    responses = await update_inventory_quantities(
        db, account, {f"SKU-{i}": i for i in range(30)}, executor=executor
    )

    assert len(seen) == 2
    assert len(json.loads(seen[0].content)["requests"]) == 25
    assert len(responses) == 30


@pytest.mark.asyncio
async def test_shopify_inventory_set_and_fulfillment_bodies(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    seen, sleep = [], RecordingSleep()
    executor = _executor(
        ShopifyExecutor,
        [
            httpx.Response(200, json={"inventory_level": {"available": 7}}),
            httpx.Response(201, json={"fulfillment": {"id": 9}}),
        ],
        seen,
        sleep,
    )

    await set_inventory_level(db, account, "111", "55", 7, executor=executor)
    await create_fulfillment(db, account, "900", tracking_number="1Z999", tracking_company="UPS", executor=executor)

    assert seen[0].url.path.endswith("/inventory_levels/set.json")
    assert json.loads(seen[0].content) == {"location_id": 55, "inventory_item_id": 111, "available": 7}
    fulfillment = json.loads(seen[1].content)["fulfillment"]
    assert fulfillment["line_items_by_fulfillment_order"] == [{"fulfillment_order_id": 900}]
    assert fulfillment["tracking_info"] == {"number": "1Z999", "company": "UPS"}


@pytest.mark.asyncio
async def test_outbound_writes_respect_account_flags(db, make_account):
    shop = make_account(Channel.SHOPIFY, "demo.myshopify.com", inventory_out=False, fulfillment_out=False)
    seller = make_account(Channel.EBAY, "seller-one", inventory_out=False)
    seen, sleep = [], RecordingSleep()

    with pytest.raises(FeatureDisabled):
        await set_inventory_level(db, shop, "111", "55", 1, executor=_executor(ShopifyExecutor, [], seen, sleep))
    with pytest.raises(FeatureDisabled):
        await create_fulfillment(db, shop, "900", executor=_executor(ShopifyExecutor, [], seen, sleep))
    with pytest.raises(FeatureDisabled):
        await update_inventory_quantities(db, seller, {"SKU": 1}, executor=_executor(EbayExecutor, [], seen, sleep))
    assert seen == []
