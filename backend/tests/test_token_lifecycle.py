import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.models_sqlalchemy.workers import TokenRefreshLog
from channel_sync.services.amazon_auth import AmazonTokenManager
from channel_sync.services.ebay_auth import EbayTokenManager
from channel_sync.services.errors import CredentialMissing, CredentialRefreshFailed
from channel_sync.services.shopify_auth import ShopifyTokenManager
from channel_sync.utils import crypto
from channel_sync.utils.dates import to_utc, utcnow


def _token_transport(calls, status_code=200, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json=body if body is not None else {})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_calling_the_endpoint(db, make_account):
    account = make_account(expires_in=3600)
    calls = []
    manager = EbayTokenManager(transport=_token_transport(calls))

    token = await manager.acquire_valid_credential(db, account)

    assert token == "access-token"
    assert calls == []


@pytest.mark.asyncio
async def test_token_inside_refresh_margin_is_refreshed_and_persisted(db, make_account):
    account = make_account(expires_in=60)
    calls = []
    manager = EbayTokenManager(
        transport=_token_transport(calls, body={"access_token": "new-access", "expires_in": 7200})
    )

    token = await manager.acquire_valid_credential(db, account)

    assert token == "new-access"
    assert len(calls) == 1
    form = parse_qs(calls[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["refresh-token"]
    assert "scope" in form
    assert calls[0].headers["authorization"].startswith("Basic ")

    db.expire_all()
    assert account.access_token == "new-access"
    # Not rotated by the endpoint, so the stored refresh token is kept.
    assert account.refresh_token == "refresh-token"
    assert to_utc(account.access_token_expires_at) > utcnow() + timedelta(hours=1)
    assert crypto.is_encrypted(account._access_token)

    log = db.query(TokenRefreshLog).filter(TokenRefreshLog.channel_account_id == account.id).one()
    assert log.success is True


@pytest.mark.asyncio
async def test_missing_refresh_token_raises_credential_missing(db, make_account):
    account = make_account(expires_in=0, refresh_token=None)
    calls = []
    manager = EbayTokenManager(transport=_token_transport(calls))

    with pytest.raises(CredentialMissing):
        await manager.acquire_valid_credential(db, account)
    assert calls == []


@pytest.mark.asyncio
async def test_failed_refresh_leaves_stored_token_untouched(db, make_account):
    account = make_account(expires_in=30)
    old_expiry = account.access_token_expires_at
    calls = []
    manager = EbayTokenManager(
        transport=_token_transport(calls, status_code=503, body={"error": "temporarily_unavailable"})
    )

    with pytest.raises(CredentialRefreshFailed) as exc_info:
        await manager.acquire_valid_credential(db, account)

    assert exc_info.value.status_code == 503
    assert len(calls) == 1
    db.expire_all()
    assert account.access_token == "access-token"
    assert account.access_token_expires_at == old_expiry
    assert account.refresh_error
    assert account.status == "active"


@pytest.mark.asyncio
async def test_invalid_grant_deactivates_the_account(db, make_account):
    account = make_account(expires_in=30)
    manager = EbayTokenManager(
        transport=_token_transport([], status_code=400, body={"error": "invalid_grant"})
    )

    with pytest.raises(CredentialRefreshFailed):
        await manager.acquire_valid_credential(db, account)

    db.expire_all()
    assert account.status == "inactive"
    assert "invalid_grant" in account.status_reason


@pytest.mark.asyncio
async def test_shopify_offline_token_without_expiry_is_used_as_is(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com", expires_in=0, refresh_token=None)
    calls = []
    manager = ShopifyTokenManager(transport=_token_transport(calls))

    assert await manager.acquire_valid_credential(db, account) == "access-token"
    assert calls == []


@pytest.mark.asyncio
async def test_shopify_refresh_posts_json_to_the_shop(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com", expires_in=10)
    calls = []
    manager = ShopifyTokenManager(
        transport=_token_transport(calls, body={"access_token": "shpat_new", "expires_in": 86400})
    )

    assert await manager.acquire_valid_credential(db, account) == "shpat_new"
    assert calls[0].url.host == "demo.myshopify.com"
    assert calls[0].url.path == "/admin/oauth/access_token"
    assert json.loads(calls[0].content)["grant_type"] == "refresh_token"


@pytest.mark.asyncio
async def test_amazon_force_refresh_uses_lwa(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER", expires_in=3600)
    calls = []
    manager = AmazonTokenManager(
        transport=_token_transport(
            calls, body={"access_token": "Atza|new", "refresh_token": "Atzr|rotated", "expires_in": 3600}
        )
    )

    assert await manager.acquire_valid_credential(db, account, force_refresh=True) == "Atza|new"
    assert calls[0].url.host == "api.amazon.com"
    db.expire_all()
    assert account.refresh_token == "Atzr|rotated"
