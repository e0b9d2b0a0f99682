from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.models.channel_account import ChannelAccountCreate
from channel_sync.models.tokens import TokenResponse
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.errors import CredentialMissing, OAuthStateInvalid
from channel_sync.services.oauth_state import ConsumedState
from channel_sync.services.token_lifecycle import TokenManager
from channel_sync.utils.logger import logger


_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


def normalize_shop_domain(shop: Optional[str]) -> str:
    value = (shop or "").strip().lower()
    value = re.sub(r"^https?://", "", value).rstrip("/")
    if not _SHOP_DOMAIN_RE.match(value):
        raise OAuthStateInvalid(f"Invalid Shopify shop domain: {shop!r}")
    return value


def _require_app_credentials() -> None:
    if not settings.SHOPIFY_CLIENT_ID or not settings.SHOPIFY_CLIENT_SECRET:
        raise CredentialMissing("SHOPIFY_CLIENT_ID / SHOPIFY_CLIENT_SECRET not configured")


def build_authorize_url(shop: str, state: str) -> str:
    _require_app_credentials()
    params = urlencode(
        {
            "client_id": settings.SHOPIFY_CLIENT_ID,
            "scope": settings.SHOPIFY_SCOPES,
            "redirect_uri": settings.shopify_redirect_uri,
            "state": state,
        }
    )
    return f"https://{normalize_shop_domain(shop)}/admin/oauth/authorize?{params}"


class ShopifyTokenManager(TokenManager):
    """Shopify admin tokens.

    Classic offline tokens never expire and come without a refresh token;
    expiring offline tokens carry ``expires_in`` + ``refresh_token`` and are
    refreshed against the same shop-scoped endpoint used for the code exchange.
    """

    channel = Channel.SHOPIFY
    tokens_may_be_permanent = True

    @staticmethod
    def token_url(shop: str) -> str:
        return f"https://{shop}/admin/oauth/access_token"

    async def request_refresh(self, account: ChannelAccount, refresh_token: str) -> TokenResponse:
        _require_app_credentials()
        return await self.post_token_request(
            self.token_url(account.external_id),
            json={
                "client_id": settings.SHOPIFY_CLIENT_ID,
                "client_secret": settings.SHOPIFY_CLIENT_SECRET,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

    async def exchange_code(self, shop: str, code: str) -> TokenResponse:
        _require_app_credentials()
        return await self.post_token_request(
            self.token_url(shop),
            json={
                "client_id": settings.SHOPIFY_CLIENT_ID,
                "client_secret": settings.SHOPIFY_CLIENT_SECRET,
                "code": code,
            },
            action="exchange",
        )


async def complete_connection(
    db: Session,
    consumed: ConsumedState,
    shop: str,
    code: str,
    *,
    token_manager: Optional[ShopifyTokenManager] = None,
) -> ChannelAccount:
    """Redeem the authorization code and store the shop connection."""
    shop_domain = normalize_shop_domain(shop)
    if consumed.shop_domain and consumed.shop_domain != shop_domain:
        raise OAuthStateInvalid("Shop domain does not match the one the flow was started for")

    manager = token_manager or ShopifyTokenManager()
    tokens = await manager.exchange_code(shop_domain, code)
    account = channel_account_service.upsert_account(
        db,
        consumed.user_id,
        ChannelAccountCreate(channel=Channel.SHOPIFY, external_id=shop_domain, display_name=shop_domain),
        tokens=tokens,
    )
    logger.info("[shopify-oauth] connected shop=%s account=%s", shop_domain, account.id)
    return account
