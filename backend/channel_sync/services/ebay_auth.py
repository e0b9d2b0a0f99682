from __future__ import annotations

import base64
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.models.channel_account import ChannelAccountCreate
from channel_sync.models.tokens import TokenResponse
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.errors import CredentialMissing, CredentialRefreshFailed
from channel_sync.services.oauth_state import ConsumedState
from channel_sync.services.token_lifecycle import TOKEN_HTTP_TIMEOUT, TokenManager
from channel_sync.utils.logger import logger


def _require_app_credentials() -> None:
    if not settings.EBAY_CLIENT_ID or not settings.EBAY_CLIENT_SECRET:
        raise CredentialMissing("EBAY_CLIENT_ID / EBAY_CLIENT_SECRET not configured")
    if not settings.EBAY_RUNAME:
        raise CredentialMissing("EBAY_RUNAME not configured")


def build_authorize_url(state: str) -> str:
    _require_app_credentials()
    params = urlencode(
        {
            "client_id": settings.EBAY_CLIENT_ID,
            "redirect_uri": settings.EBAY_RUNAME,
            "response_type": "code",
            "scope": settings.EBAY_SCOPE,
            "state": state,
        }
    )
    return f"{settings.EBAY_AUTH_BASE_URL.rstrip('/')}/oauth2/authorize?{params}"


def identity_base_url() -> str:
    # The Identity API is served from the apiz.* host.
    return settings.EBAY_API_BASE_URL.replace("://api.", "://apiz.", 1)


class EbayTokenManager(TokenManager):
    """eBay user tokens: ~2h access token, ~18 month refresh token.

    Both the code exchange and the refresh use HTTP Basic with the app's
    client id / secret and a form-encoded body. The refresh must repeat the
    scope list the seller consented to.
    """

    channel = Channel.EBAY

    @property
    def token_url(self) -> str:
        return f"{settings.EBAY_API_BASE_URL.rstrip('/')}/identity/v1/oauth2/token"

    def _headers(self) -> Dict[str, str]:
        _require_app_credentials()
        raw = f"{settings.EBAY_CLIENT_ID}:{settings.EBAY_CLIENT_SECRET}".encode("utf-8")
        return {
            "Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    async def request_refresh(self, account: ChannelAccount, refresh_token: str) -> TokenResponse:
        return await self.post_token_request(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": settings.EBAY_SCOPE,
            },
            headers=self._headers(),
        )

    async def exchange_code(self, code: str) -> TokenResponse:
        return await self.post_token_request(
            self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.EBAY_RUNAME,
            },
            headers=self._headers(),
            action="exchange",
        )

    async def fetch_user_identity(self, access_token: str) -> Dict[str, Any]:
        """Return the seller's ``username`` / ``userId`` for a fresh token."""
        url = f"{identity_base_url()}/commerce/identity/v1/user/"
        try:
            async with httpx.AsyncClient(timeout=TOKEN_HTTP_TIMEOUT, transport=self._transport) as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.RequestError as exc:
            raise CredentialRefreshFailed(f"eBay identity lookup failed: {exc}") from exc
        if response.status_code != 200:
            raise CredentialRefreshFailed(
                f"eBay identity lookup failed ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()


async def complete_connection(
    db: Session,
    consumed: ConsumedState,
    code: str,
    *,
    token_manager: Optional[EbayTokenManager] = None,
) -> ChannelAccount:
    manager = token_manager or EbayTokenManager()
    tokens = await manager.exchange_code(code)
    identity = await manager.fetch_user_identity(tokens.access_token)
    username = identity.get("username") or identity.get("userId")
    if not username:
        raise CredentialRefreshFailed("eBay identity response did not include a username", body=identity)

    account = channel_account_service.upsert_account(
        db,
        consumed.user_id,
        ChannelAccountCreate(
            channel=Channel.EBAY,
            external_id=str(username),
            display_name=str(username),
            marketplace_ids=[settings.EBAY_MARKETPLACE_ID],
        ),
        tokens=tokens,
    )
    logger.info("[ebay-oauth] connected seller=%s account=%s", username, account.id)
    return account
