from __future__ import annotations

from typing import List, Optional
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


LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"

CONSENT_URL_BY_REGION = {
    "na": "https://sellercentral.amazon.com/apps/authorize/consent",
    "eu": "https://sellercentral-europe.amazon.com/apps/authorize/consent",
    "fe": "https://sellercentral.amazon.co.jp/apps/authorize/consent",
}


def normalize_region(region: Optional[str]) -> str:
    value = (region or settings.AMAZON_REGION or "na").strip().lower()
    return value if value in CONSENT_URL_BY_REGION else "na"


def _require_app_credentials() -> None:
    if not settings.AMAZON_LWA_CLIENT_ID or not settings.AMAZON_LWA_CLIENT_SECRET:
        raise CredentialMissing("AMAZON_LWA_CLIENT_ID / AMAZON_LWA_CLIENT_SECRET not configured")


def build_authorize_url(state: str, region: Optional[str] = None) -> str:
    _require_app_credentials()
    params = urlencode(
        {
            "application_id": settings.AMAZON_APP_ID or settings.AMAZON_LWA_CLIENT_ID,
            "state": state,
            "redirect_uri": settings.amazon_redirect_uri,
            "version": "beta",
        }
    )
    return f"{CONSENT_URL_BY_REGION[normalize_region(region)]}?{params}"


class AmazonTokenManager(TokenManager):
    """Login with Amazon tokens for SP-API.

    LWA access tokens live for one hour and must be refreshed with the
    long-lived refresh token; every SP-API call additionally needs a SigV4
    signature (see :mod:`channel_sync.services.aws_sigv4`).
    """

    channel = Channel.AMAZON

    async def request_refresh(self, account: ChannelAccount, refresh_token: str) -> TokenResponse:
        _require_app_credentials()
        return await self.post_token_request(
            LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.AMAZON_LWA_CLIENT_ID,
                "client_secret": settings.AMAZON_LWA_CLIENT_SECRET,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenResponse:
        _require_app_credentials()
        return await self.post_token_request(
            LWA_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": settings.AMAZON_LWA_CLIENT_ID,
                "client_secret": settings.AMAZON_LWA_CLIENT_SECRET,
                "redirect_uri": redirect_uri or settings.amazon_redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            action="exchange",
        )


def _split_marketplace_ids(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [part.strip() for part in str(raw).split(",") if part.strip()]


async def complete_connection(
    db: Session,
    consumed: ConsumedState,
    code: str,
    selling_partner_id: Optional[str],
    marketplace_ids: Optional[str] = None,
    *,
    token_manager: Optional[AmazonTokenManager] = None,
) -> ChannelAccount:
    if not selling_partner_id:
        raise OAuthStateInvalid("selling_partner_id missing from Amazon callback")

    manager = token_manager or AmazonTokenManager()
    tokens = await manager.exchange_code(code)
    account = channel_account_service.upsert_account(
        db,
        consumed.user_id,
        ChannelAccountCreate(
            channel=Channel.AMAZON,
            external_id=selling_partner_id,
            display_name=selling_partner_id,
            region=normalize_region(consumed.region),
            marketplace_ids=_split_marketplace_ids(marketplace_ids),
        ),
        tokens=tokens,
    )
    logger.info("[amazon-oauth] connected selling_partner=%s account=%s", selling_partner_id, account.id)
    return account
