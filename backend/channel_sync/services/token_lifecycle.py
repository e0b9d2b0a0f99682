"""Access-token lifecycle shared by every marketplace protocol.

A :class:`TokenManager` answers one question for the rest of the system:
"give me an access token for this account that will not expire during the
next call". Tokens within ``REFRESH_MARGIN`` of expiry are exchanged for a new
one using the stored refresh token, and the new token set is persisted on the
account in a single commit before it is returned.

The protocol specifics (endpoint, auth style, body encoding) live in the
per-marketplace subclasses:

- :mod:`channel_sync.services.shopify_auth`
- :mod:`channel_sync.services.ebay_auth`
- :mod:`channel_sync.services.amazon_auth`

A failed refresh never touches the stored tokens and is not retried here;
the scheduler retries on its next tick.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from channel_sync.models.tokens import TokenResponse
from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.models_sqlalchemy.workers import TokenRefreshLog
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.errors import CredentialMissing, CredentialRefreshFailed, UnsupportedChannel
from channel_sync.utils.dates import to_utc, utcnow
from channel_sync.utils.logger import logger


REFRESH_MARGIN = timedelta(minutes=2)
TOKEN_HTTP_TIMEOUT = 30.0

# Token endpoint errors that will not go away by retrying; the seller has to
# reconnect, so the account is switched off instead of failing every tick.
_PERMANENT_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


class TokenManager:
    channel: str = ""
    # Shopify offline tokens have no expiry at all.
    tokens_may_be_permanent: bool = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def needs_refresh(self, account: ChannelAccount, now: Optional[datetime] = None) -> bool:
        if not account.access_token:
            return True
        expires_at = to_utc(account.access_token_expires_at)
        if expires_at is None:
            return not self.tokens_may_be_permanent
        return expires_at - (now or utcnow()) <= REFRESH_MARGIN

    async def acquire_valid_credential(
        self,
        db: Session,
        account: ChannelAccount,
        *,
        force_refresh: bool = False,
    ) -> str:
        if not force_refresh and not self.needs_refresh(account):
            return account.access_token

        refresh_token = account.refresh_token
        if not refresh_token:
            raise CredentialMissing(
                f"No refresh token stored for {account.channel} account {account.id}; reconnect required",
                account_id=account.id,
            )
        refresh_expires_at = to_utc(account.refresh_token_expires_at)
        if refresh_expires_at is not None and refresh_expires_at <= utcnow():
            raise CredentialMissing(
                f"Refresh token for {account.channel} account {account.id} expired at "
                f"{refresh_expires_at.isoformat()}; reconnect required",
                account_id=account.id,
            )
        return await self.refresh(db, account, refresh_token)

    async def refresh(self, db: Session, account: ChannelAccount, refresh_token: str) -> str:
        log_row = TokenRefreshLog(
            channel_account_id=account.id,
            started_at=utcnow(),
            old_expires_at=account.access_token_expires_at,
        )
        db.add(log_row)
        db.commit()

        logger.info("[token-refresh] START channel=%s account=%s", account.channel, account.id)
        try:
            tokens = await self.request_refresh(account, refresh_token)
        except CredentialRefreshFailed as exc:
            log_row.finished_at = utcnow()
            log_row.success = False
            log_row.error_code = str(exc.status_code) if exc.status_code else exc.code
            log_row.error_message = exc.message
            channel_account_service.record_refresh_error(db, account, exc.message)
            logger.error(
                "[token-refresh] FAILED channel=%s account=%s status=%s error=%s",
                account.channel, account.id, exc.status_code, exc.message,
            )
            if _grant_error(exc.body) in _PERMANENT_GRANT_ERRORS:
                channel_account_service.deactivate(db, account, f"token refresh rejected: {_grant_error(exc.body)}")
            raise

        channel_account_service.save_tokens(db, account, tokens)
        log_row.finished_at = utcnow()
        log_row.success = True
        log_row.new_expires_at = account.access_token_expires_at
        db.commit()
        logger.info(
            "[token-refresh] SUCCESS channel=%s account=%s expires_at=%s",
            account.channel, account.id, account.access_token_expires_at,
        )
        return tokens.access_token

    async def request_refresh(self, account: ChannelAccount, refresh_token: str) -> TokenResponse:
        raise NotImplementedError

    async def post_token_request(
        self,
        url: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        action: str = "refresh",
    ) -> TokenResponse:
        """POST to a token endpoint and parse the token set.

        Any non-2xx answer (or an unreachable endpoint) becomes
        ``CredentialRefreshFailed`` carrying the status and body.
        """
        try:
            async with httpx.AsyncClient(timeout=TOKEN_HTTP_TIMEOUT, transport=self._transport) as client:
                response = await client.post(url, data=data, json=json, headers=headers)
        except httpx.RequestError as exc:
            raise CredentialRefreshFailed(
                f"{self.channel} token {action} request failed: {exc}",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise CredentialRefreshFailed(
                f"{self.channel} token {action} failed ({response.status_code}): {_describe(body)}",
                status_code=response.status_code,
                body=body,
            )

        try:
            return TokenResponse(**response.json())
        except (ValueError, TypeError) as exc:
            raise CredentialRefreshFailed(
                f"{self.channel} token {action} returned an unreadable payload",
                status_code=response.status_code,
                body=response.text,
            ) from exc


def _grant_error(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("error")
    return None


def _describe(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)
    return str(body)[:500]


_managers: Dict[str, TokenManager] = {}


def get_token_manager(channel: str) -> TokenManager:
    """Process-wide token manager for ``channel``."""
    if channel not in _managers:
        from channel_sync.services.amazon_auth import AmazonTokenManager
        from channel_sync.services.ebay_auth import EbayTokenManager
        from channel_sync.services.shopify_auth import ShopifyTokenManager

        factories = {
            ShopifyTokenManager.channel: ShopifyTokenManager,
            EbayTokenManager.channel: EbayTokenManager,
            AmazonTokenManager.channel: AmazonTokenManager,
        }
        if channel not in factories:
            raise UnsupportedChannel(f"No token manager for channel {channel!r}")
        _managers[channel] = factories[channel]()
    return _managers[channel]


async def acquire_valid_credential(db: Session, account: ChannelAccount, *, force_refresh: bool = False) -> str:
    return await get_token_manager(account.channel).acquire_valid_credential(
        db, account, force_refresh=force_refresh
    )
