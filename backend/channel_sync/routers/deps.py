"""Shared request dependencies and error mapping for the routers."""

from typing import Optional

from fastapi import Header, HTTPException, status

from channel_sync.services.errors import (
    AccountNotFound,
    ChannelSyncError,
    CredentialMissing,
    CredentialRefreshFailed,
    FeatureDisabled,
    InvalidExternalPayload,
    NoCachedQuote,
    OAuthStateInvalid,
    ProviderError,
    UnsupportedChannel,
)

_STATUS_BY_ERROR = (
    (AccountNotFound, status.HTTP_404_NOT_FOUND),
    (OAuthStateInvalid, status.HTTP_400_BAD_REQUEST),
    (UnsupportedChannel, status.HTTP_400_BAD_REQUEST),
    (InvalidExternalPayload, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CredentialMissing, status.HTTP_409_CONFLICT),
    (FeatureDisabled, status.HTTP_409_CONFLICT),
    (CredentialRefreshFailed, status.HTTP_502_BAD_GATEWAY),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (NoCachedQuote, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: ChannelSyncError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_detail())


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Seller id set by the gateway in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id
