"""Typed failures raised by the channel sync services.

Background paths (scheduler ticks, webhook fan-out) catch these per account
or per record and log them; manual paths (refresh now, OAuth callback) let
them reach the router, which maps them onto HTTP status codes.
"""

from __future__ import annotations

from typing import Any, Optional


class ChannelSyncError(Exception):
    code = "channel_sync_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class AccountNotFound(ChannelSyncError):
    code = "account_not_found"


class UnsupportedChannel(ChannelSyncError):
    code = "unsupported_channel"


class CredentialMissing(ChannelSyncError):
    """No refresh token (or no app credentials) to obtain an access token."""

    code = "credential_missing"


class CredentialRefreshFailed(ChannelSyncError):
    """The marketplace token endpoint rejected a refresh or code exchange."""

    code = "credential_refresh_failed"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, body: Any = None, **context: Any):
        super().__init__(message, **context)
        self.status_code = status_code
        self.body = body


class OAuthStateInvalid(ChannelSyncError):
    code = "oauth_state_invalid"


class ProviderError(ChannelSyncError):
    """Non-2xx response from a marketplace resource endpoint."""

    code = "provider_error"

    def __init__(self, status_code: int, body: Any = None, message: str = "", **context: Any):
        super().__init__(message or f"Provider returned HTTP {status_code}", **context)
        self.status_code = status_code
        self.body = body

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["status_code"] = self.status_code
        return detail


class ProviderRateLimited(ProviderError):
    code = "provider_rate_limited"

    def __init__(self, status_code: int = 429, body: Any = None, message: str = "", retry_after: Optional[float] = None, **context: Any):
        super().__init__(status_code, body, message, **context)
        self.retry_after = retry_after


class ProviderTransientFailure(ProviderError):
    code = "provider_transient_failure"

    def __init__(self, status_code: int, body: Any = None, message: str = "", retry_after: Optional[float] = None, **context: Any):
        super().__init__(status_code, body, message, **context)
        self.retry_after = retry_after


class ProviderRejected(ProviderError):
    code = "provider_rejected"


class InvalidExternalPayload(ChannelSyncError):
    """A marketplace record is missing a field the normalizer cannot do without."""

    code = "invalid_external_payload"


class NoCachedQuote(ChannelSyncError):
    code = "no_cached_quote"


class FeatureDisabled(ChannelSyncError):
    """The account's feature flag for this outbound action is off."""

    code = "feature_disabled"
