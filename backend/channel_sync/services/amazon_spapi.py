from __future__ import annotations

from typing import Dict, List

import httpx

from channel_sync.config import settings
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.aws_sigv4 import AwsCredentials, sign_request
from channel_sync.services.errors import CredentialMissing
from channel_sync.services.signed_request import SignedRequestExecutor


HOST_BY_REGION = {
    "na": "sellingpartnerapi-na.amazon.com",
    "eu": "sellingpartnerapi-eu.amazon.com",
    "fe": "sellingpartnerapi-fe.amazon.com",
}

# AWS signing region for each SP-API endpoint.
AWS_REGION_BY_REGION = {
    "na": "us-east-1",
    "eu": "eu-west-1",
    "fe": "us-west-2",
}

DEFAULT_MARKETPLACE_BY_REGION = {
    "na": "ATVPDKIKX0DER",
    "eu": "A1F83G8C2ARO7P",
    "fe": "A1VC38T7YXB528",
}


def account_region(account: ChannelAccount) -> str:
    region = (account.region or settings.AMAZON_REGION or "na").lower()
    return region if region in HOST_BY_REGION else "na"


def marketplace_ids_for(account: ChannelAccount) -> List[str]:
    if account.marketplace_ids:
        return list(account.marketplace_ids)
    return [DEFAULT_MARKETPLACE_BY_REGION[account_region(account)]]


def signing_credentials() -> AwsCredentials:
    if not settings.AMAZON_SPAPI_AWS_ACCESS_KEY_ID or not settings.AMAZON_SPAPI_AWS_SECRET_ACCESS_KEY:
        raise CredentialMissing("Amazon SP-API AWS credentials are not configured")
    return AwsCredentials(
        access_key_id=settings.AMAZON_SPAPI_AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AMAZON_SPAPI_AWS_SECRET_ACCESS_KEY,
        session_token=settings.AMAZON_SPAPI_AWS_SESSION_TOKEN or None,
    )


class SpApiExecutor(SignedRequestExecutor):
    """Selling Partner API: LWA token in ``x-amz-access-token`` plus SigV4."""

    channel = Channel.AMAZON

    def base_url(self, account: ChannelAccount) -> str:
        return f"https://{HOST_BY_REGION[account_region(account)]}"

    def auth_headers(self, account: ChannelAccount, access_token: str) -> Dict[str, str]:
        return {"x-amz-access-token": access_token}

    def sign(
        self,
        account: ChannelAccount,
        method: str,
        url: httpx.URL,
        headers: Dict[str, str],
        body: bytes,
    ) -> Dict[str, str]:
        raw_path = url.raw_path.split(b"?", 1)[0].decode("ascii")
        query = httpx.QueryParams(url.query.decode("ascii")).multi_items()
        return sign_request(
            method,
            url.host,
            raw_path,
            query,
            headers,
            body,
            credentials=signing_credentials(),
            region=AWS_REGION_BY_REGION[account_region(account)],
        )


spapi_executor = SpApiExecutor()
