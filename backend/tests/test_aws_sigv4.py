from datetime import datetime, timezone

import httpx
import pytest

from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.services.amazon_spapi import SpApiExecutor, marketplace_ids_for
from channel_sync.services.aws_sigv4 import (
    AwsCredentials,
    canonical_query_string,
    canonical_request,
    sign_request,
)
from channel_sync.services.token_lifecycle import TokenManager


EXAMPLE_CREDENTIALS = AwsCredentials(
    access_key_id="AKIDEXAMPLE",
    secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
)
EXAMPLE_TIME = datetime(2015, 8, 30, 12, 36, 0, tzinfo=timezone.utc)


def test_get_vanilla_reference_signature():
    headers = sign_request(
        "GET",
        "example.amazonaws.com",
        "/",
        [],
        {},
        b"",
        credentials=EXAMPLE_CREDENTIALS,
        region="us-east-1",
        service="service",
        now=EXAMPLE_TIME,
    )

    assert headers["x-amz-date"] == "20150830T123600Z"
    assert headers["Authorization"] == (
        "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
        "SignedHeaders=host;x-amz-date, "
        "Signature=5fa00fa31553b73ebf1942676e86291e8372ff2a2260956d9b8aae1d763fbf31"
    )


def test_query_is_sorted_and_encoded():
    assert canonical_query_string([("b", "2"), ("a", "x y"), ("Marketplace", "A,B")]) == (
        "Marketplace=A%2CB&a=x%20y&b=2"
    )


def test_canonical_request_lowercases_and_trims_headers():
    request, signed_headers = canonical_request(
        "get", "/orders/v0/orders", [], {"X-Amz-Date": "20240101T000000Z", "Host": " sp.example.com "}, b""
    )
    lines = request.split("\n")
    assert lines[0] == "GET"
    assert "host:sp.example.com" in lines
    assert signed_headers == "host;x-amz-date"


def test_session_token_is_signed_when_present():
    credentials = AwsCredentials("AKID", "secret", session_token="session")
    headers = sign_request(
        "GET", "example.amazonaws.com", "/", [], {}, b"",
        credentials=credentials, region="us-east-1", now=EXAMPLE_TIME,
    )
    assert headers["x-amz-security-token"] == "session"
    assert "x-amz-security-token" in headers["Authorization"]


class _Token(TokenManager):
    async def acquire_valid_credential(self, db, account, *, force_refresh=False):
        return "Atza|access"


@pytest.mark.asyncio
async def test_spapi_requests_carry_lwa_token_and_signature(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER", region="eu")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"payload": {"Orders": []}})

    executor = SpApiExecutor(_Token(), transport=httpx.MockTransport(handler))
    data = await executor.execute(
        db, account, "GET", "/orders/v0/orders", query={"MarketplaceIds": ["A1F83G8C2ARO7P"]}
    )

    assert data == {"payload": {"Orders": []}}
    request = seen[0]
    assert request.url.host == "sellingpartnerapi-eu.amazon.com"
    assert request.headers["x-amz-access-token"] == "Atza|access"
    authorization = request.headers["authorization"]
    assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
    assert "/eu-west-1/execute-api/aws4_request" in authorization
    assert "SignedHeaders=accept;host;x-amz-access-token;x-amz-date" in authorization
    assert request.headers["x-amz-date"].endswith("Z")


def test_default_marketplace_follows_region(make_account):
    assert marketplace_ids_for(make_account(Channel.AMAZON, "A1", region="na")) == ["ATVPDKIKX0DER"]
    assert marketplace_ids_for(
        make_account(Channel.AMAZON, "A2", marketplace_ids=["A2EUQ1WTGCTBG2"])
    ) == ["A2EUQ1WTGCTBG2"]
