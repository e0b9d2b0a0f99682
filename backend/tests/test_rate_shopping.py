import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from channel_sync.config import Settings
from channel_sync.models_sqlalchemy.models import RateShoppingQuote
from channel_sync.services import rate_shopping
from channel_sync.services.errors import CredentialMissing, NoCachedQuote, ProviderError
from channel_sync.services.quote_providers import (
    Quote,
    QuoteRequest,
    RateShoppingApiProvider,
    ShippoQuoteProvider,
    SyntheticQuoteProvider,
    build_quote_provider,
)
from channel_sync.utils.dates import utcnow


class CountingFetch:
    def __init__(self, amount=12.34, provider="test-carrier"):
        self.amount = amount
        self.provider = provider
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return Quote(amount=self.amount, provider=self.provider, raw={"call": self.calls})


@pytest.mark.parametrize(
    "weight, band",
    [(2.0, 2.0), (2.1, 2.0), (2.125, 2.25), (2.38, 2.5), (0.05, 0.0)],
)
def test_band_weight_rounds_half_up_to_quarter_pounds(weight, band):
    assert rate_shopping.band_weight(weight) == band


@pytest.mark.asyncio
async def test_miss_fetches_once_then_nearby_weight_hits(db):
    fetch = CountingFetch()

    stored = await rate_shopping.get_or_create_quote(db, "Austin", "TX", 2.0, 1, fetch)
    hit = await rate_shopping.get_or_create_quote(db, "  austin ", "tx", 2.10, 1, fetch)

    assert fetch.calls == 1
    assert hit.id == stored.id
    assert stored.city_lower == "austin"
    assert stored.weight_band == 2.0
    assert stored.amount == Decimal("12.34")


@pytest.mark.asyncio
async def test_weight_outside_tolerance_misses(db):
    fetch = CountingFetch()
    await rate_shopping.get_or_create_quote(db, "Austin", "TX", 2.0, 1, fetch)

    assert rate_shopping.find_cached_quote(db, "Austin", "TX", 2.2, 1) is not None
    assert rate_shopping.find_cached_quote(db, "Austin", "TX", 2.6, 1) is None
    assert rate_shopping.find_cached_quote(db, "Austin", "TX", 2.0, 2) is None
    assert rate_shopping.find_cached_quote(db, "Dallas", "TX", 2.0, 1) is None


@pytest.mark.asyncio
async def test_expired_quotes_are_ignored_and_replaced(db):
    first = CountingFetch(amount=10.0)
    row = await rate_shopping.get_or_create_quote(db, "Boise", "ID", 1.0, 1, first, ttl_seconds=60)

    later = utcnow() + timedelta(minutes=5)
    assert rate_shopping.find_cached_quote(db, "Boise", "ID", 1.0, 1, now=later) is None

    row.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()
    second = CountingFetch(amount=11.0)
    refreshed = await rate_shopping.get_or_create_quote(db, "Boise", "ID", 1.0, 1, second)

    assert second.calls == 1
    assert refreshed.id == row.id
    assert refreshed.amount == Decimal("11.00")
    assert db.query(RateShoppingQuote).count() == 1


@pytest.mark.asyncio
async def test_cache_only_miss_raises(db):
    fetch = CountingFetch()
    with pytest.raises(NoCachedQuote):
        await rate_shopping.get_or_create_quote(db, "Reno", "NV", 3.0, 1, fetch, cache_only=True)
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_non_finite_amount_is_not_cached(db):
    with pytest.raises(ProviderError):
        await rate_shopping.get_or_create_quote(db, "Reno", "NV", 3.0, 1, CountingFetch(amount=float("inf")))
    assert db.query(RateShoppingQuote).count() == 0


@pytest.mark.asyncio
async def test_quote_for_uses_provider_on_miss(db):
    request = QuoteRequest(city="Tulsa", state="OK", weight_lbs=4.0, item_count=2)

    row = await rate_shopping.quote_for(db, SyntheticQuoteProvider(), request)

    assert row.provider == "synthetic"
    assert row.amount == Decimal("7.40")


@pytest.mark.asyncio
async def test_shippo_picks_cheapest_rate():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={
                "rates": [
                    {"amount": "9.10", "currency": "USD", "provider": "UPS"},
                    {"amount": "7.25", "currency": "USD", "provider": "USPS"},
                    {"amount": "n/a"},
                ]
            },
        )

    provider = ShippoQuoteProvider(
        "shippo_test_key",
        from_address={"city": "Los Angeles", "state": "CA", "postal_code": "90001"},
        transport=httpx.MockTransport(handler),
    )
    quote = await provider.quote(QuoteRequest(city="Austin", state="TX", weight_lbs=1.5, item_count=1))

    assert (quote.amount, quote.provider) == (7.25, "USPS")
    assert seen[0].headers["authorization"] == "ShippoToken shippo_test_key"
    body = json.loads(seen[0].content)
    assert body["address_to"]["city"] == "Austin"
    assert body["parcels"][0]["mass_unit"] == "lb"


@pytest.mark.asyncio
async def test_shippo_without_key_is_a_missing_credential():
    with pytest.raises(CredentialMissing):
        await ShippoQuoteProvider(None).quote(QuoteRequest(city="A", state="B", weight_lbs=1, item_count=1))


@pytest.mark.asyncio
async def test_rate_shopping_api_reads_rate_field():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"rate": 6.5})

    provider = RateShoppingApiProvider("https://rates.example.com/quote", transport=httpx.MockTransport(handler))
    quote = await provider.quote(QuoteRequest(city="A", state="B", weight_lbs=1, item_count=1))

    assert quote.amount == 6.5
    assert quote.provider == "rate-shopping-api"


def test_provider_selection_follows_configuration():
    assert isinstance(build_quote_provider(Settings(SHIPPO_API_KEY="k")), ShippoQuoteProvider)
    assert isinstance(
        build_quote_provider(Settings(SHIPPO_API_KEY=None, RATE_SHOPPING_API_URL="https://x")),
        RateShoppingApiProvider,
    )
    assert isinstance(
        build_quote_provider(Settings(SHIPPO_API_KEY=None, RATE_SHOPPING_API_URL=None)),
        SyntheticQuoteProvider,
    )
