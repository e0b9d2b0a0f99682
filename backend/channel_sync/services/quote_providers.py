from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from channel_sync.config import Settings, settings
from channel_sync.services.errors import CredentialMissing, ProviderError
from channel_sync.services.signed_request import parse_body
from channel_sync.utils.logger import logger

SHIPPO_API_BASE = "https://api.goshippo.com"
QUOTE_TIMEOUT_SECONDS = 30.0


@dataclass
class QuoteRequest:
    """One shipment to price: destination geography plus weight and item count."""

    city: str
    state: str
    weight_lbs: float
    item_count: int
    postal_code: Optional[str] = None
    country: str = "US"
    currency: str = "USD"


@dataclass
class Quote:
    amount: float
    currency: str = "USD"
    provider: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def synthetic_amount(weight_lbs: float, item_count: int) -> float:
    return 5 + 0.5 * max(weight_lbs, 0) + 0.2 * max(item_count, 1)


class QuoteProvider:
    """Interface for shipping-rate quote sources.

    The rate cache only ever calls ``quote``; concrete providers decide where
    the number comes from (a carrier aggregator, an in-house API, a formula).
    """

    name = "quote-provider"

    async def quote(self, request: QuoteRequest) -> Quote:  # pragma: no cover - interface
        raise NotImplementedError


class SyntheticQuoteProvider(QuoteProvider):
    """Deterministic formula for environments without live credentials."""

    name = "synthetic"

    async def quote(self, request: QuoteRequest) -> Quote:
        amount = synthetic_amount(request.weight_lbs, request.item_count)
        return Quote(amount=amount, currency=request.currency, provider=self.name, raw={"synthetic": True})


class ShippoQuoteProvider(QuoteProvider):
    name = "shippo"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        mock_mode: bool = False,
        from_address: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.mock_mode = mock_mode
        self.from_address = from_address or {}
        self._transport = transport

    @staticmethod
    def _address(city: str, state: str, zip_code: Optional[str] = None, country: Optional[str] = None) -> Dict[str, str]:
        # Shippo insists on street1; a placeholder is enough for a rate quote.
        address = {
            "city": city,
            "state": state,
            "country": country or "US",
            "street1": "Approximate address",
        }
        if zip_code:
            address["zip"] = zip_code
        return address

    @staticmethod
    def cheapest_rate(rates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        best: Optional[Dict[str, Any]] = None
        best_amount = math.inf
        for rate in rates:
            try:
                amount = float(rate.get("amount"))
            except (TypeError, ValueError):
                continue
            if math.isfinite(amount) and amount < best_amount:
                best, best_amount = rate, amount
        return best

    async def quote(self, request: QuoteRequest) -> Quote:
        if not self.api_key:
            raise CredentialMissing("Shippo API key is not configured")

        if self.mock_mode:
            amount = synthetic_amount(request.weight_lbs, request.item_count)
            return Quote(amount=amount, currency="USD", provider="mock-shippo", raw={"mock": True})

        body = {
            "address_from": self._address(
                self.from_address.get("city", ""),
                self.from_address.get("state", ""),
                self.from_address.get("postal_code"),
                self.from_address.get("country"),
            ),
            "address_to": self._address(request.city, request.state, request.postal_code, request.country),
            "parcels": [{"weight": max(request.weight_lbs, 0.1), "mass_unit": "lb"}],
            "async": False,
        }
        headers = {"Authorization": f"ShippoToken {self.api_key}"}

        async with httpx.AsyncClient(timeout=QUOTE_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(f"{SHIPPO_API_BASE}/shipments", json=body, headers=headers)

        data = parse_body(response.text)
        if response.status_code >= 400:
            raise ProviderError(
                response.status_code, data, f"Shippo rate request failed ({response.status_code})"
            )

        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, list) or not rates:
            raise ProviderError(response.status_code, data, "Shippo did not return rates")
        best = self.cheapest_rate(rates)
        if best is None:
            raise ProviderError(response.status_code, data, "Shippo returned no valid rate amounts")

        logger.info(
            "[rate-cache] shippo quote %s,%s %.2flb -> %s %s (%s)",
            request.city, request.state, request.weight_lbs,
            best.get("amount"), best.get("currency"), best.get("provider"),
        )
        return Quote(
            amount=float(best["amount"]),
            currency=best.get("currency") or "USD",
            provider=best.get("provider"),
            raw=data,
        )


class RateShoppingApiProvider(QuoteProvider):
    """Generic JSON endpoint: POST the request, read ``amount`` (or ``rate``) back."""

    name = "rate-shopping-api"

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self._transport = transport

    async def quote(self, request: QuoteRequest) -> Quote:
        if not self.api_url:
            raise CredentialMissing("Rate shopping API URL is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {
            "city": request.city,
            "state": request.state,
            "weightLbs": request.weight_lbs,
            "itemCount": request.item_count,
            "currency": request.currency,
        }
        async with httpx.AsyncClient(timeout=QUOTE_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(self.api_url, json=body, headers=headers)

        data = parse_body(response.text)
        if response.status_code >= 400:
            raise ProviderError(
                response.status_code, data, f"Rate shopping API failed ({response.status_code})"
            )
        if not isinstance(data, dict):
            raise ProviderError(response.status_code, data, "Rate shopping API returned a non-JSON body")

        raw_amount = data.get("amount")
        if raw_amount is None:
            raw_amount = data.get("rate")
        try:
            amount = float(raw_amount)
        except (TypeError, ValueError):
            amount = math.nan
        if not math.isfinite(amount):
            raise ProviderError(response.status_code, data, "Rate shopping API response missing amount")

        return Quote(
            amount=amount,
            currency=data.get("currency") or request.currency,
            provider=data.get("provider") or self.name,
            raw=data,
        )


def build_quote_provider(config: Settings = settings) -> QuoteProvider:
    """Pick the live provider the environment has credentials for."""
    if config.SHIPPO_API_KEY:
        return ShippoQuoteProvider(
            config.SHIPPO_API_KEY,
            mock_mode=config.SHIPPO_MOCK_MODE,
            from_address={
                "city": config.SHIPPO_FROM_CITY,
                "state": config.SHIPPO_FROM_STATE,
                "postal_code": config.SHIPPO_FROM_POSTAL,
                "country": config.SHIPPO_FROM_COUNTRY,
            },
        )
    if config.RATE_SHOPPING_API_URL:
        return RateShoppingApiProvider(config.RATE_SHOPPING_API_URL, config.RATE_SHOPPING_API_KEY)
    return SyntheticQuoteProvider()


def as_decimal(amount: float) -> Decimal:
    return Decimal(str(amount)).quantize(Decimal("0.01"))
