"""Shipping-rate quote cache keyed by an approximate destination bucket.

Bucket = (lowercased city, lowercased state, weight band, item count). The
weight is rounded to the nearest 0.25 lb and a lookup accepts any stored band
within 0.25 lb of the requested one. Expired rows are ignored, never purged.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.models_sqlalchemy.models import RateShoppingQuote
from channel_sync.services.errors import NoCachedQuote, ProviderError
from channel_sync.services.quote_providers import Quote, QuoteProvider, QuoteRequest, as_decimal
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger

WEIGHT_STEP_LBS = 0.25
WEIGHT_TOLERANCE_LBS = 0.25

FetchQuote = Callable[[], Awaitable[Quote]]


def band_weight(weight_lbs: float) -> float:
    if weight_lbs is None or not math.isfinite(weight_lbs):
        return 0.0
    # Half-up, so 2.125 -> 2.25 rather than banker's rounding.
    return math.floor(weight_lbs / WEIGHT_STEP_LBS + 0.5) * WEIGHT_STEP_LBS


def _bucket(city: str, state: str) -> tuple[str, str]:
    return city.strip().lower(), state.strip().lower()


def find_cached_quote(
    db: Session,
    city: str,
    state: str,
    weight_lbs: float,
    item_count: int,
    *,
    now: Optional[datetime] = None,
) -> Optional[RateShoppingQuote]:
    city_lower, state_lower = _bucket(city, state)
    band = band_weight(weight_lbs)
    now = now or utcnow()
    return (
        db.query(RateShoppingQuote)
        .filter(
            RateShoppingQuote.city_lower == city_lower,
            RateShoppingQuote.state_lower == state_lower,
            RateShoppingQuote.item_count == item_count,
            RateShoppingQuote.weight_band >= band - WEIGHT_TOLERANCE_LBS,
            RateShoppingQuote.weight_band <= band + WEIGHT_TOLERANCE_LBS,
            or_(RateShoppingQuote.expires_at.is_(None), RateShoppingQuote.expires_at > now),
        )
        .order_by(RateShoppingQuote.updated_at.desc())
        .first()
    )


def _store_quote(
    db: Session,
    city_lower: str,
    state_lower: str,
    band: float,
    item_count: int,
    quote: Quote,
    currency: str,
    expires_at: Optional[datetime],
) -> RateShoppingQuote:
    def _upsert() -> RateShoppingQuote:
        row = (
            db.query(RateShoppingQuote)
            .filter(
                RateShoppingQuote.city_lower == city_lower,
                RateShoppingQuote.state_lower == state_lower,
                RateShoppingQuote.weight_band == band,
                RateShoppingQuote.item_count == item_count,
            )
            .first()
        )
        if row is None:
            row = RateShoppingQuote(
                city_lower=city_lower,
                state_lower=state_lower,
                weight_band=band,
                item_count=item_count,
            )
            db.add(row)
        row.amount = as_decimal(quote.amount)
        row.currency = quote.currency or currency
        row.provider = quote.provider
        row.raw = quote.raw
        row.expires_at = expires_at
        row.updated_at = utcnow()
        db.commit()
        db.refresh(row)
        return row

    try:
        return _upsert()
    except IntegrityError:
        # A concurrent miss inserted the same bucket first; last write wins.
        db.rollback()
        return _upsert()


async def get_or_create_quote(
    db: Session,
    city: str,
    state: str,
    weight_lbs: float,
    item_count: int,
    fetch: Optional[FetchQuote] = None,
    *,
    cache_only: bool = False,
    currency: str = "USD",
    ttl_seconds: Optional[int] = None,
) -> RateShoppingQuote:
    """Cached quote for the bucket, calling ``fetch`` once on a miss.

    With ``cache_only`` a miss raises ``NoCachedQuote`` instead.
    """
    cached = find_cached_quote(db, city, state, weight_lbs, item_count)
    if cached is not None:
        logger.debug("[rate-cache] hit %s,%s band=%s items=%s", city, state, cached.weight_band, item_count)
        return cached

    if cache_only:
        raise NoCachedQuote(
            f"No cached quote for {city}, {state} ({weight_lbs} lb, {item_count} items)"
        )
    if fetch is None:
        raise ValueError("fetch is required when the cache is cold")

    fetched = await fetch()
    if fetched.amount is None or not math.isfinite(float(fetched.amount)):
        raise ProviderError(0, fetched.raw, "Invalid rate shopping amount")

    ttl = settings.RATE_SHOPPING_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    expires_at = utcnow() + timedelta(seconds=ttl) if ttl else None
    city_lower, state_lower = _bucket(city, state)
    band = band_weight(weight_lbs)
    row = _store_quote(db, city_lower, state_lower, band, item_count, fetched, currency, expires_at)
    logger.info(
        "[rate-cache] stored %s,%s band=%s items=%s amount=%s provider=%s",
        city_lower, state_lower, band, item_count, row.amount, row.provider,
    )
    return row


async def quote_for(
    db: Session,
    provider: QuoteProvider,
    request: QuoteRequest,
    *,
    cache_only: bool = False,
) -> RateShoppingQuote:
    """Cache lookup with ``provider`` as the miss path."""

    async def fetch() -> Quote:
        return await provider.quote(request)

    return await get_or_create_quote(
        db,
        request.city,
        request.state,
        request.weight_lbs,
        request.item_count,
        fetch,
        cache_only=cache_only,
        currency=request.currency,
    )
