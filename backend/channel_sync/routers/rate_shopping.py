from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from channel_sync.database import get_db
from channel_sync.models.sync import QuoteResponse
from channel_sync.models_sqlalchemy.models import RateShoppingQuote
from channel_sync.routers.deps import http_error
from channel_sync.services.errors import ChannelSyncError
from channel_sync.services.quote_providers import QuoteRequest, build_quote_provider
from channel_sync.services.rate_shopping import quote_for

router = APIRouter(prefix="/api/v1/rate-shopping", tags=["Rate Shopping"])


def _response(row: RateShoppingQuote) -> QuoteResponse:
    return QuoteResponse(
        id=row.id,
        city=row.city_lower,
        state=row.state_lower,
        weight_band=float(row.weight_band),
        item_count=row.item_count,
        amount=float(row.amount),
        currency=row.currency,
        provider=row.provider,
        expires_at=row.expires_at,
    )


@router.get("/quote", response_model=QuoteResponse)
async def get_quote(
    city: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    weight_lbs: float = Query(..., ge=0),
    item_count: int = Query(1, ge=1),
    postal_code: Optional[str] = Query(None),
    cache_only: bool = Query(False, description="Answer from the cache only; 503 on a miss"),
    db: Session = Depends(get_db),
):
    request = QuoteRequest(
        city=city, state=state, weight_lbs=weight_lbs, item_count=item_count, postal_code=postal_code
    )
    try:
        row = await quote_for(db, build_quote_provider(), request, cache_only=cache_only)
    except ChannelSyncError as exc:
        raise http_error(exc)
    return _response(row)
