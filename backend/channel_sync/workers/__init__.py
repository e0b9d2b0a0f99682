"""Background loops started by the FastAPI app on startup."""

from typing import List

from channel_sync.config import settings
from channel_sync.models_sqlalchemy.models import Channel
from channel_sync.workers.channel_scheduler import ChannelScheduler, TickResult


def build_schedulers() -> List[ChannelScheduler]:
    """Shopify and eBay share one loop; Amazon polls on a slower one."""
    return [
        ChannelScheduler(
            "marketplace_scheduler",
            [Channel.SHOPIFY, Channel.EBAY],
            tick_seconds=settings.MARKETPLACE_TICK_SECONDS,
            cadence_seconds=settings.MARKETPLACE_CADENCE_SECONDS,
        ),
        ChannelScheduler(
            "amazon_scheduler",
            [Channel.AMAZON],
            tick_seconds=settings.AMAZON_TICK_SECONDS,
            cadence_seconds=settings.AMAZON_CADENCE_SECONDS,
        ),
    ]


__all__ = ["ChannelScheduler", "TickResult", "build_schedulers"]
