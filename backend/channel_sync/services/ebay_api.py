from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services.errors import FeatureDisabled
from channel_sync.services.signed_request import SignedRequestExecutor


def marketplace_id_for(account: ChannelAccount) -> str:
    if account.marketplace_ids:
        return account.marketplace_ids[0]
    return settings.EBAY_MARKETPLACE_ID


class EbayExecutor(SignedRequestExecutor):
    channel = Channel.EBAY

    def base_url(self, account: ChannelAccount) -> str:
        return settings.EBAY_API_BASE_URL

    def auth_headers(self, account: ChannelAccount, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "X-EBAY-C-MARKETPLACE-ID": marketplace_id_for(account),
            "Content-Language": "en-US",
        }


async def update_inventory_quantities(
    db: Session,
    account: ChannelAccount,
    quantities: Dict[str, int],
    *,
    executor: Optional[EbayExecutor] = None,
) -> List[dict]:
    """Push ship-to-location quantities for up to 25 SKUs per call."""
    if not account.inventory_out:
        raise FeatureDisabled(f"inventory_out is disabled for account {account.id}", account_id=account.id)
    executor = executor or ebay_executor
    skus = list(quantities)
    responses: List[dict] = []
    for start in range(0, len(skus), 25):
        chunk = skus[start:start + 25]
        result = await executor.execute(
            db,
            account,
            "POST",
            "/sell/inventory/v1/bulk_update_price_quantity",
            body={
                "requests": [
                    {"sku": sku, "shipToLocationAvailability": {"quantity": int(quantities[sku])}}
                    for sku in chunk
                ]
            },
        )
        if isinstance(result, dict):
            responses.extend(result.get("responses", []))
    return responses


ebay_executor = EbayExecutor()
