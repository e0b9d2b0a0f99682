from pydantic import BaseModel
from typing import Optional, Dict, List
from datetime import datetime


class RefreshResult(BaseModel):
    account_id: str
    channel: str
    sync_job_id: str
    status: str
    counts: Dict[str, int] = {}
    last_sync_at: Optional[datetime] = None


class ErasureResult(BaseModel):
    deleted: bool
    reason: Optional[str] = None
    counts: Optional[Dict[str, int]] = None
    deletion_request_id: str


class ErasureRequest(BaseModel):
    provider: str = "ebay"
    external_user_id: str


class QuoteResponse(BaseModel):
    id: str
    city: str
    state: str
    weight_band: float
    item_count: int
    amount: float
    currency: str
    provider: Optional[str]
    expires_at: Optional[datetime]


class WebhookAck(BaseModel):
    success: bool = True
    skipped: bool = False
    topic: Optional[str] = None
    processed: List[str] = []
