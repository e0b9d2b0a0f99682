from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class ChannelAccountCreate(BaseModel):
    channel: str
    external_id: str
    display_name: Optional[str] = None
    region: Optional[str] = None
    marketplace_ids: Optional[List[str]] = None


class ChannelAccountFlagsUpdate(BaseModel):
    orders_in: Optional[bool] = None
    inventory_out: Optional[bool] = None
    fulfillment_out: Optional[bool] = None
    labels: Optional[bool] = None


class ChannelAccountResponse(BaseModel):
    id: str
    user_id: str
    channel: str
    external_id: str
    display_name: Optional[str]
    region: Optional[str]
    marketplace_ids: Optional[List[str]]
    orders_in: bool
    inventory_out: bool
    fulfillment_out: bool
    labels: bool
    status: str
    status_reason: Optional[str]
    access_token_expires_at: Optional[datetime]
    last_sync_at: Optional[datetime]
    refresh_error: Optional[str]

    class Config:
        from_attributes = True
