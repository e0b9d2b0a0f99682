from pydantic import BaseModel
from typing import Optional


class TokenResponse(BaseModel):
    """Token endpoint payload, common to Shopify, eBay and Login with Amazon.

    Shopify offline tokens come back without ``expires_in``; those never expire.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token_expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    class Config:
        extra = "ignore"
