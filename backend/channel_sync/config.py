from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    DEBUG: bool = False

    # Postgres in production; a local SQLite file is accepted for development.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./channel_sync.db")

    # Public base URL of this service (OAuth redirect + webhook addresses are
    # derived from it) and the UI origin we bounce back to after OAuth.
    APP_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Shopify
    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-01"
    SHOPIFY_SCOPES: str = (
        "read_products,read_orders,write_orders,read_inventory,write_inventory,"
        "read_fulfillments,write_fulfillments"
    )

    # eBay
    EBAY_CLIENT_ID: Optional[str] = None
    EBAY_CLIENT_SECRET: Optional[str] = None
    EBAY_RUNAME: Optional[str] = None
    # Space-separated list of scopes requested on authorize and refresh.
    EBAY_SCOPE: str = " ".join(
        [
            "https://api.ebay.com/oauth/api_scope",
            "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
            "https://api.ebay.com/oauth/api_scope/sell.inventory",
        ]
    )
    EBAY_MARKETPLACE_ID: str = "EBAY_US"
    EBAY_API_BASE_URL: str = "https://api.ebay.com"
    EBAY_AUTH_BASE_URL: str = "https://auth.ebay.com"

    # Amazon SP-API: LWA client for OAuth, AWS IAM keys for SigV4 signing.
    AMAZON_LWA_CLIENT_ID: Optional[str] = None
    AMAZON_LWA_CLIENT_SECRET: Optional[str] = None
    AMAZON_APP_ID: Optional[str] = None
    AMAZON_LWA_REDIRECT_URI: Optional[str] = None
    AMAZON_REGION: str = "na"  # na, eu, fe
    AMAZON_SPAPI_AWS_ACCESS_KEY_ID: Optional[str] = None
    AMAZON_SPAPI_AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AMAZON_SPAPI_AWS_SESSION_TOKEN: Optional[str] = None

    # Rate shopping
    SHIPPO_API_KEY: Optional[str] = None
    SHIPPO_MOCK_MODE: bool = False
    SHIPPO_FROM_CITY: str = "Los Angeles"
    SHIPPO_FROM_STATE: str = "CA"
    SHIPPO_FROM_POSTAL: str = "90001"
    SHIPPO_FROM_COUNTRY: str = "US"
    RATE_SHOPPING_API_URL: Optional[str] = None
    RATE_SHOPPING_API_KEY: Optional[str] = None
    RATE_SHOPPING_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # Polling schedulers. Shopify and eBay share one loop, Amazon has its own
    # slower loop because of SP-API rate limits.
    SCHEDULERS_ENABLED: bool = True
    MARKETPLACE_TICK_SECONDS: int = 5 * 60
    MARKETPLACE_CADENCE_SECONDS: int = 30 * 60
    AMAZON_TICK_SECONDS: int = 10 * 60
    AMAZON_CADENCE_SECONDS: int = 60 * 60

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def amazon_redirect_uri(self) -> str:
        if self.AMAZON_LWA_REDIRECT_URI:
            return self.AMAZON_LWA_REDIRECT_URI.strip().lstrip("=")
        return f"{self.APP_BASE_URL.rstrip('/')}/api/v1/auth/amazon/callback"

    @property
    def shopify_redirect_uri(self) -> str:
        return f"{self.APP_BASE_URL.rstrip('/')}/api/v1/auth/shopify/callback"

    @property
    def shopify_webhook_address(self) -> str:
        return f"{self.APP_BASE_URL.rstrip('/')}/api/v1/webhooks/shopify"


settings = Settings()
