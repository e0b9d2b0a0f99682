import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULERS_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import timedelta

import pytest

from channel_sync.config import settings
from channel_sync.database import Base, SessionLocal, engine
from channel_sync.models_sqlalchemy import models, workers  # noqa: F401
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.services import token_lifecycle
from channel_sync.utils.dates import utcnow


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _app_credentials(monkeypatch):
    """Dummy app credentials so auth helpers do not fail before the fake transport."""
    monkeypatch.setattr(settings, "SHOPIFY_CLIENT_ID", "shopify-client")
    monkeypatch.setattr(settings, "SHOPIFY_CLIENT_SECRET", "shopify-secret")
    monkeypatch.setattr(settings, "EBAY_CLIENT_ID", "ebay-client")
    monkeypatch.setattr(settings, "EBAY_CLIENT_SECRET", "ebay-secret")
    monkeypatch.setattr(settings, "EBAY_RUNAME", "ebay-runame")
    monkeypatch.setattr(settings, "AMAZON_LWA_CLIENT_ID", "amzn1.application-oa2-client.test")
    monkeypatch.setattr(settings, "AMAZON_LWA_CLIENT_SECRET", "lwa-secret")
    monkeypatch.setattr(settings, "AMAZON_SPAPI_AWS_ACCESS_KEY_ID", "AKIDEXAMPLE")
    monkeypatch.setattr(settings, "AMAZON_SPAPI_AWS_SECRET_ACCESS_KEY", "aws-secret")
    monkeypatch.setattr(settings, "SHIPPO_API_KEY", None)
    monkeypatch.setattr(settings, "RATE_SHOPPING_API_URL", None)
    # Managers are cached per process; start every test from a clean slate.
    monkeypatch.setattr(token_lifecycle, "_managers", {})


@pytest.fixture
def make_account(db):
    def _make(
        channel: str = Channel.EBAY,
        external_id: str = "seller-one",
        user_id: str = "user-1",
        *,
        access_token: str = "access-token",
        refresh_token: str = "refresh-token",
        expires_in: int = 3600,
        **fields,
    ) -> ChannelAccount:
        account = ChannelAccount(user_id=user_id, channel=channel, external_id=external_id, **fields)
        account.access_token = access_token
        account.refresh_token = refresh_token
        account.access_token_expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in else None
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _make
