from typing import Optional
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from channel_sync.config import settings
from channel_sync.database import get_db
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.routers.deps import get_current_user_id, http_error
from channel_sync.services import amazon_auth, ebay_auth, shopify_auth
from channel_sync.services.channel_refresh import run_channel_refresh
from channel_sync.services.errors import ChannelSyncError, OAuthStateInvalid
from channel_sync.services.oauth_state import ConsumedState, consume_state, create_state
from channel_sync.services.shopify_api import register_webhooks
from channel_sync.utils.logger import logger

router = APIRouter(prefix="/api/v1/auth", tags=["OAuth"])


def allowed_redirect(target: Optional[str]) -> Optional[str]:
    """Return ``target`` only when it points into the frontend's own origin."""
    if not target:
        return None
    frontend = urlsplit(settings.FRONTEND_URL)
    if target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return f"{frontend.scheme}://{frontend.netloc}{target}"
    parts = urlsplit(target)
    if (parts.scheme, parts.netloc.lower()) == (frontend.scheme, frontend.netloc.lower()):
        return target
    logger.warning("[oauth] ignoring redirect_to outside %s: %s", settings.FRONTEND_URL, target)
    return None


def _frontend_redirect(channel: str, consumed: Optional[ConsumedState], **params: str) -> RedirectResponse:
    base = allowed_redirect(consumed.redirect_to if consumed else None) or (
        f"{settings.FRONTEND_URL.rstrip('/')}/channels"
    )
    query = urlencode({"channel": channel, **params})
    separator = "&" if "?" in base else "?"
    return RedirectResponse(url=f"{base}{separator}{query}")


def _consume_or_fail(db: Session, provider: str, state: Optional[str]) -> ConsumedState:
    consumed = consume_state(db, provider, state or "")
    if consumed is None:
        raise http_error(OAuthStateInvalid("Invalid or expired OAuth state"))
    return consumed


async def _initial_refresh(db: Session, account: ChannelAccount) -> None:
    # The connection is already stored; a failed first sync is retried by the scheduler.
    try:
        await run_channel_refresh(db, account.id, triggered_by="oauth")
    except ChannelSyncError as exc:
        logger.warning(
            "[oauth] initial refresh failed channel=%s account=%s: %s", account.channel, account.id, exc
        )


@router.get("/shopify/start")
async def shopify_start(
    shop: str = Query(..., description="myshopify.com domain of the shop"),
    redirect_to: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        shop_domain = shopify_auth.normalize_shop_domain(shop)
        state = create_state(db, Channel.SHOPIFY, user_id, shop_domain=shop_domain, redirect_to=redirect_to)
        url = shopify_auth.build_authorize_url(shop_domain, state)
    except ChannelSyncError as exc:
        raise http_error(exc)
    logger.info("[oauth] shopify start user=%s shop=%s", user_id, shop_domain)
    return {"authorization_url": url, "state": state}


@router.get("/shopify/callback")
async def shopify_callback(
    shop: str = Query(...),
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    consumed = _consume_or_fail(db, Channel.SHOPIFY, state)
    if not code:
        return _frontend_redirect(Channel.SHOPIFY, consumed, status="error", reason="missing_code")

    try:
        account = await shopify_auth.complete_connection(db, consumed, shop, code)
    except ChannelSyncError as exc:
        logger.error("[oauth] shopify connect failed shop=%s: %s", shop, exc)
        return _frontend_redirect(Channel.SHOPIFY, consumed, status="error", reason=exc.code)

    try:
        await register_webhooks(db, account)
    except ChannelSyncError as exc:
        logger.warning("[oauth] shopify webhook registration failed shop=%s: %s", account.external_id, exc)
    await _initial_refresh(db, account)
    return _frontend_redirect(Channel.SHOPIFY, consumed, status="connected", account_id=account.id)


@router.get("/ebay/start")
async def ebay_start(
    redirect_to: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        state = create_state(db, Channel.EBAY, user_id, redirect_to=redirect_to)
        url = ebay_auth.build_authorize_url(state)
    except ChannelSyncError as exc:
        raise http_error(exc)
    logger.info("[oauth] ebay start user=%s", user_id)
    return {"authorization_url": url, "state": state}


@router.get("/ebay/callback")
async def ebay_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    consumed = _consume_or_fail(db, Channel.EBAY, state)
    if not code:
        return _frontend_redirect(Channel.EBAY, consumed, status="error", reason="missing_code")

    try:
        account = await ebay_auth.complete_connection(db, consumed, code)
    except ChannelSyncError as exc:
        logger.error("[oauth] ebay connect failed user=%s: %s", consumed.user_id, exc)
        return _frontend_redirect(Channel.EBAY, consumed, status="error", reason=exc.code)

    await _initial_refresh(db, account)
    return _frontend_redirect(Channel.EBAY, consumed, status="connected", account_id=account.id)


@router.get("/amazon/start")
async def amazon_start(
    region: Optional[str] = Query(None, description="na, eu or fe"),
    redirect_to: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        normalized = amazon_auth.normalize_region(region)
        state = create_state(db, Channel.AMAZON, user_id, region=normalized, redirect_to=redirect_to)
        url = amazon_auth.build_authorize_url(state, normalized)
    except ChannelSyncError as exc:
        raise http_error(exc)
    logger.info("[oauth] amazon start user=%s region=%s", user_id, normalized)
    return {"authorization_url": url, "state": state}


@router.get("/amazon/callback")
async def amazon_callback(
    state: Optional[str] = Query(None),
    spapi_oauth_code: Optional[str] = Query(None),
    selling_partner_id: Optional[str] = Query(None),
    marketplace_ids: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    consumed = _consume_or_fail(db, Channel.AMAZON, state)
    if not spapi_oauth_code:
        return _frontend_redirect(Channel.AMAZON, consumed, status="error", reason="missing_code")

    try:
        account = await amazon_auth.complete_connection(
            db, consumed, spapi_oauth_code, selling_partner_id, marketplace_ids
        )
    except ChannelSyncError as exc:
        logger.error("[oauth] amazon connect failed user=%s: %s", consumed.user_id, exc)
        return _frontend_redirect(Channel.AMAZON, consumed, status="error", reason=exc.code)

    await _initial_refresh(db, account)
    return _frontend_redirect(Channel.AMAZON, consumed, status="connected", account_id=account.id)
