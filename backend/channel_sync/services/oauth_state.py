"""Persisted OAuth transaction state.

Every authorize redirect carries a random ``state`` nonce stored in
``oauth_states`` with a short absolute expiry. The callback consumes it with a
read-and-delete: only the request whose DELETE actually removed the row gets
the state back, so a duplicated callback cannot redeem the same
authorization code twice, even across processes.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import OAuthState
from channel_sync.utils.dates import to_utc, utcnow
from channel_sync.utils.logger import logger

STATE_TTL = timedelta(minutes=10)


@dataclass
class ConsumedState:
    provider: str
    user_id: str
    shop_domain: Optional[str] = None
    region: Optional[str] = None
    redirect_to: Optional[str] = None


def create_state(
    db: Session,
    provider: str,
    user_id: str,
    *,
    shop_domain: Optional[str] = None,
    region: Optional[str] = None,
    redirect_to: Optional[str] = None,
) -> str:
    nonce = secrets.token_hex(16)
    db.add(
        OAuthState(
            provider=provider,
            state=nonce,
            user_id=user_id,
            shop_domain=shop_domain,
            region=region,
            redirect_to=redirect_to,
            expires_at=utcnow() + STATE_TTL,
        )
    )
    db.commit()
    return nonce


def consume_state(db: Session, provider: str, state: str) -> Optional[ConsumedState]:
    """Redeem ``state`` once. Returns ``None`` if unknown, expired or already used."""
    if not state:
        return None

    row = db.query(OAuthState).filter(OAuthState.state == state).first()
    if row is None:
        logger.warning("[oauth] unknown or already consumed state provider=%s", provider)
        return None

    snapshot = ConsumedState(
        provider=row.provider,
        user_id=row.user_id,
        shop_domain=row.shop_domain,
        region=row.region,
        redirect_to=row.redirect_to,
    )
    expires_at = to_utc(row.expires_at)

    deleted = (
        db.query(OAuthState)
        .filter(OAuthState.id == row.id)
        .delete(synchronize_session=False)
    )
    db.commit()

    if deleted != 1:
        logger.warning("[oauth] state consumed concurrently provider=%s", provider)
        return None
    if snapshot.provider != provider:
        logger.warning("[oauth] state provider mismatch expected=%s got=%s", provider, snapshot.provider)
        return None
    if expires_at is None or expires_at <= utcnow():
        logger.warning("[oauth] expired state provider=%s user=%s", provider, snapshot.user_id)
        return None
    return snapshot


def purge_expired_states(db: Session) -> int:
    deleted = (
        db.query(OAuthState)
        .filter(OAuthState.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
