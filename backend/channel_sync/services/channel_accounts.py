from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from channel_sync.models.channel_account import ChannelAccountCreate, ChannelAccountFlagsUpdate
from channel_sync.models.tokens import TokenResponse
from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.services.errors import AccountNotFound
from channel_sync.utils.dates import to_utc, utcnow
from channel_sync.utils.logger import logger


class ChannelAccountService:
    """Credential store access for ChannelAccount rows.

    Reads by id or by (seller, channel, external id), writes via upsert on that
    natural key, deletes by id. Token refresh and last-sync stamping go through
    here so there is a single place that touches those columns.
    """

    def get_account(self, db: Session, account_id: str) -> Optional[ChannelAccount]:
        return db.query(ChannelAccount).filter(ChannelAccount.id == account_id).first()

    def require_account(self, db: Session, account_id: str) -> ChannelAccount:
        account = self.get_account(db, account_id)
        if account is None:
            raise AccountNotFound(f"Channel account {account_id} not found")
        return account

    def get_by_natural_key(
        self, db: Session, user_id: str, channel: str, external_id: str
    ) -> Optional[ChannelAccount]:
        return (
            db.query(ChannelAccount)
            .filter(
                ChannelAccount.user_id == user_id,
                ChannelAccount.channel == channel,
                ChannelAccount.external_id == external_id,
            )
            .first()
        )

    def find_by_external_id(self, db: Session, channel: str, external_id: str) -> List[ChannelAccount]:
        """All accounts (any seller) connected to the given marketplace identity."""
        return (
            db.query(ChannelAccount)
            .filter(ChannelAccount.channel == channel, ChannelAccount.external_id == external_id)
            .all()
        )

    def list_active(self, db: Session, channels: Iterable[str]) -> List[ChannelAccount]:
        return (
            db.query(ChannelAccount)
            .filter(ChannelAccount.channel.in_(list(channels)), ChannelAccount.status == "active")
            .order_by(ChannelAccount.created_at.asc())
            .all()
        )

    def upsert_account(
        self,
        db: Session,
        user_id: str,
        account_data: ChannelAccountCreate,
        tokens: Optional[TokenResponse] = None,
    ) -> ChannelAccount:
        """Create or update the account for (seller, channel, external id).

        Reconnecting an inactive account re-activates it and clears the
        failure reason.
        """
        account = self.get_by_natural_key(db, user_id, account_data.channel, account_data.external_id)
        created = account is None
        if created:
            account = ChannelAccount(
                user_id=user_id,
                channel=account_data.channel,
                external_id=account_data.external_id,
            )
            db.add(account)

        if account_data.display_name is not None:
            account.display_name = account_data.display_name
        if account_data.region is not None:
            account.region = account_data.region
        if account_data.marketplace_ids is not None:
            account.marketplace_ids = list(account_data.marketplace_ids)
        account.status = "active"
        account.status_reason = None

        if tokens is not None:
            self._apply_tokens(account, tokens)

        db.commit()
        db.refresh(account)
        logger.info(
            "%s channel account id=%s channel=%s external_id=%s",
            "Created" if created else "Updated",
            account.id,
            account.channel,
            account.external_id,
        )
        return account

    def save_tokens(self, db: Session, account: ChannelAccount, tokens: TokenResponse) -> ChannelAccount:
        """Persist a refreshed token set in one commit.

        When the token endpoint does not rotate the refresh token, the stored
        one is kept.
        """
        self._apply_tokens(account, tokens)
        db.commit()
        db.refresh(account)
        return account

    def _apply_tokens(self, account: ChannelAccount, tokens: TokenResponse) -> None:
        now = utcnow()
        account.access_token = tokens.access_token
        if tokens.refresh_token:
            account.refresh_token = tokens.refresh_token
        account.access_token_expires_at = (
            now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        )
        if tokens.refresh_token_expires_in:
            account.refresh_token_expires_at = now + timedelta(seconds=tokens.refresh_token_expires_in)
        account.last_refreshed_at = now
        account.refresh_error = None

    def record_refresh_error(self, db: Session, account: ChannelAccount, message: str) -> None:
        account.refresh_error = message
        db.commit()

    def update_flags(self, db: Session, account_id: str, updates: ChannelAccountFlagsUpdate) -> ChannelAccount:
        account = self.require_account(db, account_id)
        for field, value in updates.model_dump(exclude_none=True).items():
            setattr(account, field, value)
        db.commit()
        db.refresh(account)
        return account

    def mark_synced(self, db: Session, account: ChannelAccount, when: Optional[datetime] = None) -> None:
        account.last_sync_at = when or utcnow()
        db.commit()

    def deactivate(self, db: Session, account: ChannelAccount, reason: str) -> None:
        account.status = "inactive"
        account.status_reason = reason
        db.commit()
        logger.warning(
            "Deactivated channel account id=%s channel=%s reason=%s",
            account.id, account.channel, reason,
        )

    def delete_account(self, db: Session, account_id: str) -> bool:
        deleted = db.query(ChannelAccount).filter(ChannelAccount.id == account_id).delete()
        db.commit()
        return bool(deleted)

    @staticmethod
    def seconds_since_sync(account: ChannelAccount, now: Optional[datetime] = None) -> Optional[float]:
        last = to_utc(account.last_sync_at)
        if last is None:
            return None
        return ((now or utcnow()) - last).total_seconds()


channel_account_service = ChannelAccountService()
