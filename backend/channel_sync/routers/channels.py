from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from channel_sync.database import get_db
from channel_sync.models.channel_account import ChannelAccountFlagsUpdate, ChannelAccountResponse
from channel_sync.models.sync import RefreshResult
from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.routers.deps import get_current_user_id, http_error
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.channel_refresh import run_channel_refresh
from channel_sync.services.errors import AccountNotFound, ChannelSyncError
from channel_sync.utils.logger import logger

router = APIRouter(prefix="/api/v1/channel-accounts", tags=["Channel Accounts"])


def _owned_account(db: Session, account_id: str, user_id: str) -> ChannelAccount:
    account = channel_account_service.get_account(db, account_id)
    if account is None or account.user_id != user_id:
        raise http_error(AccountNotFound(f"Channel account {account_id} not found"))
    return account


@router.get("/", response_model=List[ChannelAccountResponse])
async def list_accounts(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    accounts = (
        db.query(ChannelAccount)
        .filter(ChannelAccount.user_id == user_id)
        .order_by(ChannelAccount.channel, ChannelAccount.created_at)
        .all()
    )
    return accounts


@router.get("/{account_id}", response_model=ChannelAccountResponse)
async def get_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _owned_account(db, account_id, user_id)


@router.patch("/{account_id}/flags", response_model=ChannelAccountResponse)
async def update_flags(
    account_id: str,
    updates: ChannelAccountFlagsUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    _owned_account(db, account_id, user_id)
    account = channel_account_service.update_flags(db, account_id, updates)
    logger.info("[channels] flags updated account=%s %s", account_id, updates.model_dump(exclude_none=True))
    return account


@router.post("/{account_id}/refresh", response_model=RefreshResult)
async def refresh_now(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Run the channel's refresh routine right away and report the outcome."""
    _owned_account(db, account_id, user_id)
    try:
        return await run_channel_refresh(db, account_id, triggered_by="manual")
    except ChannelSyncError as exc:
        raise http_error(exc)


@router.delete("/{account_id}")
async def disconnect_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    account = _owned_account(db, account_id, user_id)
    channel = account.channel
    if not channel_account_service.delete_account(db, account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    logger.info("[channels] disconnected channel=%s account=%s user=%s", channel, account_id, user_id)
    return {"success": True, "id": account_id}
