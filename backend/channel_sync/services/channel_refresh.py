"""The per-channel refresh routine.

Scheduler ticks, "refresh now" requests and freshly completed OAuth callbacks
all call :func:`run_channel_refresh`, so an account is synced the same way
whatever triggered it. Each run:

1. makes sure the account has a usable access token (refreshing it if it is
   about to expire);
2. pulls the channel's recent orders / catalog / inventory through the
   reconciliation pipeline (skipped when the account's ``orders_in`` flag is
   off);
3. records a SyncJob row and, only on success, stamps ``last_sync_at``.

Errors are recorded on the SyncJob and re-raised; the scheduler catches them
per account, manual callers get them as typed failures.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict

from sqlalchemy.orm import Session

from channel_sync.models.sync import RefreshResult
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.models_sqlalchemy.workers import SyncJob
from channel_sync.services.amazon_sync import pull_amazon_account
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.ebay_sync import pull_ebay_account
from channel_sync.services.errors import CredentialMissing, UnsupportedChannel
from channel_sync.services.reconciliation import ApplySummary
from channel_sync.services.shopify_sync import pull_shopify_account
from channel_sync.services.token_lifecycle import get_token_manager
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger

Puller = Callable[[Session, ChannelAccount], Awaitable[ApplySummary]]

PULLERS: Dict[str, Puller] = {
    Channel.SHOPIFY: pull_shopify_account,
    Channel.EBAY: pull_ebay_account,
    Channel.AMAZON: pull_amazon_account,
}

TRIGGERS = ("scheduler", "manual", "oauth")


async def run_channel_refresh(db: Session, account_id: str, triggered_by: str = "manual") -> RefreshResult:
    account = channel_account_service.require_account(db, account_id)
    puller = PULLERS.get(account.channel)
    if puller is None:
        raise UnsupportedChannel(f"No refresh routine for channel {account.channel!r}")
    if not account.is_active:
        raise CredentialMissing(
            f"Channel account {account.id} is inactive ({account.status_reason or 'disconnected'}); reconnect required",
            account_id=account.id,
        )

    job = SyncJob(channel_account_id=account.id, channel=account.channel, triggered_by=triggered_by, status="running")
    db.add(job)
    db.commit()
    db.refresh(job)

    logger.info(
        "[refresh] START channel=%s account=%s trigger=%s job=%s",
        account.channel, account.id, triggered_by, job.id,
    )
    try:
        await get_token_manager(account.channel).acquire_valid_credential(db, account)
        if account.orders_in:
            summary = await puller(db, account)
        else:
            summary = ApplySummary()
            logger.info("[refresh] orders_in disabled for account=%s; token checked only", account.id)
    except Exception as exc:
        db.rollback()
        job.status = "error"
        job.error_message = str(exc)[:2000]
        job.finished_at = utcnow()
        db.commit()
        logger.error(
            "[refresh] FAILED channel=%s account=%s trigger=%s error=%s",
            account.channel, account.id, triggered_by, exc,
        )
        raise

    job.status = "completed"
    job.summary = summary.as_dict()
    job.finished_at = utcnow()
    db.commit()
    channel_account_service.mark_synced(db, account, job.finished_at)

    logger.info(
        "[refresh] DONE channel=%s account=%s trigger=%s orders=%d lines=%d skipped=%d",
        account.channel, account.id, triggered_by, summary.orders, summary.lines, summary.skipped,
    )
    return RefreshResult(
        account_id=account.id,
        channel=account.channel,
        sync_job_id=job.id,
        status=job.status,
        counts={k: v for k, v in summary.as_dict().items() if isinstance(v, int)},
        last_sync_at=account.last_sync_at,
    )
