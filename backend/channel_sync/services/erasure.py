"""Marketplace account-deletion (erasure) workflow.

Triggered when a marketplace notifies us that one of its users deleted their
account. Every ChannelAccount bound to that external identity is removed
together with the canonical data it brought in. The DeletionRequest row is
written first so every notification leaves an audit trail, even when
nothing matches.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from channel_sync.models.sync import ErasureResult
from channel_sync.models_sqlalchemy.models import (
    AuditOrderLine,
    Channel,
    ChannelAccount,
    CustomerExternal,
    DeletionRequest,
    InboundShipment,
    InventoryLevel,
    ItemExternal,
    Order,
    OrderLine,
    ShippingLabel,
)
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger

COUNT_KEYS = (
    "orders",
    "orderLines",
    "labels",
    "inboundShipments",
    "audit",
    "inventory",
    "items",
    "customers",
    "channelAccounts",
)


def _delete_account_data(db: Session, account: ChannelAccount, counts: Dict[str, int]) -> None:
    order_ids = [row.id for row in db.query(Order.id).filter(Order.channel_account_id == account.id)]

    if order_ids:
        counts["orderLines"] += (
            db.query(OrderLine)
            .filter(OrderLine.order_id.in_(order_ids))
            .delete(synchronize_session=False)
        )
    label_filter = ShippingLabel.channel_account_id == account.id
    if order_ids:
        label_filter = or_(label_filter, ShippingLabel.order_id.in_(order_ids))
    counts["labels"] += db.query(ShippingLabel).filter(label_filter).delete(synchronize_session=False)
    counts["inboundShipments"] += (
        db.query(InboundShipment)
        .filter(InboundShipment.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )

    counts["audit"] += (
        db.query(AuditOrderLine)
        .filter(AuditOrderLine.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )
    counts["inventory"] += (
        db.query(InventoryLevel)
        .filter(InventoryLevel.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )
    counts["items"] += (
        db.query(ItemExternal)
        .filter(ItemExternal.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )
    counts["customers"] += (
        db.query(CustomerExternal)
        .filter(CustomerExternal.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )
    counts["orders"] += (
        db.query(Order)
        .filter(Order.channel_account_id == account.id)
        .delete(synchronize_session=False)
    )
    counts["channelAccounts"] += (
        db.query(ChannelAccount)
        .filter(ChannelAccount.id == account.id)
        .delete(synchronize_session=False)
    )


def erase_external_identity(
    db: Session,
    external_user_id: str,
    provider: str = Channel.EBAY,
    payload: Optional[Dict[str, Any]] = None,
) -> ErasureResult:
    request = DeletionRequest(
        provider=provider,
        external_user_id=external_user_id,
        status="pending",
        payload=payload,
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    accounts = channel_account_service.find_by_external_id(db, provider, external_user_id)
    if not accounts:
        request.status = "no_match"
        request.detail = "No channel accounts found for external user id"
        request.completed_at = utcnow()
        db.commit()
        logger.warning(
            "[erasure] provider=%s external_user_id=%s no matching channel account",
            provider, external_user_id,
        )
        return ErasureResult(deleted=False, reason="no_match", deletion_request_id=request.id)

    counts = {key: 0 for key in COUNT_KEYS}
    try:
        for account in accounts:
            _delete_account_data(db, account, counts)
        request.status = "completed"
        request.counts = dict(counts)
        request.completed_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        logger.error(
            "[erasure] provider=%s external_user_id=%s failed; nothing was deleted",
            provider, external_user_id, exc_info=True,
        )
        request = db.query(DeletionRequest).filter(DeletionRequest.id == request.id).first()
        if request is not None:
            request.detail = "Erasure failed and was rolled back"
            db.commit()
        raise

    # Deleted accounts must not linger in the identity map.
    db.expire_all()
    logger.info(
        "[erasure] provider=%s external_user_id=%s accounts=%d counts=%s",
        provider, external_user_id, len(accounts), counts,
    )
    return ErasureResult(deleted=True, counts=counts, deletion_request_id=request.id)
