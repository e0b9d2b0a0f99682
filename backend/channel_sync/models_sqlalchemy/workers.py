from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
import uuid

from . import Base
from .models import JsonPayload
from channel_sync.utils.dates import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class BackgroundWorker(Base):
    """Heartbeat + status row for the long-running scheduler loops.

    One row per loop (``worker_name``), updated at the start and end of every
    tick so an operator can tell when a loop last ran and whether it is stuck.
    """

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True, default=_uuid)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, default=0)
    runs_error_in_row = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SyncJob(Base):
    """Single execution of a channel refresh routine for one account.

    ``triggered_by`` is one of scheduler, manual, oauth. ``summary`` carries the
    per-entity counts reported by the routine.
    """

    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    channel_account_id = Column(
        String(36),
        ForeignKey("channel_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel = Column(String(32), nullable=False)
    triggered_by = Column(String(16), nullable=False, default="scheduler")

    status = Column(String(16), nullable=False, default="running")  # running, completed, error
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    summary = Column(JsonPayload, nullable=True)
    error_message = Column(Text, nullable=True)


class TokenRefreshLog(Base):
    """Per-account token refresh attempts for observability/debugging."""

    __tablename__ = "token_refresh_logs"

    id = Column(String(36), primary_key=True, default=_uuid)

    channel_account_id = Column(
        String(36),
        ForeignKey("channel_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    success = Column(Boolean, nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    old_expires_at = Column(DateTime(timezone=True), nullable=True)
    new_expires_at = Column(DateTime(timezone=True), nullable=True)
