"""Polling scheduler for channel accounts.

One :class:`ChannelScheduler` per channel family wakes every ``tick_seconds``
and, for each active account whose last successful sync is older than
``cadence_seconds``, runs the shared refresh routine. Accounts are processed
concurrently, each in its own DB session; an account already being refreshed
by this scheduler is never dispatched a second time.

A heartbeat is recorded in the BackgroundWorker table under the scheduler's
name so operators can see when the loop last ran.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from channel_sync.models_sqlalchemy import SessionLocal
from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.models_sqlalchemy.workers import BackgroundWorker
from channel_sync.services.channel_accounts import channel_account_service
from channel_sync.services.channel_refresh import run_channel_refresh
from channel_sync.utils.dates import utcnow
from channel_sync.utils.logger import logger

RefreshRoutine = Callable[..., Awaitable[object]]


@dataclass
class TickResult:
    dispatched: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ChannelScheduler:
    def __init__(
        self,
        name: str,
        channels: Iterable[str],
        *,
        tick_seconds: int,
        cadence_seconds: int,
        session_factory=SessionLocal,
        refresh: RefreshRoutine = run_channel_refresh,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.channels = tuple(channels)
        self.tick_seconds = tick_seconds
        self.cadence_seconds = cadence_seconds
        self._session_factory = session_factory
        self._refresh = refresh
        self._clock = clock
        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_due(self, account: ChannelAccount, now: datetime) -> bool:
        elapsed = channel_account_service.seconds_since_sync(account, now)
        return elapsed is None or elapsed >= self.cadence_seconds

    async def run_tick(self) -> TickResult:
        """One pass over every active account of this scheduler's channels."""
        result = TickResult()
        now = self._clock()

        db = self._session_factory()
        try:
            accounts = channel_account_service.list_active(db, self.channels)
            due: List[str] = []
            for account in accounts:
                if account.id in self._in_flight or not self.is_due(account, now):
                    result.skipped.append(account.id)
                    continue
                due.append(account.id)
        finally:
            db.close()

        if not due:
            logger.debug("[scheduler] %s tick: nothing due (%d skipped)", self.name, len(result.skipped))
            return result

        self._in_flight.update(due)
        try:
            outcomes = await asyncio.gather(
                *(self._refresh_account(account_id) for account_id in due),
                return_exceptions=True,
            )
        finally:
            self._in_flight.difference_update(due)

        for account_id, outcome in zip(due, outcomes):
            if outcome is True:
                result.dispatched.append(account_id)
            else:
                result.failed.append(account_id)

        logger.info(
            "[scheduler] %s tick: ok=%d failed=%d skipped=%d",
            self.name, len(result.dispatched), len(result.failed), len(result.skipped),
        )
        return result

    async def _refresh_account(self, account_id: str) -> bool:
        db = self._session_factory()
        try:
            await self._refresh(db, account_id, triggered_by="scheduler")
            return True
        except Exception as exc:
            logger.error(
                "[scheduler] %s refresh failed for account=%s: %s",
                self.name, account_id, exc, exc_info=True,
            )
            return False
        finally:
            db.close()

    def _heartbeat(self, **fields) -> None:
        db = self._session_factory()
        try:
            worker = (
                db.query(BackgroundWorker)
                .filter(BackgroundWorker.worker_name == self.name)
                .one_or_none()
            )
            if worker is None:
                worker = BackgroundWorker(worker_name=self.name)
                db.add(worker)
            worker.interval_seconds = self.tick_seconds
            for key, value in fields.items():
                setattr(worker, key, value)
            if fields.get("last_status") == "ok":
                worker.runs_ok_in_row = (worker.runs_ok_in_row or 0) + 1
                worker.runs_error_in_row = 0
            elif fields.get("last_status") == "error":
                worker.runs_error_in_row = (worker.runs_error_in_row or 0) + 1
                worker.runs_ok_in_row = 0
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning("[scheduler] %s heartbeat not recorded: %s", self.name, exc)
        finally:
            db.close()

    async def _loop(self) -> None:
        logger.info(
            "[scheduler] %s started channels=%s tick=%ss cadence=%ss",
            self.name, ",".join(self.channels), self.tick_seconds, self.cadence_seconds,
        )
        while not self._stopping.is_set():
            self._heartbeat(last_started_at=utcnow(), last_status="running", last_error_message=None)
            try:
                await self.run_tick()
                self._heartbeat(last_finished_at=utcnow(), last_status="ok")
            except Exception as exc:
                # Listing accounts failed (DB down etc.); try again next tick.
                logger.error("[scheduler] %s tick failed: %s", self.name, exc, exc_info=True)
                self._heartbeat(last_finished_at=utcnow(), last_status="error", last_error_message=str(exc)[:2000])
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[scheduler] %s stopped", self.name)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"scheduler:{self.name}")

    async def stop(self) -> None:
        """Stop after the current tick; in-flight refreshes are allowed to finish."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
