import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from channel_sync.database import SessionLocal
from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount
from channel_sync.models_sqlalchemy.workers import BackgroundWorker, SyncJob
from channel_sync.services import token_lifecycle
from channel_sync.services.ebay_auth import EbayTokenManager
from channel_sync.utils.dates import to_utc, utcnow
from channel_sync.workers import ChannelScheduler, build_schedulers

CADENCE = 30 * 60


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRefresh:
    """Stands in for the refresh routine: stamps last_sync_at like a successful run."""

    def __init__(self, clock, fail_for=(), gate=None):
        self.clock = clock
        self.fail_for = set(fail_for)
        self.gate = gate
        self.calls = []
        self.started = asyncio.Event()

    async def __call__(self, db, account_id, triggered_by="manual"):
        self.calls.append((account_id, triggered_by))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if account_id in self.fail_for:
            raise RuntimeError("marketplace exploded")
        account = db.query(ChannelAccount).filter(ChannelAccount.id == account_id).one()
        account.last_sync_at = self.clock()
        db.commit()


def _scheduler(refresh, clock, channels=(Channel.SHOPIFY, Channel.EBAY)):
    return ChannelScheduler(
        "test_scheduler",
        channels,
        tick_seconds=60,
        cadence_seconds=CADENCE,
        session_factory=SessionLocal,
        refresh=refresh,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_tick_dispatches_due_active_accounts_of_its_channels(db, make_account):
    shop = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    seller = make_account(Channel.EBAY, "seller-one")
    make_account(Channel.EBAY, "seller-two", status="inactive")
    make_account(Channel.AMAZON, "A1SELLER")
    clock = FakeClock()
    refresh = FakeRefresh(clock)

    result = await _scheduler(refresh, clock).run_tick()

    assert sorted(result.dispatched) == sorted([shop.id, seller.id])
    assert result.failed == []
    assert {triggered_by for _, triggered_by in refresh.calls} == {"scheduler"}


@pytest.mark.asyncio
async def test_recently_synced_account_waits_for_its_cadence(db, make_account):
    account = make_account()
    clock = FakeClock()
    refresh = FakeRefresh(clock)
    scheduler = _scheduler(refresh, clock)

    first = await scheduler.run_tick()
    clock.advance(minutes=10)
    second = await scheduler.run_tick()
    clock.advance(minutes=21)
    third = await scheduler.run_tick()

    assert first.dispatched == [account.id]
    assert second.skipped == [account.id]
    assert second.dispatched == []
    assert third.dispatched == [account.id]
    assert len(refresh.calls) == 2


@pytest.mark.asyncio
async def test_one_failing_account_does_not_affect_the_others(db, make_account):
    broken = make_account(Channel.EBAY, "broken-seller")
    healthy = make_account(Channel.EBAY, "healthy-seller")
    clock = FakeClock()
    refresh = FakeRefresh(clock, fail_for={broken.id})
    scheduler = _scheduler(refresh, clock)

    result = await scheduler.run_tick()

    assert result.failed == [broken.id]
    assert result.dispatched == [healthy.id]

    # The failed account never got a last_sync_at, so it is retried next tick.
    clock.advance(minutes=1)
    retry = await scheduler.run_tick()
    assert retry.failed == [broken.id]
    assert retry.skipped == [healthy.id]


@pytest.mark.asyncio
async def test_account_in_flight_is_not_dispatched_again(db, make_account):
    account = make_account()
    clock = FakeClock()
    gate = asyncio.Event()
    refresh = FakeRefresh(clock, gate=gate)
    scheduler = _scheduler(refresh, clock)

    slow_tick = asyncio.create_task(scheduler.run_tick())
    await asyncio.wait_for(refresh.started.wait(), timeout=1)

    overlapping = await scheduler.run_tick()
    gate.set()
    finished = await slow_tick

    assert overlapping.skipped == [account.id]
    assert overlapping.dispatched == []
    assert finished.dispatched == [account.id]
    assert len(refresh.calls) == 1


@pytest.mark.asyncio
async def test_loop_runs_ticks_and_records_a_heartbeat(db, make_account):
    make_account()
    clock = FakeClock()
    refresh = FakeRefresh(clock)
    scheduler = _scheduler(refresh, clock)

    scheduler.start()
    assert scheduler.running
    await asyncio.wait_for(refresh.started.wait(), timeout=1)
    await scheduler.stop()

    assert not scheduler.running
    db.expire_all()
    worker = db.query(BackgroundWorker).filter(BackgroundWorker.worker_name == "test_scheduler").one()
    assert worker.last_status == "ok"
    assert worker.runs_ok_in_row == 1
    assert worker.interval_seconds == 60


def test_default_schedulers_split_amazon_from_the_rest():
    marketplace, amazon = build_schedulers()
    assert set(marketplace.channels) == {Channel.SHOPIFY, Channel.EBAY}
    assert amazon.channels == (Channel.AMAZON,)
    assert amazon.cadence_seconds >= marketplace.cadence_seconds


@pytest.mark.asyncio
async def test_tick_refreshes_a_token_that_is_about_to_expire(db, make_account, monkeypatch):
    account = make_account(Channel.EBAY, "seller-one", refresh_token="R1", expires_in=30, orders_in=False)
    old_expiry = to_utc(account.access_token_expires_at)
    token_calls = []

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        token_calls.append(request)
        return httpx.Response(200, json={
            "access_token": "A2",
            "expires_in": 7200,
            "refresh_token": "R2",
            "refresh_token_expires_in": 47304000,
        })

    monkeypatch.setitem(
        token_lifecycle._managers, Channel.EBAY, EbayTokenManager(transport=httpx.MockTransport(token_endpoint))
    )
    scheduler = ChannelScheduler(
        "token_scheduler", (Channel.EBAY,), tick_seconds=60, cadence_seconds=CADENCE, session_factory=SessionLocal
    )

    result = await scheduler.run_tick()

    assert result.dispatched == [account.id]
    assert len(token_calls) == 1
    assert token_calls[0].method == "POST"
    assert parse_qs(token_calls[0].content.decode())["refresh_token"] == ["R1"]

    db.expire_all()
    assert account.refresh_token == "R2"
    assert account.access_token == "A2"
    assert to_utc(account.access_token_expires_at) > old_expiry + timedelta(hours=1)
    assert account.last_sync_at is not None
    assert db.query(SyncJob).one().status == "completed"
