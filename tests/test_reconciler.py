"""Tests for the position reconciler."""

import asyncio

import pytest
from sqlmodel import Session, select

from conftest import SOL_INDEX, get_row
from perpbot.models.bot_event import BotEvent
from perpbot.models.retry_entry import RetryEntry
from perpbot.models.trade_record import TradeRecord


def _snapshot(runtime, bot):
    snap = runtime.positions.get(bot.id, "SOL")
    return snap.base_size, snap.avg_entry_price, snap.version


@pytest.mark.asyncio
async def test_drift_is_overwritten_from_venue(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=0.7, entry=148.0)
    runtime.positions.apply_fill(bot.id, "SOL", 0.66, 150.0)

    result = await runtime.reconciler.reconcile(bot.id)

    assert result["status"] == "corrected"
    snap = runtime.positions.get(bot.id, "SOL")
    assert snap.base_size == pytest.approx(0.7)
    assert snap.avg_entry_price == 148.0
    assert snap.equity == 300.0
    with Session(runtime.engine) as session:
        events = session.exec(select(BotEvent).where(BotEvent.action == "reconcile")).all()
    assert len(events) == 1
    assert events[0].details["venue_size"] == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_second_pass_changes_nothing(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=-1.2, entry=155.0)

    first = await runtime.reconciler.reconcile(bot.id)
    after_first = _snapshot(runtime, bot)
    second = await runtime.reconciler.reconcile(bot.id)

    assert first["status"] == "corrected"
    assert second["status"] == "ok"
    assert _snapshot(runtime, bot) == after_first


@pytest.mark.asyncio
async def test_fill_during_venue_read_is_not_clobbered(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)  # venue still flat

    def fill_lands_mid_read():
        venue.on_get_account = None
        runtime.positions.apply_fill(bot.id, "SOL", 0.66, 150.0)

    venue.on_get_account = fill_lands_mid_read

    result = await runtime.reconciler.reconcile(bot.id)

    assert result["status"] == "conflict"
    assert runtime.positions.get(bot.id, "SOL").base_size == pytest.approx(0.66)


@pytest.mark.asyncio
async def test_skips_bot_with_execution_in_flight(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=1.0, entry=150.0)

    async with runtime.locks.hold(bot.id):
        result = await runtime.reconciler.reconcile(bot.id)

    assert result["status"] == "skipped"
    assert runtime.positions.get(bot.id, "SOL") is None


@pytest.mark.asyncio
async def test_trade_arriving_mid_pass_waits_for_it(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    index = fund_bot(bot)  # venue flat
    venue.fill_price = 150.0
    venue.read_delay = 0.05

    reconcile = asyncio.create_task(runtime.reconciler.reconcile(bot.id))
    await asyncio.sleep(0)  # pass holds the bot and is mid venue read
    body = {"action": "buy", "contracts": "33", "symbol": "SOL"}
    trade = await runtime.pipeline.process(bot.id, body, "s3cret")
    result = await reconcile

    assert result["venue_size"] == 0.0
    assert trade["status"] == "executed"
    venue_size = venue.accounts[index].positions[SOL_INDEX]
    assert runtime.positions.get(bot.id, "SOL").base_size == pytest.approx(venue_size)


@pytest.mark.asyncio
async def test_pass_started_during_trade_is_skipped(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    index = fund_bot(bot)
    venue.fill_price = 150.0
    venue.read_delay = 0.05

    body = {"action": "buy", "contracts": "33", "symbol": "SOL"}
    trade = asyncio.create_task(runtime.pipeline.process(bot.id, body, "s3cret"))
    await asyncio.sleep(0)
    result = await runtime.reconciler.reconcile(bot.id)
    await trade

    assert result["status"] == "skipped"
    venue_size = venue.accounts[index].positions[SOL_INDEX]
    assert runtime.positions.get(bot.id, "SOL").base_size == pytest.approx(venue_size)


@pytest.mark.asyncio
async def test_skips_bot_without_subaccount(runtime, make_bot):
    bot = make_bot()
    result = await runtime.reconciler.reconcile(bot.id)
    assert result["status"] == "skipped"
    assert result["reason"] == "no sub-account"


@pytest.mark.asyncio
async def test_reconcile_all_covers_provisioned_bots(runtime, make_bot, fund_bot):
    funded = make_bot(name="a")
    fund_bot(funded)
    make_bot(name="b")
    results = await runtime.reconciler.reconcile_all()
    assert [r["bot_id"] for r in results] == [funded.id]


@pytest.mark.asyncio
async def test_recent_pass_is_fresh(runtime, make_bot, fund_bot, clock):
    bot = make_bot()
    fund_bot(bot)
    await runtime.reconciler.reconcile(bot.id)

    assert (await runtime.reconciler.reconcile_if_stale(bot.id))["status"] == "fresh"
    clock.advance(runtime.settings.reconcile_interval_seconds + 1)
    assert (await runtime.reconciler.reconcile_if_stale(bot.id))["status"] == "ok"


# ---------------------------------------------------------------------------
# Timed-out trades
# ---------------------------------------------------------------------------

def _timed_out_open(runtime, bot, pre_trade_size=0.0):
    trade_id = runtime.ledger.open_trade(bot.id, "SOL", "long", 0.66, 99.0, reduce_only=False)
    runtime.ledger.mark_pending(trade_id, "timed out", "timeout", needs_reconcile=True,
                                pre_trade_size=pre_trade_size)
    entry_id = runtime.retry_queue.enqueue(trade_id, bot.id, "SOL", "long", 0.66, "timed out",
                                           notional=99.0, status="reconciling")
    return trade_id, entry_id


@pytest.mark.asyncio
async def test_timed_out_trade_that_landed_is_executed(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=0.66, entry=150.0)
    trade_id, entry_id = _timed_out_open(runtime, bot)

    result = await runtime.reconciler.reconcile(bot.id)

    assert result["resolved_trades"] == 1
    trade = get_row(runtime, TradeRecord, trade_id)
    assert trade.status == "executed"
    assert trade.needs_reconcile is False
    assert trade.base_size == pytest.approx(0.66)
    assert get_row(runtime, RetryEntry, entry_id).status == "succeeded"
    assert runtime.positions.get(bot.id, "SOL").base_size == pytest.approx(0.66)


@pytest.mark.asyncio
async def test_timed_out_trade_that_missed_goes_back_to_retry(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    trade_id, entry_id = _timed_out_open(runtime, bot)

    await runtime.reconciler.reconcile(bot.id)

    trade = get_row(runtime, TradeRecord, trade_id)
    assert trade.status == "pending"
    assert trade.needs_reconcile is False
    entry = get_row(runtime, RetryEntry, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 2
    assert venue.accounts[200 + bot.id].positions.get(SOL_INDEX) is None


@pytest.mark.asyncio
async def test_timeout_before_subaccount_saved_goes_back_to_retry(runtime, venue, make_bot):
    bot = make_bot(is_active=False)  # no sub-account, and no longer active
    trade_id, entry_id = _timed_out_open(runtime, bot)

    results = await runtime.reconciler.reconcile_all()

    assert [r["bot_id"] for r in results] == [bot.id]
    assert results[0]["resolved_trades"] == 1
    trade = get_row(runtime, TradeRecord, trade_id)
    assert trade.status == "pending"
    assert trade.needs_reconcile is False
    entry = get_row(runtime, RetryEntry, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 2
    assert venue.orders == []
