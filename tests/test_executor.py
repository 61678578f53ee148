"""Tests for the trade executor against a fake venue."""

import pytest
from sqlmodel import Session, select

from conftest import MASTER_ACCOUNT, SOL_INDEX, get_row
from perpbot.engine.error_classifier import ErrorClass
from perpbot.engine.executor import VenueCommand
from perpbot.models.bot import Bot
from perpbot.models.credential import Credential
from perpbot.models.orphaned_resource import OrphanedResource


def _open(bot_id, size=0.66, side="long", leverage=5):
    return VenueCommand(action="open", bot_id=bot_id, market_index=SOL_INDEX, side=side,
                        base_size=size, price=150.0, leverage=leverage)


def _orphans(runtime):
    with Session(runtime.engine) as session:
        return session.exec(select(OrphanedResource)).all()


# ---------------------------------------------------------------------------
# 1. Sub-account lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_open_creates_and_funds_subaccount(runtime, venue, make_bot):
    bot = make_bot(initial_deposit=300.0)
    result = await runtime.executor.execute(_open(bot.id))

    assert result.success
    db_bot = get_row(runtime, Bot, bot.id)
    assert db_bot.subaccount_index == 100
    assert db_bot.subaccount_funded is True
    assert venue.transfers == [(MASTER_ACCOUNT, 100, 300.0)]
    assert venue.accounts[100].positions[SOL_INDEX] == pytest.approx(0.66)
    assert venue.leverage_calls == [(SOL_INDEX, 5)]


@pytest.mark.asyncio
async def test_failed_deposit_keeps_subaccount_and_records_orphan(runtime, venue, make_bot):
    bot = make_bot(initial_deposit=300.0)
    venue.transfer_error = "transfer rejected"

    result = await runtime.executor.execute(_open(bot.id))

    assert not result.success
    db_bot = get_row(runtime, Bot, bot.id)
    assert db_bot.subaccount_index == 100  # not lost
    assert db_bot.subaccount_funded is False
    orphans = _orphans(runtime)
    assert [(o.kind, o.subaccount_index, o.status) for o in orphans] == [("unfunded_subaccount", 100, "pending")]
    assert venue.orders == []


@pytest.mark.asyncio
async def test_retried_funding_reuses_existing_subaccount(runtime, venue, make_bot):
    bot = make_bot(initial_deposit=300.0)
    venue.transfer_error = "transfer rejected"
    await runtime.executor.execute(_open(bot.id))

    venue.transfer_error = None
    result = await runtime.executor.execute(_open(bot.id))

    assert result.success
    assert venue.next_subaccount == 101  # no second sub-account
    assert len(_orphans(runtime)) == 1  # recorded once


@pytest.mark.asyncio
async def test_permanent_first_order_failure_records_funded_untraded(runtime, venue, make_bot):
    bot = make_bot(initial_deposit=300.0)
    venue.order_errors = ["invalid signature"]

    result = await runtime.executor.execute(_open(bot.id))

    assert result.error_class == ErrorClass.PERMANENT
    assert [o.kind for o in _orphans(runtime)] == ["funded_untraded"]


# ---------------------------------------------------------------------------
# 2. Close semantics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_sized_to_venue_position(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    index = fund_bot(bot, position=0.7, entry=140.0)
    # Local book believes 0.66; the venue holds 0.7
    runtime.positions.apply_fill(bot.id, "SOL", 0.66, 140.0)

    result = await runtime.executor.execute(
        VenueCommand(action="close", bot_id=bot.id, market_index=SOL_INDEX, price=150.0, reduce_only=True)
    )

    assert result.success
    assert result.pre_trade_size == pytest.approx(0.7)
    order = venue.orders[-1]
    assert order["base_amount"] == pytest.approx(0.7)
    assert order["reduce_only"] is True
    assert order["is_ask"] is True
    assert SOL_INDEX not in venue.accounts[index].positions


@pytest.mark.asyncio
async def test_close_of_short_buys_back(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=-1.5, entry=150.0)
    await runtime.executor.execute(
        VenueCommand(action="close", bot_id=bot.id, market_index=SOL_INDEX, price=150.0, reduce_only=True)
    )
    assert venue.orders[-1]["is_ask"] is False
    assert venue.orders[-1]["base_amount"] == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_close_when_flat_is_noop_success(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    result = await runtime.executor.execute(
        VenueCommand(action="close", bot_id=bot.id, market_index=SOL_INDEX, price=150.0, reduce_only=True)
    )
    assert result.success and result.noop
    assert venue.orders == []


@pytest.mark.asyncio
async def test_close_without_subaccount_is_noop(runtime, make_bot):
    bot = make_bot()
    result = await runtime.executor.execute(
        VenueCommand(action="close", bot_id=bot.id, market_index=SOL_INDEX, price=150.0)
    )
    assert result.success and result.noop


# ---------------------------------------------------------------------------
# 3. Fallback path, timeouts and errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_liquidity_failure_switches_to_limit_order(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    venue.order_errors = ["insufficient liquidity"]

    result = await runtime.executor.execute(_open(bot.id))

    assert result.success
    assert result.path == "limit_fallback"
    assert [o["market"] for o in venue.orders] == [True, False]
    # Limit leg uses the wider slippage bound
    assert venue.orders[1]["price"] > venue.orders[0]["price"]


@pytest.mark.asyncio
async def test_retry_class_error_does_not_use_fallback(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    venue.order_errors = ["503 Service Unavailable"]

    result = await runtime.executor.execute(_open(bot.id))

    assert not result.success
    assert result.error_class == ErrorClass.RETRY
    assert len(venue.orders) == 1


@pytest.mark.asyncio
async def test_timeout_is_ambiguous_not_failed(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    index = fund_bot(bot)
    venue.hang_after_fill = True

    result = await runtime.executor.execute(_open(bot.id))

    assert result.timed_out
    assert result.error_class == ErrorClass.RETRY
    # The order did land
    assert venue.accounts[index].positions[SOL_INDEX] == pytest.approx(0.66)


@pytest.mark.asyncio
async def test_undecryptable_credential_is_permanent(runtime, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    with Session(runtime.engine) as session:
        db_bot = session.get(Bot, bot.id)
        cred = session.get(Credential, db_bot.credential_id)
        cred.private_key_encrypted = "not-a-fernet-token"
        session.add(cred)
        session.commit()

    result = await runtime.executor.execute(_open(bot.id))
    assert not result.success
    assert result.error_class == ErrorClass.PERMANENT


@pytest.mark.asyncio
async def test_venue_client_closed_after_each_call(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    await runtime.executor.execute(_open(bot.id))
    assert venue.closed >= 1


# ---------------------------------------------------------------------------
# 4. Settle and sub-account sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_settle_is_acknowledged(runtime, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot)
    result = await runtime.executor.execute(VenueCommand(action="settle", bot_id=bot.id, market_index=SOL_INDEX))
    assert result.success


@pytest.mark.asyncio
async def test_delete_subaccount_sweeps_collateral(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    index = fund_bot(bot, equity=250.0)
    result = await runtime.executor.execute(VenueCommand(action="delete_subaccount", bot_id=bot.id))
    assert result.success
    assert venue.transfers[-1] == (index, MASTER_ACCOUNT, 250.0)


@pytest.mark.asyncio
async def test_delete_subaccount_refused_with_open_position(runtime, venue, make_bot, fund_bot):
    bot = make_bot()
    fund_bot(bot, position=1.0, entry=150.0)
    result = await runtime.executor.execute(VenueCommand(action="delete_subaccount", bot_id=bot.id))
    assert not result.success
    assert result.error_class == ErrorClass.PERMANENT
    assert venue.transfers == []
