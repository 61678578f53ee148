"""Position reconciler: bring local snapshots back in line with the venue.

Venue state always wins. The snapshot version is read before the venue is
queried and the overwrite is a compare-and-swap on that version, so a fill
recorded while the venue call was in flight is never clobbered with
pre-trade data.

Also resolves trades left pending by an executor timeout:

1. Venue position moved toward the trade's target → the order landed.
2. Venue position unchanged → it did not; the retry queue takes it back.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from perpbot.config import Settings
from perpbot.engine.executor import TradeExecutor
from perpbot.engine.ledger import TradeLedger
from perpbot.engine.locks import BotLockRegistry
from perpbot.engine.positions import PositionBook
from perpbot.engine.retry_queue import RetryQueue
from perpbot.models.bot import Bot
from perpbot.models.retry_entry import RetryEntry
from perpbot.models.trade_record import TradeRecord
from perpbot.services.markets import MarketRegistry
from perpbot.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        executor: TradeExecutor,
        positions: PositionBook,
        ledger: TradeLedger,
        retry_queue: RetryQueue,
        locks: BotLockRegistry,
        markets: MarketRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.settings = settings
        self.executor = executor
        self.positions = positions
        self.ledger = ledger
        self.retry_queue = retry_queue
        self.locks = locks
        self.markets = markets
        self.clock = clock
        self.dust = settings.dust_threshold

    async def reconcile(self, bot_id: int) -> dict:
        # The lock is held for the whole pass so no fill can land between the
        # venue read and the overwrite
        async with self.locks.try_hold(bot_id) as held:
            if not held:
                logger.info(f"[reconcile] bot {bot_id}: execution in flight, skipping this pass")
                return {"bot_id": bot_id, "status": "skipped", "resolved_trades": 0,
                        "reason": "execution in flight"}
            return await self._reconcile_locked(bot_id)

    async def _reconcile_locked(self, bot_id: int) -> dict:
        result = {"bot_id": bot_id, "status": "ok", "resolved_trades": 0}

        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            if bot is None:
                return {**result, "status": "skipped", "reason": "bot not found"}
            session.expunge(bot)

        if bot.subaccount_index is None:
            # No sub-account means no order could have been placed
            resolved = await self._resolve_unprovisioned(bot)
            return {**result, "status": "skipped", "reason": "no sub-account", "resolved_trades": resolved}

        market = self.markets.get(bot.market)
        if market is None:
            return {**result, "status": "error", "reason": f"market {bot.market} not configured"}

        # Version first, venue second
        snap = self.positions.get_or_create(bot.id, market.symbol)
        version = snap.version

        try:
            account = await self.executor.get_account(bot.id)
        except Exception as e:
            logger.error(f"[reconcile] bot {bot_id}: venue read failed: {e}")
            return {**result, "status": "error", "reason": str(e)}

        venue_size = account.positions.get(market.market_index, 0.0) if account else 0.0
        venue_entry = account.entry_prices.get(market.market_index, 0.0) if account else 0.0
        equity = account.equity if account else None
        result.update(local_size=snap.base_size, venue_size=venue_size, equity=equity)

        result["resolved_trades"] = await self._resolve_pending_trades(bot, snap.base_size, venue_size, venue_entry)

        if abs(snap.base_size - venue_size) > self.dust:
            note = (
                f"Reconciled {market.symbol}: local {snap.base_size:g} → venue {venue_size:g}"
            )
            if self.positions.overwrite(
                bot.id, market.symbol, version, venue_size, venue_entry, note=note, equity=equity
            ):
                logger.warning(f"[reconcile] bot {bot_id}: {note}")
                self.ledger.log_event(
                    bot.id, "reconcile", note, level="warning",
                    details={"local_size": snap.base_size, "venue_size": venue_size,
                             "venue_entry_price": venue_entry, "equity": equity},
                )
                result["status"] = "corrected"
            else:
                result["status"] = "conflict"
        else:
            if not self.positions.touch_reconciled(bot.id, market.symbol, version, equity):
                result["status"] = "conflict"

        return result

    def _needs_reconcile(self, bot_id: int) -> list[TradeRecord]:
        with Session(self.engine) as session:
            trades = session.exec(
                select(TradeRecord)
                .where(TradeRecord.bot_id == bot_id, TradeRecord.needs_reconcile == True)  # noqa: E712
                .order_by(TradeRecord.created_at)
            ).all()
            for t in trades:
                session.expunge(t)
            return list(trades)

    async def _resolve_unprovisioned(self, bot: Bot) -> int:
        trades = self._needs_reconcile(bot.id)
        for trade in trades:
            logger.info(f"[reconcile] bot {bot.id}: timed-out trade {trade.id} never reached the venue")
            self.ledger.mark_pending(trade.id, "not executed (no sub-account)", "timeout")
            await self.retry_queue.resolve_reconciling(trade.id, executed=False)
        return len(trades)

    async def _resolve_pending_trades(self, bot: Bot, local_size: float, venue_size: float,
                                      venue_entry: float) -> int:
        trades = self._needs_reconcile(bot.id)

        for trade in trades:
            before = trade.pre_trade_size if trade.pre_trade_size is not None else local_size
            if trade.side == "close":
                landed = abs(venue_size) < abs(before) - self.dust
            elif trade.side == "long":
                landed = venue_size > before + self.dust
            else:
                landed = venue_size < before - self.dust

            if landed:
                observed = abs(venue_size - before)
                logger.info(f"[reconcile] bot {bot.id}: timed-out trade {trade.id} did execute ({observed:g})")
                self.ledger.mark_reconciled(trade.id, observed, venue_entry)
                self.ledger.log_event(bot.id, "reconcile", f"Trade {trade.id} confirmed on venue after timeout")
                await self.retry_queue.resolve_reconciling(trade.id, executed=True)
            else:
                logger.info(f"[reconcile] bot {bot.id}: timed-out trade {trade.id} did not execute")
                self.ledger.mark_pending(trade.id, "not executed (confirmed by reconciliation)", "timeout")
                await self.retry_queue.resolve_reconciling(trade.id, executed=False)
        return len(trades)

    async def reconcile_all(self) -> list[dict]:
        with Session(self.engine) as session:
            bot_ids = set(session.exec(
                select(Bot.id).where(Bot.is_active == True, Bot.subaccount_index != None)  # noqa: E711,E712
            ).all())
            # Timed-out trades are resolved whatever state their bot is in
            bot_ids.update(session.exec(
                select(TradeRecord.bot_id).where(TradeRecord.needs_reconcile == True).distinct()  # noqa: E712
            ).all())
            bot_ids.update(session.exec(
                select(RetryEntry.bot_id).where(RetryEntry.status == "reconciling").distinct()
            ).all())

        results = []
        for bot_id in sorted(bot_ids):
            try:
                results.append(await self.reconcile(bot_id))
            except Exception as e:
                logger.error(f"[reconcile] bot {bot_id} failed: {e}", exc_info=True)
                results.append({"bot_id": bot_id, "status": "error", "reason": str(e)})
        corrected = sum(1 for r in results if r["status"] == "corrected")
        if results:
            logger.info(f"[reconcile] Pass over {len(results)} bots, {corrected} corrected")
        return results

    async def reconcile_if_stale(self, bot_id: int) -> dict:
        """Reconcile only if the last pass is older than the reconcile interval."""
        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            market = self.markets.get(bot.market) if bot else None
        if market is not None:
            snap = self.positions.get(bot_id, market.symbol)
            last = as_utc(snap.reconciled_at) if snap else None
            if last and self.clock() - last < timedelta(seconds=self.settings.reconcile_interval_seconds):
                return {"bot_id": bot_id, "status": "fresh", "reconciled_at": last.isoformat()}
        return await self.reconcile(bot_id)
