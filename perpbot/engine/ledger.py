"""Trade record lifecycle, failure accounting and bot event logging."""

import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session

from perpbot.config import Settings
from perpbot.engine.error_classifier import ErrorClass
from perpbot.engine.positions import PositionBook
from perpbot.models.bot import Bot
from perpbot.models.bot_event import BotEvent
from perpbot.models.trade_record import TradeRecord
from perpbot.services.telegram_bot import Notifier
from perpbot.utils.clock import utcnow

logger = logging.getLogger(__name__)


class TradeLedger:
    def __init__(self, engine: Engine, settings: Settings, positions: PositionBook, notifier: Notifier):
        self.engine = engine
        self.settings = settings
        self.positions = positions
        self.notifier = notifier

    def fee_for(self, notional: float) -> float:
        return abs(notional) * self.settings.taker_fee_bps / 10_000

    # ------------------------------------------------------------------
    # Trade records
    # ------------------------------------------------------------------

    def open_trade(
        self,
        bot_id: int,
        market: str,
        side: str,
        base_size: float,
        notional: float,
        reduce_only: bool,
        signal_id: int | None = None,
    ) -> int:
        with Session(self.engine) as session:
            trade = TradeRecord(
                bot_id=bot_id,
                signal_id=signal_id,
                market=market,
                side=side,
                base_size=base_size,
                notional=notional,
                reduce_only=reduce_only,
            )
            session.add(trade)
            session.commit()
            session.refresh(trade)
            return trade.id

    def get_trade(self, trade_id: int) -> TradeRecord | None:
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            if trade is not None:
                session.expunge(trade)
            return trade

    def mark_executed(
        self,
        trade_id: int,
        signed_delta: float,
        fill_price: float | None,
        signature: str | None,
        is_close: bool,
    ) -> TradeRecord:
        """Finalize a trade and fold it into the position snapshot."""
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            bot_id, market = trade.bot_id, trade.market

        size = abs(signed_delta)
        notional = size * fill_price if fill_price else trade.notional
        fee = self.fee_for(notional)
        if is_close:
            outcome = self.positions.zero(bot_id, market, fill_price, fee=fee, trade_id=trade_id)
        else:
            outcome = self.positions.apply_fill(
                bot_id, market, signed_delta, fill_price or 0.0, fee=fee, trade_id=trade_id
            )

        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            trade.status = "executed"
            trade.base_size = size
            trade.notional = notional
            trade.fill_price = fill_price
            trade.fee = fee
            trade.realized_pnl = outcome.realized_pnl if is_close or outcome.realized_pnl else None
            trade.tx_signature = signature
            trade.needs_reconcile = False
            trade.error_message = None
            trade.error_class = None
            trade.executed_at = utcnow()
            session.add(trade)
            session.commit()
            session.refresh(trade)
            session.expunge(trade)

        self.record_success(bot_id)
        logger.info(
            f"[bot {bot_id}] Trade {trade_id} executed: {trade.side} {size} {market} @ {fill_price}"
        )
        return trade

    def mark_noop(self, trade_id: int, message: str):
        """A close against a flat venue position: success with nothing traded."""
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            bot_id, market = trade.bot_id, trade.market
        self.positions.zero(bot_id, market, None, trade_id=trade_id)
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            trade.status = "executed"
            trade.base_size = 0.0
            trade.notional = 0.0
            trade.needs_reconcile = False
            trade.error_message = message
            trade.executed_at = utcnow()
            session.add(trade)
            session.commit()
        self.record_success(bot_id)

    def mark_reconciled(self, trade_id: int, observed_size: float, venue_entry_price: float | None):
        """A timed-out order that the venue shows as filled.

        The snapshot is left alone: the reconciler overwrites it from venue state.
        """
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            trade.status = "executed"
            trade.base_size = observed_size
            if venue_entry_price and trade.side != "close":
                trade.fill_price = venue_entry_price
                trade.notional = observed_size * venue_entry_price
            trade.fee = self.fee_for(trade.notional)
            trade.needs_reconcile = False
            trade.error_message = "confirmed by reconciliation after timeout"
            trade.executed_at = utcnow()
            session.add(trade)
            session.commit()
            bot_id = trade.bot_id
        self.record_success(bot_id)

    def mark_failed(self, trade_id: int, error: str, error_class: str | None):
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            trade.status = "failed"
            trade.error_message = error
            trade.error_class = error_class
            trade.needs_reconcile = False
            trade.executed_at = utcnow()
            session.add(trade)
            session.commit()

    def mark_pending(self, trade_id: int, error: str, error_class: str, needs_reconcile: bool = False,
                     pre_trade_size: float | None = None):
        """Trade stays pending: queued for retry, or outcome unknown after a timeout."""
        with Session(self.engine) as session:
            trade = session.get(TradeRecord, trade_id)
            trade.status = "pending"
            trade.error_message = error
            trade.error_class = error_class
            trade.needs_reconcile = needs_reconcile
            if pre_trade_size is not None:
                trade.pre_trade_size = pre_trade_size
            session.add(trade)
            session.commit()

    # ------------------------------------------------------------------
    # Bot health
    # ------------------------------------------------------------------

    def record_success(self, bot_id: int):
        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            if bot is not None and bot.consecutive_failures:
                bot.consecutive_failures = 0
                session.add(bot)
                session.commit()

    async def record_failure(self, bot_id: int, error: str, error_class: ErrorClass | str | None,
                             insufficient_collateral: bool = False):
        """Count a terminal failure, notify, and auto-pause when warranted."""
        paused_now = False
        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            if bot is None:
                return
            bot.consecutive_failures += 1
            reason = None
            if insufficient_collateral or "insufficient collateral" in (error or "").lower():
                reason = f"Insufficient collateral: {error}"
            elif bot.consecutive_failures >= self.settings.auto_pause_failure_threshold:
                reason = f"{bot.consecutive_failures} consecutive failed trades; last: {error}"

            if reason and bot.pause_reason is None:
                bot.pause_reason = reason
                bot.updated_at = utcnow()
                paused_now = True
            session.add(bot)
            session.commit()
            chat_id = bot.telegram_chat_id
            name = bot.name

        cls = error_class.value if isinstance(error_class, ErrorClass) else error_class
        self.log_event(bot_id, "trade_failed", f"Trade failed ({cls}): {error}", level="error")
        await self.notifier.notify(f"[{name}] Trade failed: {error}", chat_id=chat_id)

        if paused_now:
            logger.warning(f"[bot {bot_id}] Auto-paused: {reason}")
            self.log_event(bot_id, "auto_pause", reason, level="warning")
            await self.notifier.notify(f"[{name}] Bot paused: {reason}", chat_id=chat_id)

    def log_event(self, bot_id: int, action: str, message: str | None = None,
                  level: str = "info", details: dict | None = None):
        """Write a BotEvent entry."""
        with Session(self.engine) as session:
            session.add(BotEvent(bot_id=bot_id, level=level, action=action, message=message, details=details))
            session.commit()
