"""Persisted retry queue for trades that failed with a retryable error.

State lives entirely in ``retry_entry``. Sweeps claim rows with a
conditional UPDATE (pending → processing), so any number of sweepers, in
one process or several, never double-process an entry.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import case, func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from perpbot.config import Settings
from perpbot.engine.error_classifier import ErrorClass
from perpbot.engine.executor import ExecutionResult, TradeExecutor, VenueCommand
from perpbot.engine.ledger import TradeLedger
from perpbot.engine.locks import BotLockRegistry
from perpbot.models.bot import Bot
from perpbot.models.retry_entry import RetryEntry
from perpbot.services.market_data import PriceFeed
from perpbot.services.markets import MarketRegistry
from perpbot.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("exhausted", "succeeded")


class RetryQueue:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        executor: TradeExecutor,
        ledger: TradeLedger,
        locks: BotLockRegistry,
        markets: MarketRegistry,
        price_feed: PriceFeed,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
    ):
        self.engine = engine
        self.settings = settings
        self.executor = executor
        self.ledger = ledger
        self.locks = locks
        self.markets = markets
        self.price_feed = price_feed
        self.clock = clock
        self.rng = rng

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def backoff_seconds(self, attempt: int, priority: str = "normal") -> float:
        base = self.settings.retry_base_delay_seconds
        if priority == "critical":
            base /= 2
        return min(base * 2 ** attempt, self.settings.retry_max_delay_seconds)

    def next_retry_at(self, attempt: int, priority: str, previous: datetime | None = None) -> datetime:
        """Anchored on the later of now and the previous slot, so it only moves forward."""
        now = self.clock()
        anchor = max(now, as_utc(previous)) if previous is not None else now
        jitter = self.rng() * self.settings.retry_jitter_seconds
        return anchor + timedelta(seconds=self.backoff_seconds(attempt, priority) + jitter)

    def enqueue(
        self,
        trade_id: int,
        bot_id: int,
        market: str,
        side: str,
        base_size: float,
        error: str,
        notional: float = 0.0,
        reduce_only: bool = False,
        status: str = "pending",
    ) -> int:
        """Persist a retry entry for a failed first attempt (attempts=1)."""
        priority = "critical" if side == "close" or reduce_only else "normal"
        max_attempts = (
            self.settings.retry_max_attempts_critical
            if priority == "critical"
            else self.settings.retry_max_attempts
        )
        with Session(self.engine) as session:
            entry = RetryEntry(
                trade_id=trade_id,
                bot_id=bot_id,
                market=market,
                side=side,
                base_size=base_size,
                notional=notional,
                reduce_only=reduce_only,
                priority=priority,
                attempts=1,
                max_attempts=max_attempts,
                next_retry_at=self.next_retry_at(1, priority),
                last_error=error,
                status=status,
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            logger.info(
                f"[retry] Queued trade {trade_id} for bot {bot_id} ({side} {market}, {priority}), "
                f"next at {entry.next_retry_at:%H:%M:%S}: {error}"
            )
            return entry.id

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _claim(self, entry_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.execute(
                update(RetryEntry)
                .where(RetryEntry.id == entry_id, RetryEntry.status == "pending")
                .values(status="processing", updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount == 1

    def recover_stale(self) -> int:
        """Return entries stuck in processing (process died mid-retry) to pending."""
        cutoff = self.clock() - timedelta(seconds=self.settings.venue_call_timeout_seconds * 5)
        with Session(self.engine) as session:
            result = session.execute(
                update(RetryEntry)
                .where(RetryEntry.status == "processing", RetryEntry.updated_at < cutoff)
                .values(status="pending", updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            session.commit()
        if result.rowcount:
            logger.warning(f"[retry] Recovered {result.rowcount} entries stuck in processing")
        return result.rowcount

    def due_entries(self) -> list[RetryEntry]:
        now = self.clock()
        critical_first = case((RetryEntry.priority == "critical", 0), else_=1)
        with Session(self.engine) as session:
            entries = session.exec(
                select(RetryEntry)
                .where(RetryEntry.status == "pending", RetryEntry.next_retry_at <= now)
                .order_by(critical_first, RetryEntry.next_retry_at)
                .limit(self.settings.retry_sweep_batch_size)
            ).all()
            for e in entries:
                session.expunge(e)
            return list(entries)

    async def sweep(self) -> dict:
        """Claim and re-attempt every due entry. Returns per-outcome counts."""
        self.recover_stale()
        counts = {"claimed": 0, "succeeded": 0, "rescheduled": 0, "exhausted": 0, "reconciling": 0}
        for entry in self.due_entries():
            if not self._claim(entry.id):
                continue
            counts["claimed"] += 1
            try:
                async with self.locks.hold(entry.bot_id):
                    outcome = await self._process(entry)
            except Exception as e:
                logger.error(f"[retry] Entry {entry.id} crashed: {e}", exc_info=True)
                outcome = await self._fail_attempt(entry.id, f"internal error: {e}")
            counts[outcome] = counts.get(outcome, 0) + 1
        if counts["claimed"]:
            logger.info(f"[retry] Sweep: {counts}")
        return counts

    async def _process(self, entry: RetryEntry) -> str:
        with Session(self.engine) as session:
            bot = session.get(Bot, entry.bot_id)
            paused = bot is None or not bot.is_active or bot.pause_reason is not None

        if paused and entry.side != "close":
            # Closes still go through on a paused bot; opens do not
            return await self._exhaust(entry.id, "bot paused or inactive", ErrorClass.PERMANENT)

        market = self.markets.get(entry.market)
        if market is None:
            return await self._exhaust(entry.id, f"market {entry.market} no longer configured", ErrorClass.PERMANENT)

        price = await self.price_feed.get_price(market)
        if price is None and entry.side != "close":
            return await self._fail_attempt(entry.id, f"no usable price for {market.symbol}")

        cmd = VenueCommand(
            action="close" if entry.side == "close" else "open",
            bot_id=entry.bot_id,
            market_index=market.market_index,
            side=None if entry.side == "close" else entry.side,
            base_size=entry.base_size,
            price=price,
            reduce_only=entry.reduce_only,
            leverage=min(bot.leverage, market.max_leverage) if entry.side != "close" else None,
        )
        logger.info(f"[retry] Attempt {entry.attempts + 1}/{entry.max_attempts} for trade {entry.trade_id}")
        result = await self.executor.execute(cmd)
        return await self.apply_result(entry.id, result)

    async def apply_result(self, entry_id: int, result: ExecutionResult) -> str:
        """Route an execution result for a claimed entry; returns the outcome name."""
        with Session(self.engine) as session:
            entry = session.get(RetryEntry, entry_id)
            session.expunge(entry)

        if result.success:
            self._finish(entry, result)
            return "succeeded"

        if result.timed_out:
            self.ledger.mark_pending(
                entry.trade_id, result.error, "timeout",
                needs_reconcile=True, pre_trade_size=result.pre_trade_size,
            )
            self._set_status(entry_id, "reconciling", result.error)
            logger.warning(f"[retry] Trade {entry.trade_id} timed out; awaiting reconciliation")
            return "reconciling"

        if result.error_class == ErrorClass.PERMANENT:
            return await self._exhaust(entry_id, result.error, result.error_class)

        return await self._fail_attempt(entry_id, result.error, result.error_class)

    def _finish(self, entry: RetryEntry, result: ExecutionResult):
        if result.noop:
            self.ledger.mark_noop(entry.trade_id, "venue position already flat")
        else:
            is_close = entry.side == "close"
            if is_close:
                signed = -(result.pre_trade_size or 0.0)
            else:
                signed = result.filled_size if entry.side == "long" else -result.filled_size
            self.ledger.mark_executed(entry.trade_id, signed, result.fill_price, result.signature, is_close)
        self._set_status(entry.id, "succeeded", None)
        logger.info(f"[retry] Trade {entry.trade_id} succeeded on retry")

    async def _fail_attempt(self, entry_id: int, error: str, error_class: ErrorClass | None = ErrorClass.RETRY) -> str:
        """Count a failed attempt: reschedule, or exhaust at max_attempts."""
        with Session(self.engine) as session:
            entry = session.get(RetryEntry, entry_id)
            entry.attempts += 1
            entry.last_error = error
            entry.updated_at = self.clock()
            exhausted = entry.attempts >= entry.max_attempts
            if not exhausted:
                entry.next_retry_at = self.next_retry_at(entry.attempts, entry.priority, entry.next_retry_at)
                entry.status = "pending"
                logger.info(
                    f"[retry] Trade {entry.trade_id} attempt {entry.attempts}/{entry.max_attempts} failed "
                    f"({error_class.value if error_class else 'retry'}): {error}; "
                    f"next at {entry.next_retry_at:%H:%M:%S}"
                )
            session.add(entry)
            session.commit()
        if exhausted:
            return await self._exhaust(entry_id, error, error_class)
        return "rescheduled"

    async def _exhaust(self, entry_id: int, error: str, error_class: ErrorClass | None) -> str:
        with Session(self.engine) as session:
            entry = session.get(RetryEntry, entry_id)
            entry.status = "exhausted"
            entry.last_error = error
            entry.updated_at = self.clock()
            session.add(entry)
            session.commit()
            trade_id, bot_id, attempts = entry.trade_id, entry.bot_id, entry.attempts

        cls = error_class.value if isinstance(error_class, ErrorClass) else (error_class or "retry")
        self.ledger.mark_failed(trade_id, error, cls)
        self.ledger.log_event(
            bot_id, "retry_exhausted",
            f"Trade {trade_id} gave up after {attempts} attempts: {error}", level="error",
        )
        logger.error(f"[retry] Trade {trade_id} exhausted after {attempts} attempts: {error}")
        await self.ledger.record_failure(bot_id, error, error_class)
        return "exhausted"

    def _set_status(self, entry_id: int, status: str, error: str | None):
        with Session(self.engine) as session:
            entry = session.get(RetryEntry, entry_id)
            entry.status = status
            if error is not None:
                entry.last_error = error
            entry.updated_at = self.clock()
            session.add(entry)
            session.commit()

    # ------------------------------------------------------------------
    # Reconciler hand-off and introspection
    # ------------------------------------------------------------------

    async def resolve_reconciling(self, trade_id: int, executed: bool, error: str | None = None) -> str | None:
        """Close out a timed-out attempt once the reconciler knows what happened."""
        with Session(self.engine) as session:
            entry = session.exec(
                select(RetryEntry).where(RetryEntry.trade_id == trade_id, RetryEntry.status == "reconciling")
            ).first()
            if entry is None:
                return None
            entry_id = entry.id

        if executed:
            self._set_status(entry_id, "succeeded", None)
            return "succeeded"
        return await self._fail_attempt(entry_id, error or "order did not execute (timed out)")

    def status(self) -> dict:
        with Session(self.engine) as session:
            counts = dict(
                session.exec(select(RetryEntry.status, func.count()).group_by(RetryEntry.status)).all()
            )
            active = session.exec(
                select(RetryEntry)
                .where(RetryEntry.status.not_in(TERMINAL_STATUSES))
                .order_by(RetryEntry.next_retry_at)
            ).all()
            return {
                "counts": counts,
                "active": [e.model_dump() for e in active],
            }
