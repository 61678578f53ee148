"""Webhook signal → trade pipeline.

``accept`` runs inside the HTTP request and does only cheap, synchronous
work: bot checks, validation and the idempotency insert. ``execute`` does
the venue work under the bot's lock and routes the outcome:

- executed   → trade record + position snapshot
- timed out  → trade stays pending, flagged for the reconciler
- retry / fallback → retry queue
- permanent  → failed trade, notification, failure accounting
"""

import hmac
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session

from perpbot.config import Settings
from perpbot.engine.error_classifier import ErrorClass
from perpbot.engine.executor import ExecutionResult, TradeExecutor, VenueCommand
from perpbot.engine.idempotency import IdempotencyGuard
from perpbot.engine.ledger import TradeLedger
from perpbot.engine.locks import BotLockRegistry
from perpbot.engine.position_sizer import OrderPlan, PositionSizer
from perpbot.engine.retry_queue import RetryQueue
from perpbot.engine.signal_validator import TradeIntent, validate_signal
from perpbot.errors import (
    BotNotFoundError,
    BotUnavailableError,
    InsufficientCollateralError,
    PipelineError,
    ValidationError,
    WebhookAuthError,
)
from perpbot.models.bot import Bot
from perpbot.services.lighter_client import AccountState
from perpbot.services.market_data import PriceFeed

logger = logging.getLogger(__name__)


class SignalPipeline:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        guard: IdempotencyGuard,
        sizer: PositionSizer,
        price_feed: PriceFeed,
        executor: TradeExecutor,
        ledger: TradeLedger,
        retry_queue: RetryQueue,
        locks: BotLockRegistry,
    ):
        self.engine = engine
        self.settings = settings
        self.guard = guard
        self.sizer = sizer
        self.price_feed = price_feed
        self.executor = executor
        self.ledger = ledger
        self.retry_queue = retry_queue
        self.locks = locks

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def accept(self, bot_id: int, body, secret: str | None) -> tuple[TradeIntent, int]:
        """Validate and de-duplicate a delivery. Returns ``(intent, signal_id)``."""
        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            if bot is None:
                raise BotNotFoundError(f"bot {bot_id} not found")
            session.expunge(bot)

        if not secret or not hmac.compare_digest(secret.encode(), bot.webhook_secret.encode()):
            raise WebhookAuthError("invalid webhook secret")
        if not bot.is_active:
            raise BotUnavailableError(f"bot {bot_id} is not active")
        if not bot.execution_authorized:
            raise BotUnavailableError(f"bot {bot_id} has not authorized execution")

        intent = validate_signal(bot_id, body)

        if bot.pause_reason is not None and not intent.is_close:
            # Closes still reach a paused bot so users can get flat
            raise BotUnavailableError(f"bot {bot_id} is paused: {bot.pause_reason}")

        if not intent.is_close and bot.side_restriction in ("long", "short"):
            if intent.direction != bot.side_restriction:
                raise ValidationError(
                    "action", f"bot {bot_id} only trades {bot.side_restriction}"
                )

        signal_id = self.guard.record(bot_id, intent.signal_hash, intent.action, intent.raw_payload)
        logger.info(
            f"[bot {bot_id}] Accepted signal {intent.signal_hash[:12]}: {intent.action} "
            f"{intent.direction or ''} {intent.size_pct:g}% {intent.symbol}"
        )
        return intent, signal_id

    # ------------------------------------------------------------------
    # Execution path
    # ------------------------------------------------------------------

    async def execute(self, intent: TradeIntent, signal_id: int | None = None) -> dict:
        """Size and execute an accepted intent under the bot's lock."""
        async with self.locks.hold(intent.bot_id):
            try:
                return await self._execute_locked(intent, signal_id)
            except Exception as e:
                logger.error(f"[bot {intent.bot_id}] Execution crashed: {e}", exc_info=True)
                self.ledger.log_event(intent.bot_id, "trade_error", str(e), level="error")
                raise

    async def _execute_locked(self, intent: TradeIntent, signal_id: int | None) -> dict:
        with Session(self.engine) as session:
            bot = session.get(Bot, intent.bot_id)
            if bot is None:
                raise BotNotFoundError(f"bot {intent.bot_id} was deleted before execution")
            session.expunge(bot)

        try:
            market = self.sizer.resolve_market(intent, bot)
        except PipelineError as e:
            return await self._reject(intent, bot, signal_id, e)

        account = None
        if not intent.is_close:
            try:
                account = await self._account_for(bot)
            except Exception as e:
                logger.error(f"[bot {bot.id}] Account read failed before sizing: {e}")
                return await self._reject(intent, bot, signal_id, e, ErrorClass.RETRY)

        try:
            price = await self.price_feed.get_price(market)
            plan = self.sizer.size(intent, bot, market, account, price)
        except PipelineError as e:
            return await self._reject(intent, bot, signal_id, e)

        if plan.is_close:
            return await self._run_close(bot, plan, signal_id)
        if plan.flip:
            return await self._run_flip(bot, plan, signal_id)
        return await self._run_open(bot, plan, signal_id)

    async def _account_for(self, bot: Bot) -> AccountState:
        if bot.subaccount_index is None or not bot.subaccount_funded:
            # Not provisioned yet: the first open will deposit initial_deposit
            return AccountState(account_index=-1, equity=bot.initial_deposit, available=bot.initial_deposit)
        account = await self.executor.get_account(bot.id)
        return account

    async def _reject(self, intent: TradeIntent, bot: Bot, signal_id: int | None, error: Exception,
                      error_class: ErrorClass = ErrorClass.PERMANENT) -> dict:
        """Failure before any order was sent: failed trade record, surfaced to the owner.

        Without a sized order there is nothing for the retry queue to replay.
        """
        side = "close" if intent.is_close else intent.direction
        trade_id = self.ledger.open_trade(
            bot.id, bot.market, side, 0.0, 0.0, reduce_only=intent.is_close, signal_id=signal_id
        )
        self.ledger.mark_failed(trade_id, str(error), error_class.value)
        logger.warning(f"[bot {bot.id}] Signal rejected before execution: {error}")
        await self.ledger.record_failure(
            bot.id, str(error), error_class,
            insufficient_collateral=isinstance(error, InsufficientCollateralError),
        )
        return {"status": "failed", "trade_id": trade_id, "error": str(error)}

    def _command(self, bot: Bot, plan: OrderPlan, action: str) -> VenueCommand:
        return VenueCommand(
            action=action,
            bot_id=bot.id,
            market_index=plan.market.market_index,
            side=None if action == "close" else plan.side,
            base_size=plan.base_size,
            price=plan.price,
            reduce_only=action == "close",
            leverage=None if action == "close" else plan.leverage,
        )

    async def _run_close(self, bot: Bot, plan: OrderPlan, signal_id: int | None) -> dict:
        trade_id = self.ledger.open_trade(
            bot.id, plan.market.symbol, "close", 0.0, 0.0, reduce_only=True, signal_id=signal_id
        )
        result = await self.executor.execute(self._command(bot, plan, "close"))
        return await self._route(bot, plan, trade_id, result, side="close")

    async def _run_open(self, bot: Bot, plan: OrderPlan, signal_id: int | None) -> dict:
        trade_id = self.ledger.open_trade(
            bot.id, plan.market.symbol, plan.side, plan.base_size, plan.notional,
            reduce_only=False, signal_id=signal_id,
        )
        result = await self.executor.execute(self._command(bot, plan, "open"))
        return await self._route(bot, plan, trade_id, result, side=plan.side)

    async def _run_flip(self, bot: Bot, plan: OrderPlan, signal_id: int | None) -> dict:
        """Close the opposite position reduce-only, then open the new side.

        Each leg gets its own trade record so the log still sums to the snapshot.
        """
        closed = await self._run_close(bot, plan, signal_id)
        if closed["status"] != "executed":
            # Nothing opened yet: the flip stops at the failed close
            return closed

        if not closed.get("noop"):
            self.ledger.log_event(
                bot.id, "flip",
                f"Closed {plan.market.symbol} (trade {closed['trade_id']}) before opening {plan.side}",
                details={"close_trade_id": closed["trade_id"]},
            )
        opened = await self._run_open(bot, plan, signal_id)
        return {**opened, "close_trade_id": closed["trade_id"]}

    async def _route(self, bot: Bot, plan: OrderPlan, trade_id: int, result: ExecutionResult, side: str) -> dict:
        market = plan.market.symbol
        if result.success:
            if result.noop:
                self.ledger.mark_noop(trade_id, "venue position already flat")
                return {"status": "executed", "trade_id": trade_id, "noop": True}
            if side == "close":
                signed = -(result.pre_trade_size or 0.0)
            else:
                signed = result.filled_size if side == "long" else -result.filled_size
            self.ledger.mark_executed(trade_id, signed, result.fill_price, result.signature, side == "close")
            return {"status": "executed", "trade_id": trade_id, "path": result.path}

        if result.timed_out:
            # The order may have landed; only the reconciler can tell
            self.ledger.mark_pending(
                trade_id, result.error, "timeout", needs_reconcile=True, pre_trade_size=result.pre_trade_size,
            )
            self.retry_queue.enqueue(
                trade_id, bot.id, market, side, plan.base_size, result.error,
                notional=plan.notional, reduce_only=side == "close", status="reconciling",
            )
            self.ledger.log_event(bot.id, "trade_timeout", result.error, level="warning")
            return {"status": "pending", "trade_id": trade_id, "reason": "timeout"}

        if result.error_class == ErrorClass.PERMANENT:
            self.ledger.mark_failed(trade_id, result.error, result.error_class.value)
            await self.ledger.record_failure(bot.id, result.error, result.error_class)
            return {"status": "failed", "trade_id": trade_id, "error": result.error}

        self.ledger.mark_pending(trade_id, result.error, result.error_class.value, pre_trade_size=result.pre_trade_size)
        self.retry_queue.enqueue(
            trade_id, bot.id, market, side, plan.base_size, result.error,
            notional=plan.notional, reduce_only=side == "close",
        )
        return {"status": "queued_retry", "trade_id": trade_id, "error": result.error}

    async def process(self, bot_id: int, body, secret: str | None) -> dict:
        """accept + execute in one call (CLI and inline webhook mode)."""
        intent, signal_id = self.accept(bot_id, body, secret)
        return await self.execute(intent, signal_id)
