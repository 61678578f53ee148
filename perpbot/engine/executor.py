"""Trade executor: the only component that talks to the venue on a bot's behalf.

Every call decrypts the bot's signing key for the duration of one venue
client, enforces a hard timeout, and reports venue failures as a classified
``ExecutionResult`` instead of raising.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable

from cryptography.fernet import InvalidToken
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from perpbot.config import Settings
from perpbot.engine.error_classifier import ErrorClass, classify_error
from perpbot.models.bot import Bot
from perpbot.models.bot_event import BotEvent
from perpbot.models.credential import Credential
from perpbot.models.orphaned_resource import OrphanedResource
from perpbot.services.encryption import SecretBox
from perpbot.services.lighter_client import AccountState, LighterClient
from perpbot.utils.clock import utcnow

logger = logging.getLogger(__name__)

# (credential, private_key, account_index) → venue client
VenueFactory = Callable[[Credential, str, int], Any]


def lighter_venue_factory(credential: Credential, private_key: str, account_index: int) -> LighterClient:
    return LighterClient(
        host=credential.lighter_host,
        private_key=private_key,
        api_key_index=credential.api_key_index,
        account_index=account_index,
    )


@dataclass
class VenueCommand:
    action: str  # "open", "close", "settle", "delete_subaccount"
    bot_id: int
    market_index: int | None = None
    side: str | None = None  # "long" / "short" for opens
    base_size: float = 0.0
    price: float | None = None  # reference price for the slippage bound
    reduce_only: bool = False
    leverage: int | None = None


@dataclass
class ExecutionResult:
    success: bool
    signature: str | None = None
    fill_price: float | None = None
    filled_size: float = 0.0  # unsigned base units
    error: str | None = None
    error_class: ErrorClass | None = None
    timed_out: bool = False
    noop: bool = False  # nothing to do (already flat, no sub-account)
    path: str | None = None  # "market" or "limit_fallback"
    pre_trade_size: float | None = None  # signed venue position before the order

    @classmethod
    def failed(cls, error: str, error_class: ErrorClass | None = None, **kwargs) -> "ExecutionResult":
        return cls(
            success=False,
            error=error,
            error_class=error_class or classify_error(error),
            **kwargs,
        )


class TradeExecutor:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        secrets: SecretBox,
        venue_factory: VenueFactory = lighter_venue_factory,
    ):
        self.engine = engine
        self.settings = settings
        self.secrets = secrets
        self.venue_factory = venue_factory
        self.timeout = settings.venue_call_timeout_seconds

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def execute(self, cmd: VenueCommand) -> ExecutionResult:
        """Run one command with a hard timeout.

        A timeout means the outcome is unknown: the order may still land.
        """
        try:
            return await asyncio.wait_for(self._dispatch(cmd), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"[bot {cmd.bot_id}] Venue {cmd.action} timed out after {self.timeout}s")
            return ExecutionResult(
                success=False,
                error=f"venue {cmd.action} timed out after {self.timeout}s",
                error_class=ErrorClass.RETRY,
                timed_out=True,
            )
        except InvalidToken:
            logger.error(f"[bot {cmd.bot_id}] Credential cannot be decrypted with the configured key")
            return ExecutionResult.failed("credential cannot be decrypted", ErrorClass.PERMANENT)
        except Exception as e:
            logger.error(f"[bot {cmd.bot_id}] Venue {cmd.action} failed: {e}", exc_info=True)
            return ExecutionResult.failed(str(e) or type(e).__name__)

    async def get_account(self, bot_id: int) -> AccountState | None:
        """Venue account state for the bot's sub-account; None if it has none yet."""
        bot, cred = self._load(bot_id)
        if bot.subaccount_index is None:
            return None

        async def _read():
            async with self._venue_for(cred, bot.subaccount_index) as venue:
                return await venue.get_account()

        return await asyncio.wait_for(_read(), timeout=self.timeout)

    async def ensure_subaccount(self, bot_id: int) -> tuple[int | None, str | None]:
        """Create and fund the bot's sub-account if needed.

        The index is persisted as soon as the venue reports it, so a failed
        deposit leaves a known, unfunded sub-account (recorded as an orphan)
        rather than a lost one. Returns ``(subaccount_index, error)``.
        """
        bot, cred = self._load(bot_id)
        if bot.subaccount_index is not None and bot.subaccount_funded:
            return bot.subaccount_index, None

        async with self._venue_for(cred, cred.account_index) as master:
            index = bot.subaccount_index
            if index is None:
                index, error = await master.create_subaccount(cred.l1_address)
                if index is None:
                    return None, error or "sub-account creation failed"
                with Session(self.engine) as session:
                    db_bot = session.get(Bot, bot_id)
                    db_bot.subaccount_index = index
                    db_bot.subaccount_funded = bot.initial_deposit <= 0
                    db_bot.updated_at = utcnow()
                    session.add(db_bot)
                    session.add(BotEvent(
                        bot_id=bot_id, action="subaccount_created",
                        message=f"Sub-account {index} created",
                        details={"subaccount_index": index},
                    ))
                    session.commit()
                logger.info(f"[bot {bot_id}] Sub-account {index} created")

            if bot.initial_deposit <= 0:
                return index, None

            result = await master.transfer_collateral(index, bot.initial_deposit)
            if not result.success:
                logger.error(f"[bot {bot_id}] Deposit to sub-account {index} failed: {result.error}")
                self.record_orphan(
                    bot_id, cred.id, index, "unfunded_subaccount",
                    f"deposit of {bot.initial_deposit:.2f} failed: {result.error}",
                )
                return None, result.error or "deposit failed"

        with Session(self.engine) as session:
            db_bot = session.get(Bot, bot_id)
            db_bot.subaccount_funded = True
            db_bot.updated_at = utcnow()
            session.add(db_bot)
            session.commit()
        logger.info(f"[bot {bot_id}] Sub-account {index} funded with {bot.initial_deposit:.2f}")
        return index, None

    def record_orphan(self, bot_id: int, credential_id: int, subaccount_index: int, kind: str, reason: str):
        """Persist a cleanup record, once per (bot, sub-account, kind)."""
        with Session(self.engine) as session:
            existing = session.exec(
                select(OrphanedResource).where(
                    OrphanedResource.bot_id == bot_id,
                    OrphanedResource.subaccount_index == subaccount_index,
                    OrphanedResource.kind == kind,
                    OrphanedResource.status == "pending",
                )
            ).first()
            if existing is not None:
                existing.reason = reason
                existing.updated_at = utcnow()
                session.add(existing)
            else:
                session.add(OrphanedResource(
                    bot_id=bot_id,
                    credential_id=credential_id,
                    subaccount_index=subaccount_index,
                    kind=kind,
                    reason=reason,
                ))
            session.add(BotEvent(
                bot_id=bot_id, level="warning", action="orphan",
                message=f"{kind} recorded for sub-account {subaccount_index}: {reason}",
            ))
            session.commit()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, bot_id: int) -> tuple[Bot, Credential]:
        with Session(self.engine) as session:
            bot = session.get(Bot, bot_id)
            if bot is None:
                raise LookupError(f"bot {bot_id} not found")
            cred = session.get(Credential, bot.credential_id)
            if cred is None:
                raise LookupError(f"credential {bot.credential_id} for bot {bot_id} not found")
            session.expunge(bot)
            session.expunge(cred)
            return bot, cred

    @asynccontextmanager
    async def _venue_for(self, credential: Credential, account_index: int):
        """Venue client for one account; the decrypted key lives only as long as the client."""
        with self.secrets.open_secret(credential.private_key_encrypted) as key_buf:
            venue = self.venue_factory(credential, key_buf.decode(), account_index)
        try:
            yield venue
        finally:
            await venue.close()

    async def _dispatch(self, cmd: VenueCommand) -> ExecutionResult:
        try:
            bot, cred = self._load(cmd.bot_id)
        except LookupError as e:
            return ExecutionResult.failed(str(e), ErrorClass.PERMANENT)

        if cmd.action == "open":
            return await self._open(cmd, bot, cred)
        if cmd.action == "close":
            return await self._close(cmd, bot, cred)
        if cmd.action == "settle":
            return await self._settle(cmd, bot, cred)
        if cmd.action == "delete_subaccount":
            return await self._delete_subaccount(cmd, bot, cred)
        return ExecutionResult.failed(f"unknown venue action {cmd.action!r}", ErrorClass.PERMANENT)

    def _worst_price(self, price: float, is_ask: bool, slippage_bps: float) -> float:
        slip = slippage_bps / 10_000
        return price * (1 - slip) if is_ask else price * (1 + slip)

    async def _place(self, venue, cmd: VenueCommand, size: float, is_ask: bool, reduce_only: bool) -> ExecutionResult:
        """Market order; on a liquidity-type failure, one limit order at wider slippage."""
        result = await venue.place_order(
            market_index=cmd.market_index,
            base_amount=size,
            price=self._worst_price(cmd.price, is_ask, self.settings.execution_slippage_bps),
            is_ask=is_ask,
            reduce_only=reduce_only,
            market=True,
        )
        path = "market"
        if not result.success and classify_error(result.error) == ErrorClass.FALLBACK:
            logger.warning(
                f"[bot {cmd.bot_id}] Market order failed ({result.error}); trying limit fallback"
            )
            result = await venue.place_order(
                market_index=cmd.market_index,
                base_amount=size,
                price=self._worst_price(cmd.price, is_ask, self.settings.fallback_slippage_bps),
                is_ask=is_ask,
                reduce_only=reduce_only,
                market=False,
            )
            path = "limit_fallback"

        if not result.success:
            return ExecutionResult.failed(result.error or "order rejected", path=path)
        return ExecutionResult(
            success=True,
            signature=result.tx_hash or result.order_id,
            fill_price=result.filled_price or cmd.price,
            filled_size=size,
            path=path,
        )

    async def _open(self, cmd: VenueCommand, bot: Bot, cred: Credential) -> ExecutionResult:
        if cmd.price is None or cmd.price <= 0 or cmd.base_size <= 0:
            return ExecutionResult.failed("open requires a positive size and price", ErrorClass.PERMANENT)

        subaccount = bot.subaccount_index
        freshly_funded = False
        if subaccount is None or not bot.subaccount_funded:
            subaccount, error = await self.ensure_subaccount(bot.id)
            if subaccount is None:
                return ExecutionResult.failed(f"sub-account setup failed: {error}")
            freshly_funded = bot.initial_deposit > 0

        async with self._venue_for(cred, subaccount) as venue:
            account = await venue.get_account()
            pre_trade = account.positions.get(cmd.market_index, 0.0)

            if cmd.leverage:
                lev = await venue.update_leverage(cmd.market_index, cmd.leverage)
                if not lev.success:
                    return ExecutionResult.failed(
                        f"leverage update failed: {lev.error}", pre_trade_size=pre_trade
                    )

            result = await self._place(venue, cmd, cmd.base_size, cmd.side == "short", reduce_only=False)
            result.pre_trade_size = pre_trade

        if not result.success and freshly_funded and result.error_class == ErrorClass.PERMANENT:
            self.record_orphan(
                bot.id, cred.id, subaccount, "funded_untraded",
                f"first order failed permanently: {result.error}",
            )
        return result

    async def _close(self, cmd: VenueCommand, bot: Bot, cred: Credential) -> ExecutionResult:
        if bot.subaccount_index is None:
            return ExecutionResult(success=True, noop=True, pre_trade_size=0.0)

        async with self._venue_for(cred, bot.subaccount_index) as venue:
            account = await venue.get_account()
            position = account.positions.get(cmd.market_index, 0.0)
            if abs(position) <= self.settings.dust_threshold:
                logger.info(f"[bot {bot.id}] Close requested but venue position is flat")
                return ExecutionResult(success=True, noop=True, pre_trade_size=position)

            if cmd.price is None or cmd.price <= 0:
                return ExecutionResult.failed(
                    "no usable price for close", ErrorClass.RETRY, pre_trade_size=position
                )

            # Sized to the venue position, never the local snapshot
            result = await self._place(venue, cmd, abs(position), position > 0, reduce_only=True)
            result.pre_trade_size = position
            return result

    async def _settle(self, cmd: VenueCommand, bot: Bot, cred: Credential) -> ExecutionResult:
        if bot.subaccount_index is None:
            return ExecutionResult(success=True, noop=True)
        async with self._venue_for(cred, bot.subaccount_index) as venue:
            result = await venue.settle_pnl(cmd.market_index)
        if not result.success:
            return ExecutionResult.failed(result.error or "settle failed")
        return ExecutionResult(success=True, signature=result.tx_hash)

    async def _delete_subaccount(self, cmd: VenueCommand, bot: Bot, cred: Credential) -> ExecutionResult:
        """Sweep collateral back to the master account.

        Lighter sub-accounts cannot be destroyed; an empty one is as good as gone.
        """
        if bot.subaccount_index is None:
            return ExecutionResult(success=True, noop=True)

        async with self._venue_for(cred, bot.subaccount_index) as venue:
            account = await venue.get_account()
            open_markets = [m for m, size in account.positions.items() if abs(size) > self.settings.dust_threshold]
            if open_markets:
                return ExecutionResult.failed(
                    f"sub-account {bot.subaccount_index} still has open positions in markets {open_markets}",
                    ErrorClass.PERMANENT,
                )
            if account.available <= self.settings.dust_threshold:
                return ExecutionResult(success=True, noop=True)
            result = await venue.transfer_collateral(cred.account_index, account.available)

        if not result.success:
            return ExecutionResult.failed(result.error or "collateral sweep failed")
        logger.info(
            f"[bot {bot.id}] Swept {account.available:.2f} from sub-account {bot.subaccount_index} to master"
        )
        return ExecutionResult(success=True, signature=result.tx_hash, filled_size=0.0)
