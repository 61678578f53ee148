"""Convert a TradeIntent into a concrete order for one bot."""

import logging
import math
from dataclasses import dataclass

from perpbot.engine.signal_validator import TradeIntent
from perpbot.errors import (
    InsufficientCollateralError,
    OrderTooSmallError,
    UnknownMarketError,
    ValidationError,
    ZeroPriceError,
)
from perpbot.models.bot import Bot
from perpbot.services.lighter_client import AccountState
from perpbot.services.markets import MarketRegistry, MarketSpec

logger = logging.getLogger(__name__)


@dataclass
class OrderPlan:
    market: MarketSpec
    side: str  # "long", "short", "close"
    base_size: float  # 0 for closes: the executor sizes them from the venue
    notional: float
    price: float | None
    reduce_only: bool
    leverage: int
    buying_power: float = 0.0
    flip: bool = False  # opposite position must be closed first

    @property
    def is_close(self) -> bool:
        return self.side == "close"


def effective_leverage(bot: Bot, market: MarketSpec) -> int:
    return max(1, min(bot.leverage, market.max_leverage))


def round_down(value: float, decimals: int) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 1e-9) / factor


class PositionSizer:
    def __init__(self, markets: MarketRegistry, dust_threshold: float = 1e-4):
        self.markets = markets
        self.dust_threshold = dust_threshold

    def resolve_market(self, intent: TradeIntent, bot: Bot) -> MarketSpec:
        """Market for the signal; it must be the bot's configured market."""
        market = self.markets.get(intent.symbol)
        if market is None:
            raise UnknownMarketError(f"no market configured for symbol {intent.symbol!r}")
        bot_market = self.markets.get(bot.market)
        if bot_market is None:
            raise UnknownMarketError(f"bot market {bot.market!r} is not configured")
        if bot_market.market_index != market.market_index:
            raise ValidationError(
                "symbol", f"{intent.symbol} does not match bot market {bot_market.symbol}"
            )
        return market

    def size(
        self,
        intent: TradeIntent,
        bot: Bot,
        market: MarketSpec,
        account: AccountState | None,
        price: float | None,
    ) -> OrderPlan:
        leverage = effective_leverage(bot, market)

        if intent.is_close:
            # Size comes from the venue at execution time
            return OrderPlan(
                market=market,
                side="close",
                base_size=0.0,
                notional=0.0,
                price=price,
                reduce_only=True,
                leverage=leverage,
            )

        if price is None or not math.isfinite(price) or price <= 0:
            raise ZeroPriceError(f"no usable price for {market.symbol}")

        notional = intent.size_pct / 100.0 * bot.max_position_size
        equity = account.equity if account is not None else 0.0
        buying_power = min(bot.max_position_size, equity) * leverage

        if notional > equity * leverage:
            raise InsufficientCollateralError(
                f"notional ${notional:.2f} exceeds equity ${equity:.2f} x {leverage}x"
            )

        base_size = round_down(notional / price, market.size_decimals)
        if base_size < market.min_base_amount:
            raise OrderTooSmallError(
                f"{base_size} {market.symbol} is below venue minimum {market.min_base_amount}"
            )

        current = 0.0
        if account is not None:
            current = account.positions.get(market.market_index, 0.0)
        flip = abs(current) > self.dust_threshold and (current > 0) != (intent.direction == "long")

        logger.info(
            f"[bot {bot.id}] Sized {intent.direction} {base_size} {market.symbol} "
            f"(${notional:.2f} of ${bot.max_position_size:.2f}, {leverage}x, px={price})"
            f"{' flip' if flip else ''}"
        )
        return OrderPlan(
            market=market,
            side=intent.direction,
            base_size=base_size,
            notional=notional,
            price=price,
            reduce_only=False,
            leverage=leverage,
            buying_power=buying_power,
            flip=flip,
        )
