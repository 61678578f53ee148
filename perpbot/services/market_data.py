"""Venue price feed with a short TTL cache.

Prices come from the Lighter public order book. A missing, zero or
non-finite price is reported as None so callers fail closed.
"""

import logging
import math
import time
from typing import Awaitable, Callable

from perpbot.engine.locks import SingleFlight
from perpbot.services.lighter_client import fetch_mid_price
from perpbot.services.markets import MarketSpec

logger = logging.getLogger(__name__)

PriceFetcher = Callable[[int], Awaitable[float | None]]


def lighter_price_fetcher(host: str) -> PriceFetcher:
    async def _fetch(market_index: int) -> float | None:
        return await fetch_mid_price(host, market_index)
    return _fetch


def _usable(price) -> bool:
    return price is not None and math.isfinite(price) and price > 0


class PriceFeed:
    def __init__(
        self,
        fetcher: PriceFetcher,
        ttl_seconds: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._cache: dict[int, tuple[float, float]] = {}  # market_index → (price, fetched_at)
        self._flight = SingleFlight()

    async def get_price(self, market: MarketSpec) -> float | None:
        cached = self._cache.get(market.market_index)
        if cached is not None and self._monotonic() - cached[1] < self._ttl:
            return cached[0]

        price = await self._flight.do(market.market_index, lambda: self._refresh(market))
        return price

    async def _refresh(self, market: MarketSpec) -> float | None:
        try:
            price = await self._fetcher(market.market_index)
        except Exception as e:
            logger.error(f"Price fetch failed for {market.symbol}: {e}")
            price = None

        if not _usable(price):
            # Never fall back to an expired cached value
            self._cache.pop(market.market_index, None)
            logger.warning(f"No usable price for {market.symbol} (got {price!r})")
            return None

        self._cache[market.market_index] = (float(price), self._monotonic())
        return float(price)

    def invalidate(self, market_index: int | None = None):
        if market_index is None:
            self._cache.clear()
        else:
            self._cache.pop(market_index, None)
