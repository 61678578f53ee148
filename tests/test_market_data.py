"""Tests for the cached venue price feed."""

import asyncio
import math

import pytest

from perpbot.services.market_data import PriceFeed
from perpbot.services.markets import MarketRegistry

SOL = MarketRegistry.load().get("SOL")


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Fetcher:
    def __init__(self, *prices, delay=0.0):
        self.prices = list(prices)
        self.delay = delay
        self.calls = 0

    async def __call__(self, market_index):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.prices.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.mark.asyncio
async def test_price_cached_within_ttl():
    fetch, ticker = Fetcher(150.0, 151.0), Ticker()
    feed = PriceFeed(fetch, ttl_seconds=5.0, monotonic=ticker)

    assert await feed.get_price(SOL) == 150.0
    ticker.now = 4.9
    assert await feed.get_price(SOL) == 150.0
    ticker.now = 5.1
    assert await feed.get_price(SOL) == 151.0
    assert fetch.calls == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [None, 0.0, -1.0, math.nan, math.inf, ConnectionError("down")])
async def test_unusable_price_is_none_and_never_stale(bad):
    fetch, ticker = Fetcher(150.0, bad), Ticker()
    feed = PriceFeed(fetch, ttl_seconds=5.0, monotonic=ticker)
    await feed.get_price(SOL)

    ticker.now = 10.0
    assert await feed.get_price(SOL) is None


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch():
    fetch = Fetcher(150.0, delay=0.05)
    feed = PriceFeed(fetch, ttl_seconds=5.0, monotonic=Ticker())

    prices = await asyncio.gather(*(feed.get_price(SOL) for _ in range(5)))

    assert prices == [150.0] * 5
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    fetch = Fetcher(150.0, 152.0)
    feed = PriceFeed(fetch, ttl_seconds=5.0, monotonic=Ticker())
    await feed.get_price(SOL)
    feed.invalidate(SOL.market_index)
    assert await feed.get_price(SOL) == 152.0
