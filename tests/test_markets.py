"""Tests for the market table and ticker normalization."""

import json

import pytest
from pydantic import ValidationError

from perpbot.services.markets import MarketRegistry, normalize_symbol


@pytest.mark.parametrize("ticker", ["SOL", "sol", "BINANCE:SOLUSDT", "SOLUSDT.P", "SOL/USD", "SOL-PERP", "SOLUSDPERP"])
def test_tradingview_tickers_normalize(ticker):
    assert normalize_symbol(ticker) == "SOL"


def test_bundled_table_loads():
    registry = MarketRegistry.load()
    assert len(registry) >= 10
    sol = registry.get("SOL")
    assert sol.market_index == 2
    assert sol.max_leverage == 25
    assert registry.by_index(1).symbol == "BTC"


def test_alias_and_ticker_lookup():
    registry = MarketRegistry.load()
    assert registry.get("XBT").symbol == "BTC"
    assert registry.get("BYBIT:1000PEPEUSDT.P").symbol == "1000PEPE"
    assert "BINANCE:ETHUSDT" in registry
    assert registry.get("NOPE") is None
    assert registry.get("") is None


def test_duplicate_market_index_rejected(tmp_path):
    path = tmp_path / "markets.json"
    path.write_text(json.dumps({"markets": [
        {"symbol": "AAA", "market_index": 1, "max_leverage": 5, "min_base_amount": 1, "size_decimals": 0},
        {"symbol": "BBB", "market_index": 1, "max_leverage": 5, "min_base_amount": 1, "size_decimals": 0},
    ]}))
    with pytest.raises(ValidationError):
        MarketRegistry.load(path)


def test_duplicate_alias_rejected(tmp_path):
    path = tmp_path / "markets.json"
    path.write_text(json.dumps({"markets": [
        {"symbol": "AAA", "market_index": 1, "max_leverage": 5, "min_base_amount": 1, "size_decimals": 0},
        {"symbol": "BBB", "market_index": 2, "aliases": ["aaa"], "max_leverage": 5,
         "min_base_amount": 1, "size_decimals": 0},
    ]}))
    with pytest.raises(ValidationError):
        MarketRegistry.load(path)
