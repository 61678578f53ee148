"""Market registry: per-market venue parameters loaded from JSON."""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from perpbot.utils.constants import SYMBOL_SEPARATORS, SYMBOL_SUFFIXES

logger = logging.getLogger(__name__)

DEFAULT_MARKETS_FILE = Path(__file__).resolve().parent.parent / "data" / "markets.json"


class MarketSpec(BaseModel):
    symbol: str
    market_index: int = Field(ge=0)
    aliases: list[str] = []
    max_leverage: int = Field(ge=1)
    min_base_amount: float = Field(gt=0)
    size_decimals: int = Field(ge=0, le=10)

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("aliases")
    @classmethod
    def upper_aliases(cls, v: list[str]) -> list[str]:
        return [a.strip().upper() for a in v]


class MarketTable(BaseModel):
    markets: list[MarketSpec]

    @model_validator(mode="after")
    def unique_keys(self):
        seen_symbols: set[str] = set()
        seen_indexes: set[int] = set()
        for m in self.markets:
            for key in [m.symbol, *m.aliases]:
                if key in seen_symbols:
                    raise ValueError(f"duplicate market symbol or alias: {key}")
                seen_symbols.add(key)
            if m.market_index in seen_indexes:
                raise ValueError(f"duplicate market_index: {m.market_index}")
            seen_indexes.add(m.market_index)
        return self


def normalize_symbol(raw: str) -> str:
    """Reduce a TradingView ticker to a bare base asset.

    ``BINANCE:SOLUSDT``, ``SOLUSDT.P``, ``SOL/USD`` and ``SOL-PERP`` all
    become ``SOL``.
    """
    s = raw.strip().upper()
    if ":" in s:
        s = s.split(":", 1)[1]
    if s.endswith(".P"):
        s = s[:-2]
    for sep in SYMBOL_SEPARATORS:
        s = s.replace(sep, "")
    # PERP may follow a quote asset (SOLUSDPERP), so strip in two passes
    for _ in range(2):
        for suffix in SYMBOL_SUFFIXES:
            if s.endswith(suffix) and len(s) > len(suffix):
                s = s[: -len(suffix)]
                break
    return s


class MarketRegistry:
    """Keyed lookup of MarketSpec by symbol, alias or TradingView ticker."""

    def __init__(self, markets: list[MarketSpec]):
        self._by_key: dict[str, MarketSpec] = {}
        self._by_index: dict[int, MarketSpec] = {}
        for m in markets:
            self._by_index[m.market_index] = m
            for key in [m.symbol, *m.aliases]:
                self._by_key[key] = m

    @classmethod
    def load(cls, path: str | Path | None = None) -> "MarketRegistry":
        path = Path(path) if path else DEFAULT_MARKETS_FILE
        with open(path) as f:
            table = MarketTable.model_validate(json.load(f))
        logger.info(f"Loaded {len(table.markets)} markets from {path}")
        return cls(table.markets)

    def get(self, symbol: str) -> MarketSpec | None:
        """Look up by exact symbol/alias, falling back to ticker normalization."""
        if not symbol:
            return None
        key = symbol.strip().upper()
        return self._by_key.get(key) or self._by_key.get(normalize_symbol(key))

    def by_index(self, market_index: int) -> MarketSpec | None:
        return self._by_index.get(market_index)

    def all(self) -> list[MarketSpec]:
        return sorted(self._by_index.values(), key=lambda m: m.market_index)

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def __len__(self) -> int:
        return len(self._by_index)
