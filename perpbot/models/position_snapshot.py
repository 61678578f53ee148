"""PositionSnapshot model: best-known local view of a bot's position."""

from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class PositionSnapshot(SQLModel, table=True):
    __tablename__ = "position_snapshot"
    __table_args__ = (UniqueConstraint("bot_id", "market", name="uq_snapshot_bot_market"),)

    id: int | None = Field(default=None, primary_key=True)
    bot_id: int = Field(foreign_key="trading_bot.id", index=True)
    market: str
    base_size: float = 0.0  # signed: >0 long, <0 short
    avg_entry_price: float = 0.0
    cost_basis: float = 0.0  # abs(base_size) * avg_entry_price
    realized_pnl: float = 0.0
    total_fees: float = 0.0
    equity: float | None = None  # sub-account equity at last reconcile
    last_trade_id: int | None = None
    version: int = 0  # bumped on every write; compare-and-swap token
    note: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reconciled_at: datetime | None = None
