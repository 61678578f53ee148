"""TradeRecord model: append-only log of every execution attempt."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class TradeRecord(SQLModel, table=True):
    __tablename__ = "trade_record"

    id: int | None = Field(default=None, primary_key=True)
    bot_id: int = Field(index=True)  # history outlives a deleted bot
    signal_id: int | None = None  # webhook_signal rows are pruned after retention
    market: str
    side: str  # "long", "short", "close"
    base_size: float = 0.0
    notional: float = 0.0
    fill_price: float | None = None
    fee: float = 0.0
    realized_pnl: float | None = None
    status: str = "pending"  # "pending", "executed", "failed"
    reduce_only: bool = False
    tx_signature: str | None = None
    error_message: str | None = None
    error_class: str | None = None  # "retry", "fallback", "permanent", "timeout"
    needs_reconcile: bool = Field(default=False, index=True)
    # Signed venue position observed right before the attempt; the reconciler
    # compares against it to decide whether an ambiguous order landed
    pre_trade_size: float | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    executed_at: datetime | None = None
