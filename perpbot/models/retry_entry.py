"""RetryEntry model: persisted retry queue."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class RetryEntry(SQLModel, table=True):
    __tablename__ = "retry_entry"

    id: int | None = Field(default=None, primary_key=True)
    trade_id: int = Field(foreign_key="trade_record.id", index=True)
    bot_id: int = Field(foreign_key="trading_bot.id", index=True)
    market: str
    side: str  # "long", "short", "close"
    base_size: float = 0.0
    notional: float = 0.0
    reduce_only: bool = False
    priority: str = "normal"  # "normal", "critical"
    attempts: int = 1
    max_attempts: int = 5
    next_retry_at: datetime = Field(index=True)
    last_error: str | None = None
    # "pending", "processing", "reconciling", "exhausted", "succeeded"
    status: str = Field(default="pending", index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
