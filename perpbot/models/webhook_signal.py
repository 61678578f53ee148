"""WebhookSignal model: processed signal hashes for idempotency."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class WebhookSignal(SQLModel, table=True):
    __tablename__ = "webhook_signal"

    id: int | None = Field(default=None, primary_key=True)
    bot_id: int = Field(foreign_key="trading_bot.id", index=True)
    signal_hash: str = Field(unique=True, index=True)
    action: str  # "open", "close"
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
