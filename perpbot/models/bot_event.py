"""BotEvent model: per-bot audit log (reconcile notes, pauses, orphans)."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class BotEvent(SQLModel, table=True):
    __tablename__ = "bot_event"

    id: int | None = Field(default=None, primary_key=True)
    bot_id: int = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    level: str = "info"  # "info", "warning", "error"
    action: str  # "trade", "reconcile", "auto_pause", "retry_exhausted", "orphan", ...
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
