"""OrphanedResource model: venue resources left behind by partial failures."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class OrphanedResource(SQLModel, table=True):
    __tablename__ = "orphaned_resource"

    id: int | None = Field(default=None, primary_key=True)
    bot_id: int = Field(index=True)  # no FK: the bot may be deleted before cleanup
    credential_id: int
    subaccount_index: int
    kind: str  # "unfunded_subaccount", "funded_untraded"
    reason: str | None = None
    status: str = Field(default="pending", index=True)  # "pending", "resolved", "abandoned"
    retry_count: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
