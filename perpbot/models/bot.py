"""Bot model: one user-configured webhook trading bot."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Bot(SQLModel, table=True):
    __tablename__ = "trading_bot"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    owner_wallet: str = Field(default="", index=True)
    credential_id: int = Field(foreign_key="credential.id")
    market: str  # base asset, e.g. "SOL"
    leverage: int = 1
    max_position_size: float  # USD notional ceiling
    side_restriction: str = "both"  # "long", "short", "both"
    is_active: bool = True
    execution_authorized: bool = False
    pause_reason: str | None = None
    consecutive_failures: int = 0
    webhook_secret: str = ""

    # Venue sub-account, created lazily on the first open
    subaccount_index: int | None = None
    subaccount_funded: bool = False
    initial_deposit: float = 0.0  # USDC moved from master on sub-account creation

    telegram_chat_id: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
