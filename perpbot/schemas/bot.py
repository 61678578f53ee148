"""Pydantic schemas for Bot API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from perpbot.utils.constants import SIDE_RESTRICTIONS


def _check_side(value: str) -> str:
    side = value.strip().lower()
    if side not in SIDE_RESTRICTIONS:
        raise ValueError(f"must be one of: {', '.join(sorted(SIDE_RESTRICTIONS))}")
    return side


class BotCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    owner_wallet: str = ""
    credential_id: int
    market: str = Field(min_length=1, max_length=32)
    leverage: int = Field(default=1, ge=1)
    max_position_size: float = Field(gt=0)
    side_restriction: str = "both"
    execution_authorized: bool = False
    initial_deposit: float = Field(default=0.0, ge=0)
    telegram_chat_id: int | None = None

    @field_validator("name", "market")
    @classmethod
    def _trim(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    _side = field_validator("side_restriction")(_check_side)


class BotUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    leverage: int | None = Field(default=None, ge=1)
    max_position_size: float | None = Field(default=None, gt=0)
    side_restriction: str | None = None
    is_active: bool | None = None
    execution_authorized: bool | None = None
    initial_deposit: float | None = Field(default=None, ge=0)
    telegram_chat_id: int | None = None

    @field_validator("side_restriction")
    @classmethod
    def _validate_optional_side(cls, value: str | None) -> str | None:
        return None if value is None else _check_side(value)


class BotRead(BaseModel):
    id: int
    name: str
    owner_wallet: str
    credential_id: int
    market: str
    leverage: int
    max_position_size: float
    side_restriction: str
    is_active: bool
    execution_authorized: bool
    pause_reason: str | None
    consecutive_failures: int
    subaccount_index: int | None
    subaccount_funded: bool
    initial_deposit: float
    telegram_chat_id: int | None
    created_at: datetime
    updated_at: datetime
    # webhook_secret is only returned once, on create

    model_config = {"from_attributes": True}


class BotCreated(BotRead):
    webhook_url: str
    webhook_secret: str
