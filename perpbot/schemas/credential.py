"""Pydantic schemas for Credential API."""

from datetime import datetime
import re

from pydantic import BaseModel, Field, field_validator

_HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64,}$")
_L1_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _check_host(value: str) -> str:
    host = value.strip()
    if not host:
        raise ValueError("must not be empty")
    if not (host.startswith("http://") or host.startswith("https://")):
        raise ValueError("must start with http:// or https://")
    return host.rstrip("/")


def _check_key(value: str) -> str:
    key = value.strip()
    if not _HEX_KEY_RE.fullmatch(key):
        raise ValueError("must be a hex string (at least 64 chars), with optional 0x prefix")
    return key


def _check_l1(value: str) -> str:
    address = value.strip()
    if not _L1_ADDRESS_RE.fullmatch(address):
        raise ValueError("must be a 0x-prefixed 20-byte hex address")
    return address


class CredentialCreate(BaseModel):
    name: str = Field(default="default", min_length=1, max_length=120)
    owner_wallet: str = ""
    lighter_host: str = "https://mainnet.zklighter.elliot.ai"
    api_key_index: int = Field(default=3, ge=0)
    private_key: str  # Raw hex API key; encrypted before storage
    account_index: int = Field(default=0, ge=0)
    l1_address: str

    _host = field_validator("lighter_host")(_check_host)
    _key = field_validator("private_key")(_check_key)
    _l1 = field_validator("l1_address")(_check_l1)


class CredentialUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    lighter_host: str | None = None
    api_key_index: int | None = Field(default=None, ge=0)
    private_key: str | None = None  # If provided, re-encrypts
    account_index: int | None = Field(default=None, ge=0)
    l1_address: str | None = None
    is_active: bool | None = None

    @field_validator("lighter_host")
    @classmethod
    def _validate_optional_host(cls, value: str | None) -> str | None:
        return None if value is None else _check_host(value)

    @field_validator("private_key")
    @classmethod
    def _validate_optional_private_key(cls, value: str | None) -> str | None:
        return None if value is None else _check_key(value)

    @field_validator("l1_address")
    @classmethod
    def _validate_optional_l1(cls, value: str | None) -> str | None:
        return None if value is None else _check_l1(value)


class CredentialRead(BaseModel):
    id: int
    name: str
    owner_wallet: str
    lighter_host: str
    api_key_index: int
    account_index: int
    l1_address: str
    is_active: bool
    created_at: datetime
    # private_key is NEVER exposed

    model_config = {"from_attributes": True}
