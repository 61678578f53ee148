"""Turn a raw TradingView webhook body into a validated TradeIntent.

Accepted shape (field names case-insensitive)::

    {"botId": 7, "action": "buy", "contracts": "33", "symbol": "SOLUSDT.P"}

``contracts`` (or ``position_size``) is a percentage of the bot's maximum
position size. A value of exactly zero in either field, string or number,
means "close the current position" whatever ``action`` says.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from perpbot.engine.idempotency import compute_signal_hash
from perpbot.errors import ValidationError
from perpbot.utils.clock import utcnow
from perpbot.utils.constants import CLOSE_VERBS, OPEN_VERBS, SECRET_FIELDS, SIZE_FIELDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeIntent:
    bot_id: int
    action: str  # "open" or "close"
    direction: str | None  # "long" / "short"; None for closes
    size_pct: float  # 0 for closes
    symbol: str
    raw_payload: dict[str, Any] = field(hash=False, compare=False)
    signal_hash: str = ""
    received_at: datetime = field(default_factory=utcnow)

    @property
    def is_close(self) -> bool:
        return self.action == "close"


def _parse_number(field_name: str, value) -> float:
    """Parse a string or number into a finite, non-negative float."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be a number")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise ValidationError(field_name, "must not be empty")
        try:
            number = float(text)
        except ValueError:
            raise ValidationError(field_name, f"not a number: {value!r}") from None
    else:
        raise ValidationError(field_name, "must be a number")

    if not math.isfinite(number):
        raise ValidationError(field_name, "must be finite")
    if number < 0:
        raise ValidationError(field_name, "must not be negative")
    return number


def _canonical_value(value):
    """Normalize a payload value so '33', 33 and 33.0 hash the same."""
    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            return text.lower()
        if math.isfinite(number):
            return _canonical_value(number)
        return text.lower()
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        if float(value).is_integer():
            return int(value)
        return float(value)
    if isinstance(value, dict):
        return {str(k).lower(): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_canonical_value(v) for v in value]
    return str(value)


def normalize_payload(body: dict[str, Any]) -> dict[str, Any]:
    """Lower-cased keys, secrets removed, values canonicalized."""
    return {
        str(k).lower(): _canonical_value(v)
        for k, v in body.items()
        if str(k).lower() not in SECRET_FIELDS
    }


def _bot_id_from_body(payload: dict[str, Any]):
    for key in ("botid", "bot_id"):
        if key in payload:
            return payload[key]
    return None


def validate_signal(bot_id: int, body: Any) -> TradeIntent:
    """Validate ``body`` for ``bot_id``; raises ValidationError naming the bad field."""
    if not isinstance(body, dict):
        raise ValidationError("body", "must be a JSON object")

    payload = {str(k).lower(): v for k, v in body.items()}

    body_bot = _bot_id_from_body(payload)
    if body_bot is not None and str(body_bot).strip() != str(bot_id):
        raise ValidationError("botId", f"does not match webhook bot {bot_id}")

    symbol = payload.get("symbol")
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError("symbol", "required")

    action = payload.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ValidationError("action", "required")
    verb = action.strip().lower()

    sizes: dict[str, float] = {}
    for name in SIZE_FIELDS:
        if name in payload and payload[name] is not None:
            sizes[name] = _parse_number(name, payload[name])

    # Zero in any size field wins over the literal action, recognized or not
    zero_size = any(v == 0 for v in sizes.values())
    if not zero_size and verb not in OPEN_VERBS and verb not in CLOSE_VERBS:
        raise ValidationError("action", f"unrecognized action {action!r}")

    if not sizes and verb not in CLOSE_VERBS:
        raise ValidationError("contracts", "contracts or position_size required")

    is_close = zero_size or verb in CLOSE_VERBS

    if is_close:
        intent_action, direction, size_pct = "close", None, 0.0
    else:
        intent_action = "open"
        direction = OPEN_VERBS[verb]
        size_pct = next(sizes[name] for name in SIZE_FIELDS if name in sizes)
        if size_pct > 100:
            raise ValidationError("contracts", "percentage must be between 0 and 100")

    normalized = normalize_payload(body)
    intent = TradeIntent(
        bot_id=bot_id,
        action=intent_action,
        direction=direction,
        size_pct=size_pct,
        symbol=symbol.strip(),
        raw_payload=normalized,
        signal_hash=compute_signal_hash(bot_id, normalized),
    )
    logger.debug(
        f"[bot {bot_id}] Signal {intent.action} {intent.direction or ''} "
        f"{intent.size_pct:g}% {intent.symbol}"
    )
    return intent
