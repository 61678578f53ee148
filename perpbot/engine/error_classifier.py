"""Map raw venue errors onto retry / fallback / permanent."""

import asyncio
from enum import Enum


class ErrorClass(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    PERMANENT = "permanent"


# Substrings, matched case-insensitively. Checked permanent → fallback → retry.
PERMANENT_PATTERNS = (
    "invalid signature",
    "invalid parameters",
    "401",
    "unauthorized",
    "403",
    "forbidden",
    "account not found",
    "insufficient collateral",
    "insufficient margin",
    "not enough margin",
    "invalid api key",
    "reduce only",
)

FALLBACK_PATTERNS = (
    "no liquidity",
    "insufficient liquidity",
    "auction timeout",
    "auction expired",
    "no maker found",
    "order expired",
    "price impact",
)

RETRY_PATTERNS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "429",
    "-32429",
    "too many requests",
    "rate limit",
    "please wait",
    "503",
    "service unavailable",
    "504",
    "gateway timeout",
    "502",
    "bad gateway",
    "stale",
    "slot expired",
    "oracle not found",
    "invalid oracle",
    "price feed",
    "nonce",
)


def classify_error(error) -> ErrorClass:
    """Classify an exception, message string or anything with a useful str().

    Unrecognized errors default to FALLBACK: an alternate execution path is
    safer than hammering one that keeps failing.
    """
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorClass.RETRY
    message = str(error or "").lower()
    if not message:
        return ErrorClass.FALLBACK

    for pattern in PERMANENT_PATTERNS:
        if pattern in message:
            return ErrorClass.PERMANENT
    for pattern in FALLBACK_PATTERNS:
        if pattern in message:
            return ErrorClass.FALLBACK
    for pattern in RETRY_PATTERNS:
        if pattern in message:
            return ErrorClass.RETRY
    return ErrorClass.FALLBACK
