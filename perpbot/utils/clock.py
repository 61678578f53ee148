"""UTC time helpers.

SQLite hands datetimes back without tzinfo, so anything read from the DB goes
through ``as_utc`` before being compared with ``utcnow()``.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
