"""Datetime helpers for persistence and provider payloads."""

from __future__ import annotations

import re
from datetime import datetime, timezone

# Epoch values below this are seconds, above are milliseconds
EPOCH_MILLISECONDS_THRESHOLD = 10_000_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_event_timestamp(raw_value) -> datetime | None:
    """
    Parse a provider timestamp.

    Accepts datetimes, epoch seconds, epoch milliseconds (numbers or digit
    strings) and ISO 8601 strings. Returns None when the value is empty or
    unparseable.
    """
    if raw_value is None or raw_value == "":
        return None

    if isinstance(raw_value, datetime):
        return ensure_utc(raw_value)

    if isinstance(raw_value, bool):
        return None

    if isinstance(raw_value, (int, float)):
        return _from_epoch(float(raw_value))

    value = str(raw_value).strip()
    if re.fullmatch(r"\d{9,13}(\.\d+)?", value):
        return _from_epoch(float(value))

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_utc(dt)


def _from_epoch(ts: float) -> datetime | None:
    if ts <= 0:
        return None
    if ts >= EPOCH_MILLISECONDS_THRESHOLD:
        ts = ts / 1000
    return datetime.fromtimestamp(ts, tz=timezone.utc)
