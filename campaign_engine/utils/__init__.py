"""Utility modules."""

from campaign_engine.utils.datetime_parsing import (
    ensure_utc,
    parse_event_timestamp,
    utc_now,
)

__all__ = [
    "ensure_utc",
    "parse_event_timestamp",
    "utc_now",
]
