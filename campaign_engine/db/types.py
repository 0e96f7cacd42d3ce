"""Portable column types (PostgreSQL-native, SQLite-compatible)."""

from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, JSON text elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
