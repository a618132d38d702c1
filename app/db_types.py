"""Database-agnostic type definitions for SQLAlchemy models.

Snapshots and selected specifications are stored as JSON so the same models
run on PostgreSQL in production and SQLite in tests.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Numeric
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Renders as native UUID on PostgreSQL and CHAR(32) elsewhere
UUIDType = PG_UUID

# Monetary columns
Money = Numeric(12, 2)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
