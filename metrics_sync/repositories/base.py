"""
Shared helpers for repository mixins.

Timestamps are stored as naive UTC ``TIMESTAMP`` values; models always carry
timezone-aware UTC datetimes. Conversion happens only here.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

import duckdb


def to_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC from storage -> aware datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection):
    """Run a batch of writes atomically."""
    conn.execute("BEGIN TRANSACTION")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
