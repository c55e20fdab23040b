"""
DuckDB store for subscriptions, revenue events and metrics snapshots.

Domain-specific methods are organized into repository mixins:
- ConnectionsMixin: apps and platform connections (credential blobs, last sync)
- SessionsMixin: sync sessions, sync logs, chunk progress
- BillingMixin: canonical subscriptions and revenue events
- SnapshotsMixin: daily metrics snapshots and the unified-row invariant
- NotificationsMixin: store notifications and downloaded report archive
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any

import duckdb
import pandas as pd

from metrics_sync.config import config
from metrics_sync.exceptions import QueryTimeoutError
from metrics_sync.observability import get_logger
from metrics_sync.repositories import (
    ConnectionsMixin, SessionsMixin, BillingMixin, SnapshotsMixin, NotificationsMixin,
)

logger = get_logger(__name__)

DEFAULT_QUERY_TIMEOUT = config.storage.query_timeout
LONG_QUERY_TIMEOUT = config.storage.long_query_timeout


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS apps (
    id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    week_start_day VARCHAR NOT NULL DEFAULT 'monday',
    currency VARCHAR NOT NULL DEFAULT 'USD',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE SEQUENCE IF NOT EXISTS seq_platform_connections START 1;

CREATE TABLE IF NOT EXISTS platform_connections (
    id INTEGER PRIMARY KEY DEFAULT nextval('seq_platform_connections'),
    app_id VARCHAR NOT NULL,
    platform VARCHAR NOT NULL,
    credentials VARCHAR NOT NULL,  -- JSON or Fernet token
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_sync TIMESTAMP,
    UNIQUE (app_id, platform)
);

CREATE TABLE IF NOT EXISTS subscriptions (
    app_id VARCHAR NOT NULL,
    platform VARCHAR NOT NULL,
    external_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    product_id VARCHAR,
    start_date TIMESTAMP NOT NULL,
    end_date TIMESTAMP,
    is_trial BOOLEAN NOT NULL DEFAULT FALSE,
    will_cancel BOOLEAN NOT NULL DEFAULT FALSE,
    is_in_grace BOOLEAN NOT NULL DEFAULT FALSE,
    amount DOUBLE,
    billing_interval VARCHAR,
    interval_count INTEGER NOT NULL DEFAULT 1,
    currency VARCHAR,
    canceled_at TIMESTAMP,
    trial_end TIMESTAMP,
    raw_status VARCHAR,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (app_id, platform, external_id)
);

CREATE TABLE IF NOT EXISTS revenue_events (
    app_id VARCHAR NOT NULL,
    platform VARCHAR NOT NULL,
    external_id VARCHAR NOT NULL,
    subscription_external_id VARCHAR NOT NULL,
    event_type VARCHAR NOT NULL,
    amount DOUBLE NOT NULL,
    amount_excluding_tax DOUBLE,
    amount_proceeds DOUBLE,
    currency VARCHAR,
    product_id VARCHAR,
    occurred_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (app_id, platform, external_id)
);

CREATE TABLE IF NOT EXISTS metrics_snapshots (
    app_id VARCHAR NOT NULL,
    date DATE NOT NULL,
    platform VARCHAR NOT NULL,
    active_subscribers INTEGER NOT NULL DEFAULT 0,
    trial_subscribers INTEGER NOT NULL DEFAULT 0,
    paid_subscribers INTEGER NOT NULL DEFAULT 0,
    monthly_subscribers INTEGER NOT NULL DEFAULT 0,
    yearly_subscribers INTEGER NOT NULL DEFAULT 0,
    mrr DOUBLE NOT NULL DEFAULT 0,
    cancellations INTEGER NOT NULL DEFAULT 0,
    grace_events INTEGER NOT NULL DEFAULT 0,
    first_payments INTEGER NOT NULL DEFAULT 0,
    renewals INTEGER NOT NULL DEFAULT 0,
    monthly_revenue_gross DOUBLE NOT NULL DEFAULT 0,
    monthly_revenue_net DOUBLE NOT NULL DEFAULT 0,
    churn INTEGER NOT NULL DEFAULT 0,
    refunds INTEGER NOT NULL DEFAULT 0,
    net_revenue_estimated BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (app_id, date, platform)
);

CREATE TABLE IF NOT EXISTS sync_sessions (
    id VARCHAR PRIMARY KEY,
    app_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    force_historical BOOLEAN NOT NULL DEFAULT FALSE,
    platform VARCHAR,
    started_at TIMESTAMP NOT NULL,
    finished_at TIMESTAMP
);

CREATE SEQUENCE IF NOT EXISTS seq_sync_logs START 1;

CREATE TABLE IF NOT EXISTS sync_logs (
    id BIGINT PRIMARY KEY DEFAULT nextval('seq_sync_logs'),
    app_id VARCHAR NOT NULL,
    session_id VARCHAR,
    logged_at TIMESTAMP NOT NULL,
    level VARCHAR NOT NULL,
    message VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_progress (
    session_id VARCHAR NOT NULL,
    platform VARCHAR NOT NULL,
    chunks_completed INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL DEFAULT 0,
    last_chunk_end TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (session_id, platform)
);

CREATE TABLE IF NOT EXISTS store_notifications (
    notification_uuid VARCHAR PRIMARY KEY,
    app_id VARCHAR NOT NULL,
    notification_type VARCHAR,
    subtype VARCHAR,
    signed_at TIMESTAMP,
    payload VARCHAR NOT NULL,
    received_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS store_reports (
    app_id VARCHAR NOT NULL,
    report_date DATE NOT NULL,
    report_type VARCHAR NOT NULL,
    row_count INTEGER NOT NULL DEFAULT 0,
    summary VARCHAR,  -- JSON summary counts
    downloaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (app_id, report_date, report_type)
);
"""


class MetricsStore(
    ConnectionsMixin, SessionsMixin, BillingMixin, SnapshotsMixin, NotificationsMixin,
):
    """
    Async-compatible DuckDB store.

    Features:
    - Persistent storage (survives restarts)
    - Idempotent upserts keyed by platform identifiers
    - Thread offloading for long reads to avoid blocking the event loop
    """

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path else config.storage.db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # Serializes all database access
        self._executor: Optional[ThreadPoolExecutor] = None
        self._total_queries = 0

    async def connect(self) -> None:
        """Open the database, create the schema and the worker thread."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(str(self.db_path))
                self._connection.execute(SCHEMA_SQL)

                # Single worker - DuckDB connections need serialized access
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")

                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection and thread pool."""
        async with self._lock:
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None

            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    async def checkpoint(self) -> None:
        """Flush the WAL into the main database file."""
        async with self._lock:
            if self._connection:
                self._connection.execute("CHECKPOINT")

    @asynccontextmanager
    async def connection(self):
        """Yield the connection while holding the store lock."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            self._total_queries += 1
            yield self._connection

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _run_in_executor(self, query: str, fn, timeout: float, label: str):
        async with self.connection():
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=timeout)
            except asyncio.TimeoutError:
                raise QueryTimeoutError(query, timeout, label)

    async def _fetch_all(
        self,
        query: str,
        params: list = None,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> List[tuple]:
        """
        Execute query and fetch all rows on the worker thread.

        Raises:
            QueryTimeoutError: If query exceeds timeout
        """
        def _run():
            return self._connection.execute(query, params or []).fetchall()

        return await self._run_in_executor(query, _run, timeout, "Fetch all failed")

    async def _fetch_df(
        self,
        query: str,
        params: list = None,
        timeout: float = LONG_QUERY_TIMEOUT,
    ) -> pd.DataFrame:
        """
        Execute query and return a pandas DataFrame.

        Raises:
            QueryTimeoutError: If query exceeds timeout
        """
        def _run():
            return self._connection.execute(query, params or []).fetchdf()

        return await self._run_in_executor(query, _run, timeout, "Fetch DataFrame failed")

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts per table and database size."""
        async with self.connection() as conn:
            counts = {}
            for table in ("apps", "platform_connections", "subscriptions", "revenue_events", "metrics_snapshots"):
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        size_mb = 0.0
        if self.db_path.exists():
            size_mb = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return {**counts, "db_size_mb": size_mb, "total_queries": self._total_queries}


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store_instance: Optional[MetricsStore] = None
_store_lock = asyncio.Lock()


async def get_store() -> MetricsStore:
    """Get singleton store instance (coroutine-safe)."""
    global _store_instance
    async with _store_lock:
        if _store_instance is None:
            _store_instance = MetricsStore()
            await _store_instance.connect()
    return _store_instance


async def close_store() -> None:
    """Close singleton store instance."""
    global _store_instance
    if _store_instance:
        await _store_instance.close()
        _store_instance = None
