"""
Daily metrics snapshots.

Platform rows are written by the snapshot builder. Unified rows are only
ever produced by ``rebuild_unified_snapshots`` from the stored platform rows.
"""
from datetime import date
from typing import Optional, List, Iterable

import pandas as pd

from metrics_sync.exceptions import InvariantViolation
from metrics_sync.models import Platform, MetricsSnapshot, ALL_METRICS
from metrics_sync.observability import get_logger
from metrics_sync.repositories.base import transaction

logger = get_logger(__name__)

_SNAPSHOT_COLUMNS = MetricsSnapshot.column_names()
_COLUMN_SQL = ", ".join(_SNAPSHOT_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in _SNAPSHOT_COLUMNS)
_UPDATE_SQL = ",\n".join(
    f"{name} = excluded.{name}" for name in list(ALL_METRICS) + ["net_revenue_estimated"]
)


def _snapshot_row(snapshot: MetricsSnapshot) -> list:
    row = []
    for name in _SNAPSHOT_COLUMNS:
        value = getattr(snapshot, name)
        if name == "platform":
            value = value.value
        row.append(value)
    return row


def _row_to_snapshot(row) -> MetricsSnapshot:
    data = dict(zip(_SNAPSHOT_COLUMNS, row))
    data["platform"] = Platform(data["platform"])
    data["net_revenue_estimated"] = bool(data["net_revenue_estimated"])
    return MetricsSnapshot(**data)


class SnapshotsMixin:
    """Repository for metrics_snapshots."""

    def _write_snapshots(self, conn, snapshots: List[MetricsSnapshot]) -> None:
        conn.executemany(f"""
            INSERT INTO metrics_snapshots ({_COLUMN_SQL})
            VALUES ({_PLACEHOLDERS})
            ON CONFLICT (app_id, date, platform) DO UPDATE SET
                {_UPDATE_SQL}
        """, [_snapshot_row(s) for s in snapshots])

    async def upsert_platform_snapshots(self, snapshots: List[MetricsSnapshot]) -> int:
        """
        Upsert per-platform rows keyed by (app, date, platform).

        Raises:
            InvariantViolation: If any row is a unified row
        """
        for snapshot in snapshots:
            if snapshot.platform is Platform.UNIFIED:
                raise InvariantViolation(
                    f"Unified snapshot for {snapshot.app_id} on {snapshot.date} must be derived, not written"
                )
        if not snapshots:
            return 0

        async with self.connection() as conn:
            with transaction(conn):
                self._write_snapshots(conn, snapshots)
        return len(snapshots)

    async def rebuild_unified_snapshots(self, app_id: str, dates: Iterable[date]) -> int:
        """
        Recompute unified rows as the field-wise sum of stored platform rows.

        Returns:
            Number of unified rows written
        """
        days = sorted(set(dates))
        if not days:
            return 0

        async with self.connection() as conn:
            with transaction(conn):
                rows = conn.execute(f"""
                    SELECT {_COLUMN_SQL} FROM metrics_snapshots
                    WHERE app_id = ? AND platform != ? AND date >= ? AND date <= ?
                """, [app_id, Platform.UNIFIED.value, days[0], days[-1]]).fetchall()

                by_day = {}
                for row in rows:
                    snapshot = _row_to_snapshot(row)
                    by_day.setdefault(snapshot.date, []).append(snapshot)

                unified = [MetricsSnapshot.unified_from(app_id, day, by_day.get(day, [])) for day in days]
                self._write_snapshots(conn, unified)

        return len(unified)

    async def get_snapshots(
        self,
        app_id: str,
        platform: Optional[Platform] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[MetricsSnapshot]:
        """Snapshots in [start, end] ordered by date then platform."""
        query = f"SELECT {_COLUMN_SQL} FROM metrics_snapshots WHERE app_id = ?"
        params: list = [app_id]
        if platform is not None:
            query += " AND platform = ?"
            params.append(platform.value)
        if start is not None:
            query += " AND date >= ?"
            params.append(start)
        if end is not None:
            query += " AND date <= ?"
            params.append(end)
        query += " ORDER BY date, platform"

        rows = await self._fetch_all(query, params)
        return [_row_to_snapshot(r) for r in rows]

    async def get_snapshots_df(self, app_id: str) -> pd.DataFrame:
        """All snapshots for an app as a DataFrame."""
        return await self._fetch_df(
            f"SELECT {_COLUMN_SQL} FROM metrics_snapshots WHERE app_id = ? ORDER BY date, platform",
            [app_id],
        )

    async def get_latest_snapshot_date(self, app_id: str) -> Optional[date]:
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT MAX(date) FROM metrics_snapshots WHERE app_id = ?", [app_id]
            ).fetchone()
        return row[0] if row else None

    async def count_snapshots(self, app_id: str) -> int:
        async with self.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM metrics_snapshots WHERE app_id = ?", [app_id]
            ).fetchone()[0]
