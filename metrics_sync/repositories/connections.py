"""
Apps and platform connections.

Credential blobs are stored opaque; decryption lives in metrics_sync.credentials.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from metrics_sync.models import App, Platform, WeekStart
from metrics_sync.observability import get_logger
from metrics_sync.repositories.base import to_db_timestamp, from_db_timestamp

logger = get_logger(__name__)


class ConnectionsMixin:
    """Repository for apps and (app, platform) connections."""

    # ─── Apps ────────────────────────────────────────────────────────────────

    async def upsert_app(self, app: App) -> None:
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO apps (id, name, week_start_day, currency)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    week_start_day = excluded.week_start_day,
                    currency = excluded.currency
            """, [app.id, app.name, app.week_start_day.value, app.currency])

    async def get_app(self, app_id: str) -> Optional[App]:
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT id, name, week_start_day, currency FROM apps WHERE id = ?",
                [app_id]
            ).fetchone()
        if not row:
            return None
        return App(id=row[0], name=row[1], week_start_day=WeekStart(row[2]), currency=row[3])

    async def list_apps(self) -> List[App]:
        async with self.connection() as conn:
            rows = conn.execute(
                "SELECT id, name, week_start_day, currency FROM apps ORDER BY id"
            ).fetchall()
        return [App(id=r[0], name=r[1], week_start_day=WeekStart(r[2]), currency=r[3]) for r in rows]

    # ─── Connections ─────────────────────────────────────────────────────────

    async def upsert_connection_blob(
        self,
        app_id: str,
        platform: Platform,
        credentials_blob: str,
        is_active: bool = True,
    ) -> int:
        """
        Create or replace the connection for (app, platform).

        Returns:
            Connection id
        """
        if platform is Platform.UNIFIED:
            raise ValueError("unified is not a connectable platform")

        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO platform_connections (app_id, platform, credentials, is_active)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (app_id, platform) DO UPDATE SET
                    credentials = excluded.credentials,
                    is_active = excluded.is_active
            """, [app_id, platform.value, credentials_blob, is_active])
            row = conn.execute(
                "SELECT id FROM platform_connections WHERE app_id = ? AND platform = ?",
                [app_id, platform.value]
            ).fetchone()

        logger.info(f"Saved {platform.value} connection for app {app_id}")
        return row[0]

    async def get_connection_rows(self, app_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        """Raw connection rows (credentials still encoded)."""
        query = """
            SELECT id, app_id, platform, credentials, is_active, last_sync
            FROM platform_connections
            WHERE app_id = ?
        """
        if active_only:
            query += " AND is_active"
        query += " ORDER BY id"

        async with self.connection() as conn:
            rows = conn.execute(query, [app_id]).fetchall()

        return [
            {
                "id": r[0],
                "app_id": r[1],
                "platform": Platform(r[2]),
                "credentials": r[3],
                "is_active": bool(r[4]),
                "last_sync": from_db_timestamp(r[5]),
            }
            for r in rows
        ]

    async def get_active_platforms(self, app_id: str) -> List[Platform]:
        async with self.connection() as conn:
            rows = conn.execute(
                "SELECT platform FROM platform_connections WHERE app_id = ? AND is_active ORDER BY platform",
                [app_id]
            ).fetchall()
        return [Platform(r[0]) for r in rows]

    async def update_last_sync(self, connection_id: int, timestamp: datetime) -> None:
        """Single-row write of the incremental sync watermark."""
        async with self.connection() as conn:
            conn.execute(
                "UPDATE platform_connections SET last_sync = ? WHERE id = ?",
                [to_db_timestamp(timestamp), connection_id]
            )

    async def set_connection_active(self, app_id: str, platform: Platform, is_active: bool) -> None:
        async with self.connection() as conn:
            conn.execute(
                "UPDATE platform_connections SET is_active = ? WHERE app_id = ? AND platform = ?",
                [is_active, app_id, platform.value]
            )

    async def get_app_ids_with_active_connections(self) -> List[str]:
        async with self.connection() as conn:
            rows = conn.execute("""
                SELECT DISTINCT app_id FROM platform_connections
                WHERE is_active
                ORDER BY app_id
            """).fetchall()
        return [r[0] for r in rows]
