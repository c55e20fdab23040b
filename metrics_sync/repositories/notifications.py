"""
Store notifications and the downloaded report archive.

Neither table feeds metric computation; both are kept for later correlation
and debugging.
"""
import json
from datetime import date, datetime
from typing import Optional, List, Dict, Any

from metrics_sync.models import utcnow
from metrics_sync.observability import get_logger
from metrics_sync.repositories.base import to_db_timestamp, from_db_timestamp

logger = get_logger(__name__)


class NotificationsMixin:
    """Repository for store_notifications and store_reports."""

    async def save_store_notification(
        self,
        app_id: str,
        notification_uuid: str,
        notification_type: Optional[str],
        subtype: Optional[str],
        signed_at: Optional[datetime],
        payload: Dict[str, Any],
    ) -> bool:
        """
        Persist a notification once per UUID.

        Returns:
            True if stored, False if the UUID was already known
        """
        async with self.connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM store_notifications WHERE notification_uuid = ?",
                [notification_uuid]
            ).fetchone()
            if exists:
                return False
            conn.execute("""
                INSERT INTO store_notifications
                    (notification_uuid, app_id, notification_type, subtype, signed_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                notification_uuid,
                app_id,
                notification_type,
                subtype,
                to_db_timestamp(signed_at),
                json.dumps(payload, default=str),
            ])
        return True

    async def get_store_notifications(self, app_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.connection() as conn:
            rows = conn.execute("""
                SELECT notification_uuid, notification_type, subtype, signed_at, payload
                FROM store_notifications
                WHERE app_id = ?
                ORDER BY received_at DESC
                LIMIT ?
            """, [app_id, limit]).fetchall()
        return [
            {
                "notification_uuid": r[0],
                "notification_type": r[1],
                "subtype": r[2],
                "signed_at": from_db_timestamp(r[3]).isoformat() if r[3] else None,
                "payload": json.loads(r[4]),
            }
            for r in rows
        ]

    async def save_store_report(
        self,
        app_id: str,
        report_date: date,
        report_type: str,
        row_count: int,
        summary: Dict[str, Any],
    ) -> None:
        """Archive metadata and summary counts of a downloaded report."""
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO store_reports (app_id, report_date, report_type, row_count, summary, downloaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (app_id, report_date, report_type) DO UPDATE SET
                    row_count = excluded.row_count,
                    summary = excluded.summary,
                    downloaded_at = excluded.downloaded_at
            """, [app_id, report_date, report_type, row_count,
                  json.dumps(summary, default=str), to_db_timestamp(utcnow())])

    async def get_store_reports(self, app_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        async with self.connection() as conn:
            rows = conn.execute("""
                SELECT report_date, report_type, row_count, summary
                FROM store_reports
                WHERE app_id = ?
                ORDER BY report_date DESC, report_type
                LIMIT ?
            """, [app_id, limit]).fetchall()
        return [
            {
                "report_date": r[0].isoformat(),
                "report_type": r[1],
                "row_count": r[2],
                "summary": json.loads(r[3]) if r[3] else {},
            }
            for r in rows
        ]
