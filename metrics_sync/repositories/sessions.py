"""
Sync sessions, sync logs and per-platform chunk progress.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from metrics_sync.models import (
    Platform, SessionStatus, SyncSession, SyncLogEntry, LogLevel, utcnow,
)
from metrics_sync.observability import get_logger
from metrics_sync.repositories.base import to_db_timestamp, from_db_timestamp, transaction

logger = get_logger(__name__)

_SESSION_COLUMNS = "id, app_id, status, started_at, finished_at, force_historical, platform"


def _row_to_session(row) -> SyncSession:
    return SyncSession(
        id=row[0],
        app_id=row[1],
        status=SessionStatus(row[2]),
        started_at=from_db_timestamp(row[3]),
        finished_at=from_db_timestamp(row[4]),
        force_historical=bool(row[5]),
        platform=Platform(row[6]) if row[6] else None,
    )


class SessionsMixin:
    """Repository for sync session lifecycle and the user-facing sync log."""

    # ─── Sessions ────────────────────────────────────────────────────────────

    async def start_session(self, session: SyncSession) -> List[str]:
        """
        Cancel any active session for the app and insert the new one.

        Both writes happen in one transaction under the store lock, so
        there is never more than one active session per app.

        Returns:
            Ids of sessions that were cancelled
        """
        async with self.connection() as conn:
            with transaction(conn):
                rows = conn.execute(
                    "SELECT id FROM sync_sessions WHERE app_id = ? AND status = ?",
                    [session.app_id, SessionStatus.ACTIVE.value]
                ).fetchall()
                cancelled = [r[0] for r in rows]
                if cancelled:
                    conn.execute(
                        "UPDATE sync_sessions SET status = ?, finished_at = ? WHERE app_id = ? AND status = ?",
                        [SessionStatus.CANCELLED.value, to_db_timestamp(utcnow()),
                         session.app_id, SessionStatus.ACTIVE.value]
                    )
                conn.execute(
                    f"INSERT INTO sync_sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        session.id,
                        session.app_id,
                        session.status.value,
                        to_db_timestamp(session.started_at),
                        to_db_timestamp(session.finished_at),
                        session.force_historical,
                        session.platform.value if session.platform else None,
                    ]
                )

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} previous session(s) for app {session.app_id}")
        return cancelled

    async def get_session(self, session_id: str) -> Optional[SyncSession]:
        async with self.connection() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sync_sessions WHERE id = ?",
                [session_id]
            ).fetchone()
        return _row_to_session(row) if row else None

    async def get_active_session(self, app_id: str) -> Optional[SyncSession]:
        async with self.connection() as conn:
            row = conn.execute(
                f"""SELECT {_SESSION_COLUMNS} FROM sync_sessions
                    WHERE app_id = ? AND status = ?
                    ORDER BY started_at DESC LIMIT 1""",
                [app_id, SessionStatus.ACTIVE.value]
            ).fetchone()
        return _row_to_session(row) if row else None

    async def get_latest_session(self, app_id: str) -> Optional[SyncSession]:
        async with self.connection() as conn:
            row = conn.execute(
                f"""SELECT {_SESSION_COLUMNS} FROM sync_sessions
                    WHERE app_id = ?
                    ORDER BY started_at DESC LIMIT 1""",
                [app_id]
            ).fetchone()
        return _row_to_session(row) if row else None

    async def count_active_sessions(self, app_id: str) -> int:
        async with self.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_sessions WHERE app_id = ? AND status = ?",
                [app_id, SessionStatus.ACTIVE.value]
            ).fetchone()[0]

    async def finish_session(self, session_id: str, status: SessionStatus) -> bool:
        """
        Move an active session to a terminal status.

        Returns:
            False if the session was no longer active (e.g. already cancelled)
        """
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT status FROM sync_sessions WHERE id = ?", [session_id]
            ).fetchone()
            if not row or row[0] != SessionStatus.ACTIVE.value:
                return False
            conn.execute(
                "UPDATE sync_sessions SET status = ?, finished_at = ? WHERE id = ?",
                [status.value, to_db_timestamp(utcnow()), session_id]
            )
        return True

    async def cancel_active_sessions(self, app_id: str) -> List[str]:
        """Cancel every active session for the app."""
        async with self.connection() as conn:
            rows = conn.execute(
                "SELECT id FROM sync_sessions WHERE app_id = ? AND status = ?",
                [app_id, SessionStatus.ACTIVE.value]
            ).fetchall()
            if rows:
                conn.execute(
                    "UPDATE sync_sessions SET status = ?, finished_at = ? WHERE app_id = ? AND status = ?",
                    [SessionStatus.CANCELLED.value, to_db_timestamp(utcnow()),
                     app_id, SessionStatus.ACTIVE.value]
                )
        return [r[0] for r in rows]

    async def is_session_cancelled(self, session_id: str) -> bool:
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT status FROM sync_sessions WHERE id = ?", [session_id]
            ).fetchone()
        return bool(row) and row[0] == SessionStatus.CANCELLED.value

    # ─── Sync Logs ───────────────────────────────────────────────────────────

    async def add_sync_log(self, entry: SyncLogEntry) -> None:
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_logs (app_id, session_id, logged_at, level, message)
                VALUES (?, ?, ?, ?, ?)
            """, [
                entry.app_id,
                entry.session_id,
                to_db_timestamp(entry.timestamp),
                entry.level.value,
                entry.message,
            ])

    async def get_sync_logs(
        self,
        app_id: str,
        session_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        """Most recent log lines, oldest first."""
        query = "SELECT app_id, session_id, logged_at, level, message FROM sync_logs WHERE app_id = ?"
        params: list = [app_id]
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            SyncLogEntry(
                app_id=r[0],
                session_id=r[1],
                timestamp=from_db_timestamp(r[2]),
                level=LogLevel(r[3]),
                message=r[4],
            )
            for r in reversed(rows)
        ]

    # ─── Chunk Progress ──────────────────────────────────────────────────────

    async def record_progress(
        self,
        session_id: str,
        platform: Platform,
        chunks_completed: int,
        total_chunks: int,
        last_chunk_end: Optional[datetime] = None,
    ) -> None:
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_progress
                    (session_id, platform, chunks_completed, total_chunks, last_chunk_end, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (session_id, platform) DO UPDATE SET
                    chunks_completed = excluded.chunks_completed,
                    total_chunks = excluded.total_chunks,
                    last_chunk_end = excluded.last_chunk_end,
                    updated_at = excluded.updated_at
            """, [session_id, platform.value, chunks_completed, total_chunks,
                  to_db_timestamp(last_chunk_end), to_db_timestamp(utcnow())])

    async def get_progress(self, session_id: str) -> List[Dict[str, Any]]:
        async with self.connection() as conn:
            rows = conn.execute("""
                SELECT platform, chunks_completed, total_chunks, last_chunk_end
                FROM sync_progress
                WHERE session_id = ?
                ORDER BY platform
            """, [session_id]).fetchall()
        return [
            {
                "platform": r[0],
                "chunks_completed": r[1],
                "total_chunks": r[2],
                "last_chunk_end": from_db_timestamp(r[3]).isoformat() if r[3] else None,
            }
            for r in rows
        ]
