"""
Sync orchestrator for platform subscription data.

Owns the sync session lifecycle of one app:
- At most one active session per app (starting one cancels the previous)
- Platforms run sequentially in a fixed order (Stripe, Google Play, App Store)
- Long windows are split into chunks, each persisted before the next starts
- Cancellation is cooperative, checked between chunks and adapter batches
- A failing platform is logged and skipped; the session still completes
"""
import asyncio
import uuid
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from metrics_sync.adapters import get_adapter
from metrics_sync.adapters.base import FetchContext, FetchWindow, PlatformAdapter
from metrics_sync.config import config
from metrics_sync.credentials import CredentialProvider
from metrics_sync.events import events, SyncEvent
from metrics_sync.exceptions import InvariantViolation
from metrics_sync.models import (
    LogLevel,
    Platform,
    PlatformConnection,
    SessionStatus,
    SyncLogEntry,
    SyncSession,
    utcnow,
)
from metrics_sync.normalizer import Normalizer
from metrics_sync.observability import (
    get_logger, Timer, add_log_context, clear_log_context, correlation_context,
)
from metrics_sync.snapshots import SnapshotBuilder
from metrics_sync.store import get_store, MetricsStore

logger = get_logger(__name__)

AdapterFactory = Callable[[Platform], PlatformAdapter]


def sync_window(
    connection: PlatformConnection,
    force_historical: bool,
    now: datetime,
) -> FetchWindow:
    """
    Window to fetch for one connection.

    Historical (forced, or never synced) covers HISTORICAL_SYNC_DAYS.
    Incremental starts at last_sync; Google Play reaches further back
    because its reports are restated late.
    """
    if force_historical or connection.last_sync is None:
        return FetchWindow(now - timedelta(days=config.sync.historical_days), now)

    start = min(connection.last_sync, now)
    if connection.platform is Platform.GOOGLEPLAY:
        start -= timedelta(days=config.sync.google_play_lookback_days)
    return FetchWindow(start, now)


def order_connections(connections: List[PlatformConnection]) -> List[PlatformConnection]:
    """Sort connections into processing order."""
    rank = {platform: i for i, platform in enumerate(Platform.sources())}
    return sorted(connections, key=lambda c: rank.get(c.platform, len(rank)))


class SyncService:
    """
    Runs sync sessions for apps.

    ``trigger_sync`` starts a session in the background and returns its id;
    ``sync_app`` runs one to completion. Both go through ``run_session``.
    """

    def __init__(
        self,
        store: MetricsStore,
        provider: Optional[CredentialProvider] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self.store = store
        self.provider = provider or CredentialProvider(store)
        self.adapter_factory = adapter_factory
        self.normalizer = Normalizer(store)
        self.builder = SnapshotBuilder(store)
        self._tasks: Dict[str, asyncio.Task] = {}

    async def _log(self, session: SyncSession, message: str, level: LogLevel = LogLevel.INFO) -> None:
        await self.store.add_sync_log(SyncLogEntry(
            app_id=session.app_id,
            session_id=session.id,
            message=message,
            level=level,
        ))

    # ─── Session Lifecycle ───────────────────────────────────────────────────

    async def start_session(
        self,
        app_id: str,
        force_historical: bool = False,
        platform: Optional[Platform] = None,
    ) -> SyncSession:
        """Create the new active session, cancelling any previous one."""
        if platform is Platform.UNIFIED:
            raise ValueError("unified cannot be synced, choose a real platform")

        session = SyncSession(
            id=uuid.uuid4().hex,
            app_id=app_id,
            status=SessionStatus.ACTIVE,
            started_at=utcnow(),
            force_historical=force_historical,
            platform=platform,
        )
        cancelled = await self.store.start_session(session)

        scope = platform.display_name if platform else "all platforms"
        mode = "historical" if force_historical else "incremental"
        await self._log(session, f"Sync started ({mode}, {scope})")
        if cancelled:
            logger.info(
                f"Superseded {len(cancelled)} active session(s) for app {app_id}",
                extra={"app_id": app_id, "cancelled_sessions": cancelled},
            )
        return session

    async def trigger_sync(
        self,
        app_id: str,
        force_historical: bool = False,
        platform: Optional[Platform] = None,
    ) -> str:
        """
        Start a session and run it as a background task.

        Returns:
            The new session id
        """
        session = await self.start_session(app_id, force_historical, platform)
        task = asyncio.create_task(self.run_session(session), name=f"sync-{session.id}")
        self._tasks[app_id] = task
        task.add_done_callback(partial(self._forget_task, app_id))
        return session.id

    def _forget_task(self, app_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(app_id) is task:
            del self._tasks[app_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Sync task for app {app_id} failed: {task.exception()}")

    async def wait_for_session(self, app_id: str) -> Optional[Dict[str, Any]]:
        """Await the app's running background session, if any."""
        task = self._tasks.get(app_id)
        if task is None:
            return None
        return await task

    async def sync_app(
        self,
        app_id: str,
        force_historical: bool = False,
        platform: Optional[Platform] = None,
    ) -> Dict[str, Any]:
        """Start a session and wait for it."""
        session = await self.start_session(app_id, force_historical, platform)
        return await self.run_session(session)

    async def cancel_sync(self, app_id: str) -> List[str]:
        """
        Request cancellation of the app's active session.

        The running task notices at its next chunk or batch boundary.
        """
        cancelled = await self.store.cancel_active_sessions(app_id)
        if cancelled:
            logger.info(f"Cancellation requested for app {app_id}", extra={"sessions": cancelled})
        return cancelled

    async def get_active_sync_status(self, app_id: str) -> Dict[str, Any]:
        session = await self.store.get_active_session(app_id)
        latest = session or await self.store.get_latest_session(app_id)
        return {
            "active": session is not None,
            "session": latest.to_dict() if latest else None,
            "progress": await self.store.get_progress(latest.id) if latest else [],
        }

    # ─── Session Body ────────────────────────────────────────────────────────

    async def run_session(self, session: SyncSession) -> Dict[str, Any]:
        """
        Run every requested platform for an already started session.

        Returns:
            Dict with final status and per-platform outcomes
        """
        with correlation_context(session.id):
            add_log_context(app_id=session.app_id, session_id=session.id)
            try:
                return await self._run(session)
            except (Exception, asyncio.CancelledError) as e:
                logger.error(f"Sync session {session.id} aborted: {e}", exc_info=True)
                await self._log(session, f"Sync aborted: {e}", LogLevel.ERROR)
                await self.store.finish_session(session.id, SessionStatus.CANCELLED)
                raise
            finally:
                clear_log_context()

    async def _run(self, session: SyncSession) -> Dict[str, Any]:
        app_id = session.app_id
        now = utcnow()
        summary: Dict[str, Any] = {"session_id": session.id, "app_id": app_id, "platforms": {}}

        await events.emit(SyncEvent.SYNC_STARTED, {
            "session_id": session.id,
            "app_id": app_id,
            "force_historical": session.force_historical,
            "platform": session.platform.value if session.platform else None,
        })

        connections = await self.provider.get_active_connections(app_id)
        if session.platform is not None:
            connections = [c for c in connections if c.platform is session.platform]
        connections = order_connections(connections)

        if not connections:
            await self._log(session, "No active platform connections")

        cancelled = False
        succeeded: List[PlatformConnection] = []
        with Timer(f"sync_session_{app_id}", logger, warn_threshold_ms=300000):
            for connection in connections:
                outcome = await self._sync_platform(session, connection, now)
                summary["platforms"][connection.platform.value] = outcome
                if outcome["cancelled"]:
                    cancelled = True
                    break
                if not outcome["failed"]:
                    succeeded.append(connection)

        if not cancelled and await self.store.finish_session(session.id, SessionStatus.COMPLETED):
            for connection in succeeded:
                await self.provider.update_last_sync(connection.id, now)
            failed = [p for p, o in summary["platforms"].items() if o["failed"]]
            message = "Sync completed"
            if failed:
                message += f" with failures: {', '.join(failed)}"
            await self._log(session, message, LogLevel.SUCCESS)
            summary["status"] = SessionStatus.COMPLETED.value
            logger.info(f"Sync completed for app {app_id}", extra={"failed_platforms": failed})
            await events.emit(SyncEvent.SYNC_COMPLETED, {
                "session_id": session.id,
                "app_id": app_id,
                "failed_platforms": failed,
            })
            return summary

        # Cancelled mid-run, or between the last chunk and completion
        await self.store.finish_session(session.id, SessionStatus.CANCELLED)
        await self._log(session, "Sync cancelled by user")
        summary["status"] = SessionStatus.CANCELLED.value
        logger.info(f"Sync cancelled for app {app_id}")
        await events.emit(SyncEvent.SYNC_CANCELLED, {"session_id": session.id, "app_id": app_id})
        return summary

    async def _sync_platform(
        self,
        session: SyncSession,
        connection: PlatformConnection,
        now: datetime,
    ) -> Dict[str, Any]:
        """
        Fetch, normalize and snapshot one platform chunk by chunk.

        A failed chunk keeps its partial records but gets no snapshots or
        progress, so the persisted history is always a prefix of the window.
        """
        app_id = session.app_id
        platform = connection.platform
        name = platform.display_name

        window = sync_window(connection, session.force_historical, now)
        chunks = window.chunks(config.sync.chunk_size_days)
        outcome: Dict[str, Any] = {
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
            "chunks_total": len(chunks),
            "chunks_completed": 0,
            "subscriptions": 0,
            "events_inserted": 0,
            "failed": False,
            "cancelled": False,
            "error": None,
            "debug_counters": {},
        }

        await self.store.record_progress(session.id, platform, 0, len(chunks))
        await self._log(
            session,
            f"{name}: syncing {window.start.date()} to {window.end.date()} in {len(chunks)} chunk(s)",
        )

        context = FetchContext(
            app_id=app_id,
            is_cancelled=partial(self.store.is_session_cancelled, session.id),
            report_sink=partial(self.store.save_store_report, app_id),
        )
        adapter = self.adapter_factory(platform)

        try:
            for index, chunk in enumerate(chunks, 1):
                logger.info(
                    f"{name} chunk {index}/{len(chunks)}: {chunk.start.date()} to {chunk.end.date()}",
                    extra={"app_id": app_id, "platform": platform.value},
                )
                result = await adapter.fetch(connection.credentials, chunk, context)
                stats = await self.normalizer.persist(app_id, result)
                outcome["subscriptions"] += stats.subscriptions_upserted
                outcome["events_inserted"] += stats.events_inserted
                outcome["debug_counters"] = result.debug_counters

                if result.failed:
                    outcome["failed"] = True
                    outcome["error"] = result.error
                    await self._log(session, f"{name} sync failed: {result.error}", LogLevel.ERROR)
                    await events.emit(SyncEvent.PLATFORM_FAILED, {
                        "session_id": session.id,
                        "app_id": app_id,
                        "platform": platform.value,
                        "chunk": index,
                        "error": result.error,
                    })
                    break

                if result.cancelled:
                    outcome["cancelled"] = True
                    break

                days = chunk.days()
                await self.builder.build_range(app_id, platform, days[0], days[-1])
                await self.store.record_progress(session.id, platform, index, len(chunks), chunk.end)
                outcome["chunks_completed"] = index

                await self._log(
                    session,
                    f"{name}: chunk {index}/{len(chunks)} saved "
                    f"({stats.subscriptions_upserted} subscriptions, {stats.events_inserted} new revenue events)",
                )
                await events.emit(SyncEvent.CHUNK_PERSISTED, {
                    "session_id": session.id,
                    "app_id": app_id,
                    "platform": platform.value,
                    "chunk": index,
                    "total_chunks": len(chunks),
                })

                if await self.store.is_session_cancelled(session.id):
                    outcome["cancelled"] = True
                    break
        finally:
            await adapter.close()

        return outcome

    # ─── All Apps ────────────────────────────────────────────────────────────

    async def sync_all_apps(self) -> Dict[str, Any]:
        """
        Incremental sync of every app with an active connection, one at a time.

        Returns:
            Dict with counts per final status
        """
        app_ids = await self.store.get_app_ids_with_active_connections()
        summary = {"apps": len(app_ids), "completed": 0, "cancelled": 0, "errors": 0}
        logger.info(f"Daily sync starting for {len(app_ids)} app(s)")

        for app_id in app_ids:
            try:
                result = await self.sync_app(app_id)
            except InvariantViolation:
                raise
            except Exception as e:
                # Failures stay scoped to the app
                logger.error(f"Daily sync failed for app {app_id}: {e}", exc_info=True)
                summary["errors"] += 1
                continue
            if result["status"] == SessionStatus.COMPLETED.value:
                summary["completed"] += 1
            else:
                summary["cancelled"] += 1

        logger.info(f"Daily sync finished: {summary}")
        return summary


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_sync_service: Optional[SyncService] = None


async def get_sync_service() -> SyncService:
    """Get singleton sync service instance."""
    global _sync_service
    if _sync_service is None:
        store = await get_store()
        _sync_service = SyncService(store)
    return _sync_service


def reset_sync_service() -> None:
    """Drop the singleton (used by tests and on shutdown)."""
    global _sync_service
    _sync_service = None
