"""
Daily sync scheduler using APScheduler.

One cron job, ``daily_sync``, runs an incremental sync for every app with
at least one active platform connection. Executions, failures and misses
are tracked through scheduler listeners.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from metrics_sync.config import config
from metrics_sync.observability import get_logger, correlation_context
from metrics_sync.models import utcnow

logger = get_logger(__name__)

DAILY_SYNC_JOB_ID = "daily_sync"


@dataclass
class JobRun:
    """Record of one job execution."""
    job_id: str
    finished_at: datetime
    status: str
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "finished_at": self.finished_at.isoformat(),
            "status": self.status,
            "error": self.error,
            "result": self.result,
        }


class SyncScheduler:
    """
    Wraps an AsyncIOScheduler running the daily sync.

    Usage:
        scheduler = SyncScheduler()
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(self, hour: Optional[int] = None, minute: Optional[int] = None):
        self.hour = config.scheduler.daily_sync_hour if hour is None else hour
        self.minute = config.scheduler.daily_sync_minute if minute is None else minute
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._history: List[JobRun] = []
        self._max_history = 50

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=config.scheduler.timezone)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._scheduler.add_job(
            run_daily_sync,
            trigger=CronTrigger(hour=self.hour, minute=self.minute, timezone=config.scheduler.timezone),
            id=DAILY_SYNC_JOB_ID,
            name="Daily Sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Scheduler started, daily sync at {self.hour:02d}:{self.minute:02d} UTC")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
        self._scheduler = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ─── Listeners ───────────────────────────────────────────────────────────

    def _record(self, run: JobRun) -> None:
        self._history.append(run)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        self._record(JobRun(
            job_id=event.job_id,
            finished_at=utcnow(),
            status="success",
            result=event.retval if isinstance(event.retval, dict) else None,
        ))

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        error = str(event.exception) if event.exception else "Unknown error"
        self._record(JobRun(job_id=event.job_id, finished_at=utcnow(), status="failed", error=error))
        logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        self._record(JobRun(job_id=event.job_id, finished_at=utcnow(), status="missed"))
        logger.warning(f"Job {event.job_id} missed scheduled execution", extra={"job_id": event.job_id})

    # ─── Introspection ───────────────────────────────────────────────────────

    def get_jobs(self) -> List[Dict[str, Any]]:
        if not self._scheduler:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self._scheduler.get_jobs()
        ]

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [run.to_dict() for run in reversed(self._history[-limit:])]


async def run_daily_sync() -> Dict[str, Any]:
    """Job body: incremental sync of all apps."""
    from metrics_sync.sync_service import get_sync_service

    with correlation_context():
        logger.info("Starting daily sync job")
        service = await get_sync_service()
        return await service.sync_all_apps()


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_scheduler: Optional[SyncScheduler] = None


def get_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler()
    return _scheduler


def start_scheduler() -> SyncScheduler:
    scheduler = get_scheduler()
    scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        _scheduler = None
