"""
Integration tests for metrics_sync/scheduler.py
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from metrics_sync import scheduler as scheduler_module
from metrics_sync.scheduler import DAILY_SYNC_JOB_ID, SyncScheduler, run_daily_sync


class TestSyncScheduler:
    """Tests for SyncScheduler lifecycle and listeners."""

    @pytest.mark.asyncio
    async def test_start_registers_daily_job(self):
        """Starting adds the daily cron job at the configured time."""
        scheduler = SyncScheduler(hour=4, minute=30)
        scheduler.start()
        try:
            assert scheduler.is_running
            [job] = scheduler.get_jobs()
            assert job["id"] == DAILY_SYNC_JOB_ID
            assert "hour='4'" in job["trigger"]
            assert "minute='30'" in job["trigger"]
            assert job["next_run"] is not None
        finally:
            scheduler.shutdown()
        assert not scheduler.is_running
        assert scheduler.get_jobs() == []

    @pytest.mark.asyncio
    async def test_double_start_ignored(self):
        """A second start keeps the running scheduler."""
        scheduler = SyncScheduler()
        scheduler.start()
        try:
            inner = scheduler._scheduler
            scheduler.start()
            assert scheduler._scheduler is inner
        finally:
            scheduler.shutdown()

    def test_listener_history(self):
        """Executions, errors and misses are recorded newest first."""
        scheduler = SyncScheduler()

        scheduler._on_job_executed(MagicMock(job_id="daily_sync", retval={"apps": 2}))
        scheduler._on_job_error(MagicMock(job_id="daily_sync", exception=RuntimeError("db down")))
        scheduler._on_job_missed(MagicMock(job_id="daily_sync"))

        history = scheduler.get_history()
        assert [run["status"] for run in history] == ["missed", "failed", "success"]
        assert history[1]["error"] == "db down"
        assert history[2]["result"] == {"apps": 2}

    def test_history_capped(self):
        """Only the most recent runs are kept."""
        scheduler = SyncScheduler()
        for _ in range(60):
            scheduler._on_job_missed(MagicMock(job_id="daily_sync"))
        assert len(scheduler._history) == 50


class TestDailySyncJob:
    """Tests for the job body."""

    @pytest.mark.asyncio
    async def test_runs_all_apps(self):
        """The job syncs every connected app through the service."""
        service = MagicMock()
        service.sync_all_apps = AsyncMock(return_value={"apps": 1, "completed": 1, "cancelled": 0, "errors": 0})

        with patch("metrics_sync.sync_service.get_sync_service", AsyncMock(return_value=service)):
            result = await run_daily_sync()

        assert result["completed"] == 1
        service.sync_all_apps.assert_awaited_once()


class TestSingleton:
    """Tests for the module-level scheduler helpers."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monkeypatch):
        """start_scheduler and stop_scheduler manage one instance."""
        monkeypatch.setattr(scheduler_module, "_scheduler", None)

        started = scheduler_module.start_scheduler()
        assert scheduler_module.get_scheduler() is started
        assert started.is_running

        scheduler_module.stop_scheduler()
        assert scheduler_module._scheduler is None
