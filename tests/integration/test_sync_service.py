"""
Integration tests for metrics_sync/sync_service.py

Runs real sessions against a temporary DuckDB store with scripted adapters
in place of the platform APIs.
"""
import dataclasses
import json
import logging
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from metrics_sync import sync_service as sync_module
from metrics_sync.adapters.base import FetchContext, FetchResult, FetchWindow, PlatformAdapter
from metrics_sync.config import config
from metrics_sync.credentials import CredentialCodec, CredentialProvider
from metrics_sync.events import events, SyncEvent
from metrics_sync.exceptions import ApiError, CredentialError
from metrics_sync.models import (
    Platform,
    PlatformConnection,
    RevenueEvent,
    RevenueEventType,
    SessionStatus,
    Subscription,
    SubscriptionStatus,
    BillingInterval,
)
from metrics_sync.observability import StructuredFormatter
from metrics_sync.sync_service import SyncService, order_connections, sync_window

UTC = timezone.utc

CREDENTIALS = {
    Platform.STRIPE: {"api_key": "sk_test"},
    Platform.GOOGLEPLAY: {"service_account_json": "{}", "bucket_name": "b", "package_name": "com.example"},
    Platform.APPSTORE: {"issuer_id": "i", "key_id": "k", "private_key": "p", "vendor_number": "v"},
}


class ScriptedAdapter(PlatformAdapter):
    """
    Emits one subscription and one first payment per chunk.

    ``fail_on`` makes that call (1-based) store a subscription then raise;
    ``on_call`` runs an async hook with the call number before returning.
    """

    def __init__(self, platform: Platform, fail_on: Optional[int] = None, on_call=None):
        self.platform = platform
        self.fail_on = fail_on
        self.on_call = on_call
        self.windows: List[FetchWindow] = []
        self.closed = 0

    async def _fetch(self, credentials: Dict[str, Any], window: FetchWindow, context: FetchContext,
                     result: FetchResult) -> None:
        self.windows.append(window)
        call = len(self.windows)
        start = window.start + timedelta(hours=1)
        sub_id = f"{self.platform.value}-{start.date().isoformat()}"
        result.subscriptions.append(Subscription(
            platform=self.platform,
            external_id=sub_id,
            status=SubscriptionStatus.ACTIVE,
            start_date=start,
            end_date=start + timedelta(days=365),
            amount=12.0,
            interval=BillingInterval.MONTH,
        ))
        if call == self.fail_on:
            raise ApiError("API returned 500", status_code=500, platform=self.platform.value)
        result.revenue_events.append(RevenueEvent(
            platform=self.platform,
            external_id=f"evt-{sub_id}",
            subscription_external_id=sub_id,
            event_type=RevenueEventType.FIRST_PAYMENT,
            amount=12.0,
            timestamp=start,
        ))
        if self.on_call:
            await self.on_call(call)

    async def close(self) -> None:
        self.closed += 1


class AdapterRegistry:
    """Adapter factory handing out pre-built scripted adapters."""

    def __init__(self, **adapters: ScriptedAdapter):
        self.adapters = {Platform(name): adapter for name, adapter in adapters.items()}

    def __call__(self, platform: Platform) -> PlatformAdapter:
        return self.adapters[platform]


@pytest.fixture
def short_history(monkeypatch):
    """Historical window of exactly three 30-day chunks."""
    patched = dataclasses.replace(
        config,
        sync=dataclasses.replace(config.sync, historical_days=90, chunk_size_days=30),
    )
    monkeypatch.setattr(sync_module, "config", patched)
    return patched


@pytest.fixture
def provider(store):
    return CredentialProvider(store, CredentialCodec())


async def connect(provider: CredentialProvider, *platforms: Platform) -> None:
    for platform in platforms:
        await provider.save_connection("app-1", platform, CREDENTIALS[platform])


async def last_syncs(store) -> Dict[str, Optional[datetime]]:
    rows = await store.get_connection_rows("app-1", active_only=False)
    return {row["platform"].value: row["last_sync"] for row in rows}


class TestSyncWindow:
    """Tests for window selection."""

    NOW = datetime(2024, 6, 1, tzinfo=UTC)

    def connection(self, platform: Platform, last_sync: Optional[datetime]) -> PlatformConnection:
        return PlatformConnection(id=1, app_id="app-1", platform=platform, credentials={}, last_sync=last_sync)

    def test_never_synced_is_historical(self):
        """A connection without last_sync gets the historical window."""
        window = sync_window(self.connection(Platform.STRIPE, None), False, self.NOW)
        assert window.start == self.NOW - timedelta(days=config.sync.historical_days)
        assert window.end == self.NOW

    def test_forced_historical(self):
        """force_historical ignores last_sync."""
        last = self.NOW - timedelta(days=1)
        window = sync_window(self.connection(Platform.STRIPE, last), True, self.NOW)
        assert window.start == self.NOW - timedelta(days=config.sync.historical_days)

    def test_incremental_from_last_sync(self):
        """Incremental windows start at last_sync."""
        last = self.NOW - timedelta(days=2)
        window = sync_window(self.connection(Platform.APPSTORE, last), False, self.NOW)
        assert window.start == last

    def test_google_play_lookback(self):
        """Google Play reaches further back for restated reports."""
        last = self.NOW - timedelta(days=2)
        window = sync_window(self.connection(Platform.GOOGLEPLAY, last), False, self.NOW)
        assert window.start == last - timedelta(days=config.sync.google_play_lookback_days)

    def test_order_connections(self):
        """Processing order is Stripe, Google Play, App Store."""
        connections = [
            self.connection(Platform.APPSTORE, None),
            self.connection(Platform.STRIPE, None),
            self.connection(Platform.GOOGLEPLAY, None),
        ]
        ordered = [c.platform for c in order_connections(connections)]
        assert ordered == [Platform.STRIPE, Platform.GOOGLEPLAY, Platform.APPSTORE]


class TestSessionLifecycle:
    """Tests for session start, completion and the one-active rule."""

    @pytest.mark.asyncio
    async def test_unified_not_syncable(self, store, provider):
        """A unified-only session is refused."""
        service = SyncService(store, provider, AdapterRegistry())
        with pytest.raises(ValueError):
            await service.start_session("app-1", platform=Platform.UNIFIED)

    @pytest.mark.asyncio
    async def test_second_start_cancels_first(self, store, provider):
        """Starting a session cancels the previous active one."""
        service = SyncService(store, provider, AdapterRegistry())
        first = await service.start_session("app-1")
        second = await service.start_session("app-1")

        assert await store.count_active_sessions("app-1") == 1
        assert await store.is_session_cancelled(first.id)
        assert (await store.get_active_session("app-1")).id == second.id

    @pytest.mark.asyncio
    async def test_no_connections_completes(self, store, provider):
        """An app with nothing connected completes with an empty summary."""
        service = SyncService(store, provider, AdapterRegistry())
        result = await service.sync_app("app-1")

        assert result["status"] == "completed"
        assert result["platforms"] == {}
        messages = [e.message for e in await store.get_sync_logs("app-1")]
        assert "No active platform connections" in messages

    @pytest.mark.asyncio
    async def test_full_sync(self, store, provider, short_history):
        """All chunks persist, snapshots are built and last_sync advances."""
        await connect(provider, Platform.STRIPE)
        adapter = ScriptedAdapter(Platform.STRIPE)
        completed = []

        @events.on(SyncEvent.SYNC_COMPLETED)
        async def on_completed(data: dict):
            completed.append(data)

        service = SyncService(store, provider, AdapterRegistry(stripe=adapter))
        result = await service.sync_app("app-1")

        outcome = result["platforms"]["stripe"]
        assert result["status"] == "completed"
        assert outcome["chunks_total"] == 3
        assert outcome["chunks_completed"] == 3
        assert outcome["events_inserted"] == 3
        assert adapter.closed == 1
        assert completed[0]["failed_platforms"] == []

        assert (await last_syncs(store))["stripe"] is not None
        [progress] = await store.get_progress(result["session_id"])
        assert progress["chunks_completed"] == 3

        logs = await store.get_sync_logs("app-1", result["session_id"])
        assert logs[-1].message == "Sync completed"
        assert logs[-1].level.value == "success"

    @pytest.mark.asyncio
    async def test_single_platform_session(self, store, provider, short_history):
        """A platform-scoped session leaves the other connections alone."""
        await connect(provider, Platform.STRIPE, Platform.APPSTORE)
        stripe = ScriptedAdapter(Platform.STRIPE)
        appstore = ScriptedAdapter(Platform.APPSTORE)
        service = SyncService(store, provider, AdapterRegistry(stripe=stripe, appstore=appstore))

        result = await service.sync_app("app-1", platform=Platform.APPSTORE)

        assert list(result["platforms"]) == ["appstore"]
        assert stripe.windows == []
        assert (await last_syncs(store))["stripe"] is None

    @pytest.mark.asyncio
    async def test_log_context_bound_during_session(self, store, provider, short_history):
        """Log lines inside a session carry app and session IDs; the context is cleared after."""
        await connect(provider, Platform.STRIPE)
        seen: Dict[str, Any] = {}

        def format_line() -> Dict[str, Any]:
            record = logging.LogRecord("test", logging.INFO, __file__, 1, "line", None, None)
            return json.loads(StructuredFormatter().format(record))

        async def capture(call: int):
            seen.update(format_line())

        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE, on_call=capture)))
        result = await service.sync_app("app-1")

        assert seen["app_id"] == "app-1"
        assert seen["session_id"] == result["session_id"]
        assert seen["correlation_id"] == result["session_id"]
        assert "session_id" not in format_line()


class TestChunkFailure:
    """Tests for mid-window failures and resuming."""

    @pytest.mark.asyncio
    async def test_failed_chunk_keeps_prefix(self, store, provider, short_history):
        """Chunks before the failure stay; the watermark does not move."""
        await connect(provider, Platform.STRIPE)
        adapter = ScriptedAdapter(Platform.STRIPE, fail_on=3)
        failures = []

        @events.on(SyncEvent.PLATFORM_FAILED)
        async def on_failed(data: dict):
            failures.append(data)

        service = SyncService(store, provider, AdapterRegistry(stripe=adapter))
        result = await service.sync_app("app-1")

        outcome = result["platforms"]["stripe"]
        assert result["status"] == "completed"
        assert outcome["failed"] is True
        assert outcome["chunks_completed"] == 2
        assert "500" in outcome["error"]
        assert failures[0]["chunk"] == 3

        # Partial records of the failed chunk are kept, its snapshots are not
        assert len(await store.get_subscriptions("app-1", Platform.STRIPE)) == 3
        assert len(await store.get_revenue_events("app-1", Platform.STRIPE)) == 2
        third = adapter.windows[2]
        latest = await store.get_latest_snapshot_date("app-1")
        assert latest <= third.start.date()

        [progress] = await store.get_progress(result["session_id"])
        assert progress["chunks_completed"] == 2
        assert (await last_syncs(store))["stripe"] is None

        logs = [e.message for e in await store.get_sync_logs("app-1", result["session_id"])]
        assert any(m.startswith("Stripe sync failed:") for m in logs)
        assert logs[-1] == "Sync completed with failures: stripe"

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, store, provider, short_history):
        """A rerun refetches the window without duplicating events."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE, fail_on=3)))
        await service.sync_app("app-1")

        service.adapter_factory = AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE))
        result = await service.sync_app("app-1")

        outcome = result["platforms"]["stripe"]
        assert outcome["failed"] is False
        assert outcome["events_inserted"] == 1
        assert len(await store.get_revenue_events("app-1", Platform.STRIPE)) == 3
        assert (await last_syncs(store))["stripe"] is not None

    @pytest.mark.asyncio
    async def test_one_platform_failing_does_not_block_others(self, store, provider, short_history):
        """Later platforms still run after an earlier one fails."""
        await connect(provider, Platform.STRIPE, Platform.GOOGLEPLAY)
        registry = AdapterRegistry(
            stripe=ScriptedAdapter(Platform.STRIPE, fail_on=1),
            googleplay=ScriptedAdapter(Platform.GOOGLEPLAY),
        )
        service = SyncService(store, provider, registry)

        result = await service.sync_app("app-1")

        assert result["status"] == "completed"
        assert result["platforms"]["stripe"]["failed"] is True
        assert result["platforms"]["googleplay"]["chunks_completed"] == 3
        syncs = await last_syncs(store)
        assert syncs["stripe"] is None
        assert syncs["googleplay"] is not None

    @pytest.mark.asyncio
    async def test_unreadable_credentials_fail_platform(self, store, provider, short_history):
        """A broken credential blob fails only that platform."""
        await store.upsert_connection_blob("app-1", Platform.STRIPE, "{broken")

        class RejectingAdapter(ScriptedAdapter):
            async def _fetch(self, credentials, window, context, result):
                if not credentials:
                    raise CredentialError("Missing Stripe credentials", platform="stripe")

        service = SyncService(store, provider, AdapterRegistry(stripe=RejectingAdapter(Platform.STRIPE)))
        result = await service.sync_app("app-1")

        assert result["status"] == "completed"
        assert result["platforms"]["stripe"]["failed"] is True

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_fails_platform_only(self, store, provider, short_history):
        """An error outside the sync taxonomy fails that platform and the session still completes."""
        await connect(provider, Platform.STRIPE, Platform.GOOGLEPLAY)

        class CrashingAdapter(ScriptedAdapter):
            async def _fetch(self, credentials, window, context, result):
                raise RuntimeError("unexpected payload shape")

        googleplay = ScriptedAdapter(Platform.GOOGLEPLAY)
        registry = AdapterRegistry(stripe=CrashingAdapter(Platform.STRIPE), googleplay=googleplay)
        service = SyncService(store, provider, registry)

        result = await service.sync_app("app-1")

        assert result["status"] == "completed"
        assert result["platforms"]["stripe"]["failed"] is True
        assert "RuntimeError" in result["platforms"]["stripe"]["error"]
        assert result["platforms"]["googleplay"]["chunks_completed"] == 3
        assert len(googleplay.windows) == 3
        assert (await store.get_latest_session("app-1")).status is SessionStatus.COMPLETED


class TestRerunsAndUnified:
    """Tests for idempotent reruns and unified snapshots."""

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store, provider, short_history):
        """Two forced historical runs leave the same rows."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE)))

        await service.sync_app("app-1", force_historical=True)
        first = await store.get_snapshots("app-1")
        service.adapter_factory = AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE))
        result = await service.sync_app("app-1", force_historical=True)
        second = await store.get_snapshots("app-1")

        assert result["platforms"]["stripe"]["events_inserted"] == 0
        # The second run starts a little later, so it may add the current day
        assert second[:len(first)] == first

    @pytest.mark.asyncio
    async def test_unified_equals_platform_sum(self, store, provider, short_history):
        """Every unified row is the sum of that day's platform rows."""
        await connect(provider, Platform.STRIPE, Platform.GOOGLEPLAY)
        registry = AdapterRegistry(
            stripe=ScriptedAdapter(Platform.STRIPE),
            googleplay=ScriptedAdapter(Platform.GOOGLEPLAY),
        )
        await SyncService(store, provider, registry).sync_app("app-1")

        by_day: Dict[Any, Dict[Platform, Any]] = {}
        for snapshot in await store.get_snapshots("app-1"):
            by_day.setdefault(snapshot.date, {})[snapshot.platform] = snapshot

        assert by_day
        for rows in by_day.values():
            unified = rows.pop(Platform.UNIFIED)
            assert unified.active_subscribers == sum(r.active_subscribers for r in rows.values())
            assert unified.mrr == pytest.approx(sum(r.mrr for r in rows.values()))
            assert unified.first_payments == sum(r.first_payments for r in rows.values())


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self, store, provider, short_history):
        """Cancelling stops after the current chunk and keeps the watermark."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider)

        async def cancel_on_first(call: int):
            if call == 1:
                await service.cancel_sync("app-1")

        adapter = ScriptedAdapter(Platform.STRIPE, on_call=cancel_on_first)
        service.adapter_factory = AdapterRegistry(stripe=adapter)
        cancelled = []

        @events.on(SyncEvent.SYNC_CANCELLED)
        async def on_cancelled(data: dict):
            cancelled.append(data)

        result = await service.sync_app("app-1")

        assert result["status"] == "cancelled"
        assert len(adapter.windows) == 1
        assert result["platforms"]["stripe"]["chunks_completed"] == 1
        assert cancelled
        assert (await last_syncs(store))["stripe"] is None
        assert (await store.get_latest_session("app-1")).status is SessionStatus.CANCELLED

        logs = [e.message for e in await store.get_sync_logs("app-1", result["session_id"])]
        assert logs[-1] == "Sync cancelled by user"

    @pytest.mark.asyncio
    async def test_cancelled_run_stops_later_platforms(self, store, provider, short_history):
        """Platforms after the cancelled one are not started."""
        await connect(provider, Platform.STRIPE, Platform.APPSTORE)
        service = SyncService(store, provider)

        async def cancel(call: int):
            await service.cancel_sync("app-1")

        appstore = ScriptedAdapter(Platform.APPSTORE)
        service.adapter_factory = AdapterRegistry(
            stripe=ScriptedAdapter(Platform.STRIPE, on_call=cancel), appstore=appstore
        )

        result = await service.sync_app("app-1")

        assert result["status"] == "cancelled"
        assert "appstore" not in result["platforms"]
        assert appstore.windows == []

    @pytest.mark.asyncio
    async def test_resume_fills_proceeds_left_by_cancelled_enrichment(self, store, provider, short_history):
        """Events stored without proceeds by a cancelled run get them on the next run."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider)

        class EnrichingAdapter(ScriptedAdapter):
            """Adds proceeds to each event unless the session is cancelled first."""

            async def _fetch(self, credentials, window, context, result):
                await super()._fetch(credentials, window, context, result)
                if await context.cancelled():
                    result.cancelled = True
                    return
                for event in result.revenue_events:
                    event.amount_proceeds = 10.0

        async def cancel(call: int):
            await service.cancel_sync("app-1")

        service.adapter_factory = AdapterRegistry(stripe=EnrichingAdapter(Platform.STRIPE, on_call=cancel))
        first = await service.sync_app("app-1")

        assert first["status"] == "cancelled"
        [stored] = await store.get_revenue_events("app-1", Platform.STRIPE)
        assert stored.amount_proceeds is None
        assert (await last_syncs(store))["stripe"] is None

        service.adapter_factory = AdapterRegistry(stripe=EnrichingAdapter(Platform.STRIPE))
        second = await service.sync_app("app-1")

        assert second["status"] == "completed"
        assert second["platforms"]["stripe"]["events_inserted"] == 2
        stored = await store.get_revenue_events("app-1", Platform.STRIPE)
        assert len(stored) == 3
        assert all(e.amount_proceeds == 10.0 for e in stored)

    @pytest.mark.asyncio
    async def test_background_trigger(self, store, provider, short_history):
        """trigger_sync runs the session as a task that can be awaited."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE)))

        session_id = await service.trigger_sync("app-1")
        status = await service.get_active_sync_status("app-1")
        assert status["session"]["id"] == session_id

        result = await service.wait_for_session("app-1")
        assert result["session_id"] == session_id
        assert result["status"] == "completed"

        status = await service.get_active_sync_status("app-1")
        assert status["active"] is False
        assert status["session"]["status"] == "completed"


class TestSyncAllApps:
    """Tests for the daily all-apps run."""

    @pytest.mark.asyncio
    async def test_only_connected_apps(self, store, provider, short_history):
        """Only apps with an active connection are synced."""
        await connect(provider, Platform.STRIPE)
        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE)))

        summary = await service.sync_all_apps()

        assert summary == {"apps": 1, "completed": 1, "cancelled": 0, "errors": 0}

    @pytest.mark.asyncio
    async def test_failing_app_does_not_stop_others(self, store, provider, short_history):
        """An app whose session raises is counted as an error and the rest still sync."""
        await connect(provider, Platform.STRIPE)
        await provider.save_connection("app-2", Platform.STRIPE, CREDENTIALS[Platform.STRIPE])
        service = SyncService(store, provider, AdapterRegistry(stripe=ScriptedAdapter(Platform.STRIPE)))
        original = service.sync_app

        async def sync_app(app_id, *args, **kwargs):
            if app_id == "app-1":
                raise RuntimeError("disk full")
            return await original(app_id, *args, **kwargs)

        service.sync_app = sync_app

        summary = await service.sync_all_apps()

        assert summary == {"apps": 2, "completed": 1, "cancelled": 0, "errors": 1}
        assert (await store.get_latest_session("app-2")).status is SessionStatus.COMPLETED
