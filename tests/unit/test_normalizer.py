"""
Unit tests for metrics_sync/normalizer.py
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from metrics_sync.adapters.base import FetchResult
from metrics_sync.models import Platform
from metrics_sync.normalizer import Normalizer


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.upsert_subscriptions = AsyncMock(side_effect=lambda app_id, subs: len(subs))
    store.insert_revenue_events = AsyncMock(return_value=1)
    return store


class TestNormalizer:
    """Tests for Normalizer.persist."""

    @pytest.mark.asyncio
    async def test_subscriptions_written_before_events(self, mock_store, subscription_factory, event_factory):
        """Subscriptions are upserted before their revenue events."""
        calls = []
        mock_store.upsert_subscriptions.side_effect = lambda app_id, subs: calls.append("subs") or len(subs)
        mock_store.insert_revenue_events.side_effect = lambda app_id, evts: calls.append("events") or 1
        result = FetchResult(
            platform=Platform.STRIPE,
            subscriptions=[subscription_factory("sub_1")],
            revenue_events=[event_factory("in_1", "sub_1")],
        )

        await Normalizer(mock_store).persist("app-1", result)

        assert calls == ["subs", "events"]

    @pytest.mark.asyncio
    async def test_stats(self, mock_store, subscription_factory, event_factory):
        """Stats report inserted, skipped and orphan events."""
        result = FetchResult(
            platform=Platform.STRIPE,
            subscriptions=[subscription_factory("sub_1")],
            revenue_events=[event_factory("in_1", "sub_1"), event_factory("in_2", "sub_old")],
        )

        stats = await Normalizer(mock_store).persist("app-1", result)

        assert stats.subscriptions_upserted == 1
        assert stats.events_received == 2
        assert stats.events_inserted == 1
        assert stats.events_skipped == 1
        assert stats.orphan_events == 1

    @pytest.mark.asyncio
    async def test_foreign_platform_rejected(self, mock_store, subscription_factory):
        """A record from another platform is a programming error."""
        result = FetchResult(
            platform=Platform.STRIPE,
            subscriptions=[subscription_factory("sub_1", platform=Platform.GOOGLEPLAY)],
        )

        with pytest.raises(ValueError):
            await Normalizer(mock_store).persist("app-1", result)
        mock_store.upsert_subscriptions.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_result(self, mock_store):
        """An empty result writes nothing new."""
        mock_store.insert_revenue_events.return_value = 0
        mock_store.insert_revenue_events.side_effect = None

        stats = await Normalizer(mock_store).persist("app-1", FetchResult(platform=Platform.APPSTORE))

        assert stats.subscriptions_upserted == 0
        assert stats.events_inserted == 0
