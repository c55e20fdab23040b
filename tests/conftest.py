"""
Pytest configuration and shared fixtures.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

from metrics_sync.events import events
from metrics_sync.models import (
    App,
    BillingInterval,
    Platform,
    RevenueEvent,
    RevenueEventType,
    Subscription,
    SubscriptionStatus,
)
from metrics_sync.store import MetricsStore


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def utc_dt():
    """Aware UTC datetime constructor."""
    return utc


def make_subscription(
    external_id: str = "sub_1",
    platform: Platform = Platform.STRIPE,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    amount: Optional[float] = 10.0,
    interval: Optional[BillingInterval] = BillingInterval.MONTH,
    **kwargs,
) -> Subscription:
    start = start or utc(2024, 1, 1)
    return Subscription(
        platform=platform,
        external_id=external_id,
        status=status,
        product_id=kwargs.pop("product_id", "prod_monthly"),
        start_date=start,
        end_date=end if end is not None else start + timedelta(days=30),
        amount=amount,
        interval=interval,
        **kwargs,
    )


def make_event(
    external_id: str = "in_1",
    subscription_id: str = "sub_1",
    platform: Platform = Platform.STRIPE,
    event_type: RevenueEventType = RevenueEventType.FIRST_PAYMENT,
    amount: float = 10.0,
    timestamp: Optional[datetime] = None,
    proceeds: Optional[float] = None,
) -> RevenueEvent:
    return RevenueEvent(
        platform=platform,
        external_id=external_id,
        subscription_external_id=subscription_id,
        event_type=event_type,
        amount=amount,
        timestamp=timestamp or utc(2024, 1, 1, 12),
        currency="USD",
        amount_proceeds=proceeds,
    )


def mock_response(
    status_code: int = 200,
    json_data: Any = None,
    content: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    """Stand-in for an httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data if json_data is not None else {}
    if content is None:
        content = b"{}" if json_data is not None or status_code < 400 else b"error"
    response.content = content
    response.text = content.decode("utf-8", errors="replace")
    response.headers = headers or {}
    return response


@pytest.fixture
def http_response():
    """Factory for fake httpx responses."""
    return mock_response


@pytest.fixture
def subscription_factory():
    """Factory for canonical subscriptions."""
    return make_subscription


@pytest.fixture
def event_factory():
    """Factory for canonical revenue events."""
    return make_event


@pytest.fixture
async def store(tmp_path):
    """Fresh DuckDB store in a temporary directory."""
    metrics_store = MetricsStore(tmp_path / "metrics.duckdb")
    await metrics_store.connect()
    await metrics_store.upsert_app(App(id="app-1", name="Test App"))
    yield metrics_store
    await metrics_store.close()


@pytest.fixture(autouse=True)
def clean_event_bus():
    """Keep the global event bus isolated between tests."""
    events.clear_handlers()
    events.clear_history()
    yield
    events.clear_handlers()
    events.clear_history()
