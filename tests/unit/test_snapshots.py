"""
Unit tests for metrics_sync/snapshots.py (pure per-day computation)
"""
import pytest
from datetime import date, datetime, timezone

from metrics_sync.models import (
    BillingInterval,
    Platform,
    RevenueEventType,
    SubscriptionStatus,
)
from metrics_sync.snapshots import compute_snapshot, date_range

UTC = timezone.utc
DAY = date(2024, 1, 15)


def at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 1, day, hour, tzinfo=UTC)


def snapshot(subscriptions=(), events=(), ratio=0.85):
    return compute_snapshot("app-1", Platform.STRIPE, DAY, subscriptions, events, ratio)


class TestStockMetrics:
    """Tests for subscriber counts and MRR."""

    def test_active_paid_and_mrr(self, subscription_factory):
        """Monthly and yearly subscribers contribute normalized MRR."""
        subs = [
            subscription_factory("m1", start=at(1), end=at(31), amount=10.0),
            subscription_factory("y1", start=at(1), end=datetime(2025, 1, 1, tzinfo=UTC),
                                 amount=120.0, interval=BillingInterval.YEAR),
        ]
        result = snapshot(subs)
        assert result.active_subscribers == 2
        assert result.paid_subscribers == 2
        assert result.monthly_subscribers == 1
        assert result.yearly_subscribers == 1
        assert result.mrr == 20.0

    def test_trial_excluded_from_paid_and_mrr(self, subscription_factory):
        """Trialing subscriptions are active but not paid."""
        subs = [
            subscription_factory("t1", start=at(10), end=at(24), is_trial=True, trial_end=at(24)),
            subscription_factory("p1", start=at(1), end=at(31)),
        ]
        result = snapshot(subs)
        assert result.active_subscribers == 2
        assert result.trial_subscribers == 1
        assert result.paid_subscribers == 1
        assert result.mrr == 10.0

    def test_trial_converted_before_day(self, subscription_factory):
        """A trial that ended before the day counts as paid."""
        sub = subscription_factory("t1", start=at(1), end=at(31), is_trial=True, trial_end=at(8))
        result = snapshot([sub])
        assert result.trial_subscribers == 0
        assert result.paid_subscribers == 1

    def test_not_yet_started_or_already_ended(self, subscription_factory):
        """Subscriptions outside the day are not active."""
        subs = [
            subscription_factory("future", start=at(16), end=at(30)),
            subscription_factory("past", start=at(1), end=at(14)),
        ]
        assert snapshot(subs).active_subscribers == 0

    def test_unknown_price_adds_no_mrr(self, subscription_factory):
        """Subscriptions without a price still count as paid."""
        result = snapshot([subscription_factory("p1", start=at(1), end=at(31), amount=None)])
        assert result.paid_subscribers == 1
        assert result.mrr == 0.0


class TestFlowMetrics:
    """Tests for per-day event counts."""

    def test_cancellations_and_grace(self, subscription_factory):
        """Cancellations are counted on the cancel day; grace while active."""
        subs = [
            subscription_factory("c1", start=at(1), end=at(31), will_cancel=True, canceled_at=at(15, 9)),
            subscription_factory("g1", start=at(1), end=at(31), is_in_grace=True,
                                 status=SubscriptionStatus.PAST_DUE),
        ]
        result = snapshot(subs)
        assert result.cancellations == 1
        assert result.grace_events == 1

    def test_churn_on_end_day(self, subscription_factory):
        """A terminal subscription churns on the day it ends."""
        subs = [
            subscription_factory("e1", start=at(1), end=at(15, 6), status=SubscriptionStatus.EXPIRED),
            subscription_factory("a1", start=at(1), end=at(15, 6)),
        ]
        result = snapshot(subs)
        assert result.churn == 1

    def test_payments_and_revenue(self, event_factory):
        """Revenue is gross of refunds, net from proceeds or the ratio."""
        events = [
            event_factory("in_1", event_type=RevenueEventType.FIRST_PAYMENT, amount=10.0, timestamp=at(15, 1),
                          proceeds=8.5),
            event_factory("in_2", event_type=RevenueEventType.RENEWAL, amount=20.0, timestamp=at(15, 2)),
            event_factory("re_1", event_type=RevenueEventType.REFUND, amount=5.0, timestamp=at(15, 3),
                          proceeds=5.0),
            event_factory("in_3", event_type=RevenueEventType.RENEWAL, amount=99.0, timestamp=at(16, 1)),
        ]
        result = snapshot(events=events)
        assert result.first_payments == 1
        assert result.renewals == 1
        assert result.refunds == 1
        assert result.monthly_revenue_gross == 25.0
        assert result.monthly_revenue_net == pytest.approx(8.5 + 17.0 - 5.0)
        assert result.net_revenue_estimated is True

    def test_measured_net_not_estimated(self, event_factory):
        """Net revenue from proceeds only is not flagged as estimated."""
        result = snapshot(events=[event_factory("in_1", amount=10.0, timestamp=at(15), proceeds=7.0)])
        assert result.monthly_revenue_net == 7.0
        assert result.net_revenue_estimated is False

    def test_day_boundaries_half_open(self, event_factory):
        """Midnight belongs to the day that starts at it."""
        events = [
            event_factory("in_1", timestamp=datetime(2024, 1, 15, 0, 0, tzinfo=UTC)),
            event_factory("in_2", timestamp=datetime(2024, 1, 16, 0, 0, tzinfo=UTC)),
        ]
        assert snapshot(events=events).first_payments == 1


class TestDateRange:
    """Tests for date_range helper."""

    def test_inclusive(self):
        """Both ends are included."""
        assert date_range(date(2024, 1, 30), date(2024, 2, 1)) == [
            date(2024, 1, 30), date(2024, 1, 31), date(2024, 2, 1)
        ]

    def test_empty_when_reversed(self):
        """End before start gives no days."""
        assert date_range(date(2024, 2, 1), date(2024, 1, 1)) == []
