"""
Snapshot builder: daily metrics per platform plus the derived unified row.

Stock metrics (active, trial, paid, monthly, yearly, mrr) describe the set
of subscriptions whose active interval covers the day. Flow metrics
(cancellations, grace, payments, revenue, churn, refunds) count what
happened within the day itself; longer windows are sums of days.

Unified rows are never computed here. After platform rows for a range are
written, the store rebuilds unified for those dates as their field-wise sum.
"""
from datetime import date, timedelta
from typing import Iterable, List, Optional

from metrics_sync.config import config
from metrics_sync.models import (
    BillingInterval,
    MetricsSnapshot,
    Platform,
    RevenueEvent,
    RevenueEventType,
    Subscription,
    day_bounds,
    round_money,
    utcnow,
)
from metrics_sync.observability import get_logger, Timer, timed

logger = get_logger(__name__)


def compute_snapshot(
    app_id: str,
    platform: Platform,
    day: date,
    subscriptions: Iterable[Subscription],
    revenue_events: Iterable[RevenueEvent],
    fallback_ratio: float,
) -> MetricsSnapshot:
    """
    Metrics of one platform for one UTC day.

    ``subscriptions`` and ``revenue_events`` may cover a wider range than
    the day; anything outside it is ignored.
    """
    start, end = day_bounds(day)
    snapshot = MetricsSnapshot(app_id=app_id, date=day, platform=platform)
    mrr = 0.0

    for sub in subscriptions:
        if sub.canceled_at is not None and start <= sub.canceled_at < end:
            snapshot.cancellations += 1
        if sub.status.is_terminal and sub.end_date is not None and start <= sub.end_date < end:
            snapshot.churn += 1

        if not sub.is_active_during(start, end):
            continue

        snapshot.active_subscribers += 1
        if sub.is_in_grace:
            snapshot.grace_events += 1
        if sub.is_trial_at(start):
            snapshot.trial_subscribers += 1
            continue

        if sub.interval is BillingInterval.MONTH:
            snapshot.monthly_subscribers += 1
        elif sub.interval is BillingInterval.YEAR:
            snapshot.yearly_subscribers += 1

        monthly = sub.monthly_amount
        if monthly is not None:
            mrr += monthly

    snapshot.paid_subscribers = snapshot.active_subscribers - snapshot.trial_subscribers
    snapshot.mrr = round_money(mrr)

    gross = 0.0
    net = 0.0
    for event in revenue_events:
        if not start <= event.timestamp < end:
            continue
        if event.event_type is RevenueEventType.FIRST_PAYMENT:
            snapshot.first_payments += 1
        elif event.event_type is RevenueEventType.RENEWAL:
            snapshot.renewals += 1
        else:
            snapshot.refunds += 1

        gross += event.sign * abs(event.amount)
        event_net, estimated = event.net_amount(fallback_ratio)
        net += event_net
        snapshot.net_revenue_estimated = snapshot.net_revenue_estimated or estimated

    snapshot.monthly_revenue_gross = round_money(gross)
    snapshot.monthly_revenue_net = round_money(net)
    return snapshot


def date_range(start_date: date, end_date: date) -> List[date]:
    """Inclusive list of days."""
    return [start_date + timedelta(days=i) for i in range((end_date - start_date).days + 1)]


class SnapshotBuilder:
    """
    Builds and persists daily snapshots from stored canonical records.

    Usage:
        builder = SnapshotBuilder(store)
        days = await builder.build_range("app-1", Platform.STRIPE, date(2024, 1, 1), date(2024, 1, 31))
    """

    def __init__(self, store, fallback_ratio: Optional[float] = None):
        self.store = store
        self.fallback_ratio = (
            fallback_ratio if fallback_ratio is not None
            else config.metrics.estimated_net_revenue_ratio
        )

    async def build_platform_days(
        self,
        app_id: str,
        platform: Platform,
        start_date: date,
        end_date: date,
    ) -> List[MetricsSnapshot]:
        """Compute and upsert platform rows for every day in [start_date, end_date]."""
        if platform is Platform.UNIFIED:
            raise ValueError("unified rows are derived, build a real platform instead")

        today = utcnow().date()
        end_date = min(end_date, today)
        if end_date < start_date:
            return []

        range_start, _ = day_bounds(start_date)
        _, range_end = day_bounds(end_date)

        with Timer(f"snapshot_build_{platform.value}", logger, warn_threshold_ms=5000):
            subscriptions = await self.store.get_subscriptions(app_id, platform, range_start, range_end)
            revenue_events = await self.store.get_revenue_events(app_id, platform, range_start, range_end)

            snapshots = [
                compute_snapshot(app_id, platform, day, subscriptions, revenue_events, self.fallback_ratio)
                for day in date_range(start_date, end_date)
            ]
            await self.store.upsert_platform_snapshots(snapshots)

        logger.debug(
            f"Built {len(snapshots)} {platform.value} snapshots for app {app_id} "
            f"({start_date} to {end_date})"
        )
        return snapshots

    @timed("unified_rebuild", warn_threshold_ms=5000)
    async def rebuild_unified(self, app_id: str, days: Iterable[date]) -> int:
        return await self.store.rebuild_unified_snapshots(app_id, days)

    async def build_range(
        self,
        app_id: str,
        platform: Platform,
        start_date: date,
        end_date: date,
    ) -> List[date]:
        """
        Build a platform's days, then rebuild unified for the same days.

        Returns:
            Dates that were written
        """
        snapshots = await self.build_platform_days(app_id, platform, start_date, end_date)
        days = [s.date for s in snapshots]
        if days:
            await self.rebuild_unified(app_id, days)
        return days
