"""
Weekly rollup of daily snapshots.

Flow metrics are summed over the days of a week; stock metrics take the
value of the most recent day observed in the week. A week is only emitted
when every currently active platform has at least one snapshot in it, so a
newly connected platform does not produce misleading comparisons for weeks
before it existed.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from metrics_sync.config import config
from metrics_sync.models import (
    FLOW_METRICS,
    MONEY_METRICS,
    STOCK_METRICS,
    ALL_METRICS,
    MetricsSnapshot,
    Platform,
    WeekStart,
    round_money,
)


@dataclass
class WeeklyBucket:
    """Rolled-up metrics of one week, per platform plus unified."""
    week_start: date
    values: Dict[Platform, Dict[str, float]] = field(default_factory=dict)
    last_observed: Dict[Platform, date] = field(default_factory=dict)

    def value(self, platform: Platform, metric: str):
        return self.values.get(platform, {}).get(metric, 0)

    def to_dict(self, metric: Optional[str] = None) -> Dict:
        if metric is not None:
            values = {p.value: self.value(p, metric) for p in self.values}
        else:
            values = {p.value: dict(v) for p, v in self.values.items()}
        return {"week_start": self.week_start.isoformat(), "values": values}


def _empty_metrics() -> Dict[str, float]:
    return {name: 0 for name in ALL_METRICS}


def _add(bucket: WeeklyBucket, snapshot: MetricsSnapshot) -> None:
    metrics = bucket.values.setdefault(snapshot.platform, _empty_metrics())
    for name in FLOW_METRICS:
        metrics[name] += getattr(snapshot, name)

    # Input is date-ordered, so the last stock write is the latest day
    last = bucket.last_observed.get(snapshot.platform)
    if last is None or snapshot.date >= last:
        for name in STOCK_METRICS:
            metrics[name] = getattr(snapshot, name)
        bucket.last_observed[snapshot.platform] = snapshot.date


def _finalize(bucket: WeeklyBucket) -> None:
    unified = _empty_metrics()
    for platform, metrics in bucket.values.items():
        for name in MONEY_METRICS:
            metrics[name] = round_money(metrics[name])
        for name in ALL_METRICS:
            unified[name] += metrics[name]
    for name in MONEY_METRICS:
        unified[name] = round_money(unified[name])
    bucket.values[Platform.UNIFIED] = unified


def rollup_weekly(
    snapshots: Iterable[MetricsSnapshot],
    active_platforms: Iterable[Platform],
    week_start: WeekStart = WeekStart.MONDAY,
    max_weeks: Optional[int] = None,
) -> List[WeeklyBucket]:
    """
    Bucket daily platform snapshots into weeks.

    Stored unified rows are ignored; each week's unified values are the sum
    of that week's platform values.

    Args:
        snapshots: Daily snapshots in any order
        active_platforms: Platforms with an active connection right now
        week_start: First day of the week
        max_weeks: Keep only the most recent N complete weeks

    Returns:
        Weekly buckets sorted by week_start ascending
    """
    max_weeks = max_weeks if max_weeks is not None else config.metrics.weekly_history_weeks
    required = {p for p in active_platforms if p is not Platform.UNIFIED}

    buckets: Dict[date, WeeklyBucket] = {}
    for snapshot in sorted(snapshots, key=lambda s: (s.date, s.platform.value)):
        if snapshot.platform is Platform.UNIFIED:
            continue
        key = week_start.week_start_for(snapshot.date)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = WeeklyBucket(week_start=key)
        _add(bucket, snapshot)

    complete = []
    for key in sorted(buckets):
        bucket = buckets[key]
        if not required.issubset(bucket.values.keys()):
            continue
        _finalize(bucket)
        complete.append(bucket)

    return complete[-max_weeks:] if max_weeks > 0 else []
