"""
Read-only query surface over metrics snapshots.

Used by the web API and the CLI. Nothing here writes to the store.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from metrics_sync.config import config
from metrics_sync.models import (
    ALL_METRICS,
    FLOW_METRICS,
    MONEY_METRICS,
    STOCK_METRICS,
    Platform,
    WeekStart,
    round_money,
)
from metrics_sync.observability import get_logger
from metrics_sync.rollup import rollup_weekly
from metrics_sync.store import get_store, MetricsStore

logger = get_logger(__name__)


async def _resolve(store: Optional[MetricsStore]) -> MetricsStore:
    return store or await get_store()


async def get_latest_metrics(app_id: str, store: Optional[MetricsStore] = None) -> Dict[str, Any]:
    """
    Current metrics per platform and unified.

    Stock metrics come from the latest snapshot date; flow metrics are
    summed over the FLOW_WINDOW_DAYS days ending at that date.
    """
    store = await _resolve(store)
    latest = await store.get_latest_snapshot_date(app_id)
    window_days = config.metrics.flow_window_days
    result: Dict[str, Any] = {
        "app_id": app_id,
        "date": latest.isoformat() if latest else None,
        "flow_window_days": window_days,
        "platforms": {},
    }
    if latest is None:
        return result

    start = latest - timedelta(days=window_days - 1)
    for snapshot in await store.get_snapshots(app_id, start=start, end=latest):
        entry = result["platforms"].setdefault(snapshot.platform.value, {
            **{name: 0 for name in ALL_METRICS},
            "net_revenue_estimated": False,
        })
        for name in FLOW_METRICS:
            entry[name] += getattr(snapshot, name)
        if snapshot.date == latest:
            for name in STOCK_METRICS:
                entry[name] = getattr(snapshot, name)
        entry["net_revenue_estimated"] = entry["net_revenue_estimated"] or snapshot.net_revenue_estimated

    for entry in result["platforms"].values():
        for name in MONEY_METRICS:
            entry[name] = round_money(entry[name])
    return result


async def get_weekly_metrics_history(
    app_id: str,
    metric: str,
    week_start_day: Optional[WeekStart] = None,
    store: Optional[MetricsStore] = None,
) -> List[Dict[str, Any]]:
    """
    Weekly series of one metric, at most WEEKLY_HISTORY_WEEKS weeks, oldest first.

    Returns:
        List of {"week_start": ..., "values": {platform: value}}

    Raises:
        ValueError: If the metric name is unknown
    """
    if metric not in ALL_METRICS:
        raise ValueError(f"Unknown metric '{metric}'. Choose one of: {', '.join(ALL_METRICS)}")

    store = await _resolve(store)
    if week_start_day is None:
        app = await store.get_app(app_id)
        week_start_day = app.week_start_day if app else WeekStart(config.metrics.default_week_start_day)

    snapshots = await store.get_snapshots(app_id)
    active = await store.get_active_platforms(app_id)
    buckets = rollup_weekly(
        snapshots,
        active,
        week_start=week_start_day,
        max_weeks=config.metrics.weekly_history_weeks,
    )
    return [bucket.to_dict(metric) for bucket in buckets]


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    df = df.copy()
    if "date" in df.columns:
        df["date"] = pd.to_datetime(df["date"]).dt.strftime("%Y-%m-%d")
    return df.to_dict("records")


async def get_all_debug_data(app_id: str, store: Optional[MetricsStore] = None) -> Dict[str, Any]:
    """Everything needed to debug an app's numbers in one payload."""
    store = await _resolve(store)
    snapshots_df = await store.get_snapshots_df(app_id)
    session = await store.get_latest_session(app_id)

    return {
        "app_id": app_id,
        "snapshots": _records(snapshots_df),
        "snapshot_count": len(snapshots_df),
        "platforms_with_data": sorted(
            p for p in snapshots_df["platform"].unique() if p != Platform.UNIFIED.value
        ) if not snapshots_df.empty else [],
        "latest_session": session.to_dict() if session else None,
        "progress": await store.get_progress(session.id) if session else [],
        "sync_logs": await get_sync_logs(app_id, limit=50, store=store),
        "billing_counts": await store.get_billing_counts(app_id),
        "store_reports": await store.get_store_reports(app_id),
    }


async def get_sync_logs(
    app_id: str,
    limit: int = 100,
    session_id: Optional[str] = None,
    store: Optional[MetricsStore] = None,
) -> List[Dict[str, Any]]:
    store = await _resolve(store)
    entries = await store.get_sync_logs(app_id, session_id=session_id, limit=limit)
    return [entry.to_dict() for entry in entries]
