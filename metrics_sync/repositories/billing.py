"""
Canonical subscriptions and revenue events.

Subscriptions are upserted by (app, platform, external_id) with the latest
fetched values winning. Revenue events are append-only: a row whose key
already exists is left untouched, except that missing proceeds are filled in.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from metrics_sync.models import (
    Platform, Subscription, SubscriptionStatus, BillingInterval,
    RevenueEvent, RevenueEventType, utcnow,
)
from metrics_sync.observability import get_logger
from metrics_sync.repositories.base import to_db_timestamp, from_db_timestamp, transaction

logger = get_logger(__name__)

_SUBSCRIPTION_COLUMNS = """
    external_id, platform, status, product_id, start_date, end_date,
    is_trial, will_cancel, is_in_grace, amount, billing_interval,
    interval_count, currency, canceled_at, trial_end, raw_status
"""

_EVENT_COLUMNS = """
    external_id, platform, subscription_external_id, event_type, amount,
    amount_excluding_tax, amount_proceeds, currency, product_id, occurred_at
"""


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        external_id=row[0],
        platform=Platform(row[1]),
        status=SubscriptionStatus(row[2]),
        product_id=row[3],
        start_date=from_db_timestamp(row[4]),
        end_date=from_db_timestamp(row[5]),
        is_trial=bool(row[6]),
        will_cancel=bool(row[7]),
        is_in_grace=bool(row[8]),
        amount=row[9],
        interval=BillingInterval(row[10]) if row[10] else None,
        interval_count=row[11] or 1,
        currency=row[12],
        canceled_at=from_db_timestamp(row[13]),
        trial_end=from_db_timestamp(row[14]),
        raw_status=row[15],
    )


def _row_to_event(row) -> RevenueEvent:
    return RevenueEvent(
        external_id=row[0],
        platform=Platform(row[1]),
        subscription_external_id=row[2],
        event_type=RevenueEventType(row[3]),
        amount=row[4],
        amount_excluding_tax=row[5],
        amount_proceeds=row[6],
        currency=row[7],
        product_id=row[8],
        timestamp=from_db_timestamp(row[9]),
    )


class BillingMixin:
    """Repository for subscriptions and revenue events."""

    async def upsert_subscriptions(self, app_id: str, subscriptions: List[Subscription]) -> int:
        """
        Upsert subscriptions, overwriting mutable fields of existing rows.

        Returns:
            Number of subscriptions written
        """
        if not subscriptions:
            return 0

        # Last occurrence of a key within the batch wins
        latest: Dict[tuple, Subscription] = {}
        for sub in subscriptions:
            latest[sub.key] = sub

        written_at = to_db_timestamp(utcnow())
        rows = [
            [
                app_id,
                sub.platform.value,
                sub.external_id,
                sub.status.value,
                sub.product_id,
                to_db_timestamp(sub.start_date),
                to_db_timestamp(sub.end_date),
                sub.is_trial,
                sub.will_cancel,
                sub.is_in_grace,
                sub.amount,
                sub.interval.value if sub.interval else None,
                sub.interval_count or 1,
                sub.currency,
                to_db_timestamp(sub.canceled_at),
                to_db_timestamp(sub.trial_end),
                sub.raw_status,
                written_at,
            ]
            for sub in latest.values()
        ]

        async with self.connection() as conn:
            with transaction(conn):
                conn.executemany("""
                    INSERT INTO subscriptions (
                        app_id, platform, external_id, status, product_id, start_date, end_date,
                        is_trial, will_cancel, is_in_grace, amount, billing_interval,
                        interval_count, currency, canceled_at, trial_end, raw_status, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (app_id, platform, external_id) DO UPDATE SET
                        status = excluded.status,
                        product_id = excluded.product_id,
                        start_date = excluded.start_date,
                        end_date = excluded.end_date,
                        is_trial = excluded.is_trial,
                        will_cancel = excluded.will_cancel,
                        is_in_grace = excluded.is_in_grace,
                        amount = excluded.amount,
                        billing_interval = excluded.billing_interval,
                        interval_count = excluded.interval_count,
                        currency = excluded.currency,
                        canceled_at = excluded.canceled_at,
                        trial_end = excluded.trial_end,
                        raw_status = excluded.raw_status,
                        updated_at = excluded.updated_at
                """, rows)

        logger.debug(f"Upserted {len(rows)} subscriptions for app {app_id}")
        return len(rows)

    async def insert_revenue_events(self, app_id: str, revenue_events: List[RevenueEvent]) -> int:
        """
        Insert revenue events whose key is not stored yet.

        Stored events are never rewritten, except that proceeds missing on a
        stored event are filled in once a later fetch knows them.

        Returns:
            Number of newly inserted events
        """
        if not revenue_events:
            return 0

        # First occurrence of a key within the batch wins, like the stored row would
        unique: Dict[tuple, RevenueEvent] = {}
        for event in revenue_events:
            unique.setdefault(event.key, event)

        rows = [
            [
                app_id,
                event.platform.value,
                event.external_id,
                event.subscription_external_id,
                event.event_type.value,
                float(event.amount),
                event.amount_excluding_tax,
                event.amount_proceeds,
                event.currency,
                event.product_id,
                to_db_timestamp(event.timestamp),
            ]
            for event in unique.values()
        ]
        proceeds = [
            [event.amount_proceeds, app_id, event.platform.value, event.external_id]
            for event in unique.values()
            if event.amount_proceeds is not None
        ]

        async with self.connection() as conn:
            with transaction(conn):
                before = conn.execute(
                    "SELECT COUNT(*) FROM revenue_events WHERE app_id = ?", [app_id]
                ).fetchone()[0]
                conn.executemany("""
                    INSERT INTO revenue_events (
                        app_id, platform, external_id, subscription_external_id, event_type,
                        amount, amount_excluding_tax, amount_proceeds, currency, product_id, occurred_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (app_id, platform, external_id) DO NOTHING
                """, rows)
                after = conn.execute(
                    "SELECT COUNT(*) FROM revenue_events WHERE app_id = ?", [app_id]
                ).fetchone()[0]
                if proceeds:
                    conn.executemany("""
                        UPDATE revenue_events SET amount_proceeds = ?
                        WHERE app_id = ? AND platform = ? AND external_id = ? AND amount_proceeds IS NULL
                    """, proceeds)

        inserted = after - before
        logger.debug(f"Inserted {inserted} of {len(rows)} revenue events for app {app_id}")
        return inserted

    async def get_subscriptions(
        self,
        app_id: str,
        platform: Platform,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Subscription]:
        """
        Subscriptions that can affect any day in [start, end).

        A subscription qualifies if it started before ``end`` and either has
        not ended before ``start`` or was cancelled inside the range.
        """
        query = f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE app_id = ? AND platform = ?"
        params: list = [app_id, platform.value]
        if end is not None:
            query += " AND start_date < ?"
            params.append(to_db_timestamp(end))
        if start is not None:
            query += " AND (end_date IS NULL OR end_date >= ? OR canceled_at >= ?)"
            params.extend([to_db_timestamp(start), to_db_timestamp(start)])
        query += " ORDER BY start_date, external_id"

        rows = await self._fetch_all(query, params)
        return [_row_to_subscription(r) for r in rows]

    async def get_revenue_events(
        self,
        app_id: str,
        platform: Platform,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[RevenueEvent]:
        """Revenue events with start <= timestamp < end."""
        query = f"SELECT {_EVENT_COLUMNS} FROM revenue_events WHERE app_id = ? AND platform = ?"
        params: list = [app_id, platform.value]
        if start is not None:
            query += " AND occurred_at >= ?"
            params.append(to_db_timestamp(start))
        if end is not None:
            query += " AND occurred_at < ?"
            params.append(to_db_timestamp(end))
        query += " ORDER BY occurred_at, external_id"

        rows = await self._fetch_all(query, params)
        return [_row_to_event(r) for r in rows]

    async def get_billing_counts(self, app_id: str) -> Dict[str, Dict[str, Any]]:
        """Per-platform counts of subscriptions and revenue events."""
        async with self.connection() as conn:
            subs = conn.execute("""
                SELECT platform, COUNT(*) FROM subscriptions
                WHERE app_id = ? GROUP BY platform
            """, [app_id]).fetchall()
            evts = conn.execute("""
                SELECT platform, COUNT(*), MIN(occurred_at), MAX(occurred_at) FROM revenue_events
                WHERE app_id = ? GROUP BY platform
            """, [app_id]).fetchall()

        counts: Dict[str, Dict[str, Any]] = {
            p.value: {"subscriptions": 0, "revenue_events": 0, "first_event": None, "last_event": None}
            for p in Platform.sources()
        }
        for platform, count in subs:
            counts.setdefault(platform, {})["subscriptions"] = count
        for platform, count, first, last in evts:
            entry = counts.setdefault(platform, {})
            entry["revenue_events"] = count
            entry["first_event"] = from_db_timestamp(first).isoformat() if first else None
            entry["last_event"] = from_db_timestamp(last).isoformat() if last else None
        return counts
