"""
Normalizer: persists adapter output as canonical records.

Subscriptions are upserted before the revenue events that reference them,
so an event is never orphaned within one pass. Revenue events are only
inserted when their (platform, external_id) is new, which makes re-syncs
over overlapping windows idempotent.
"""
from dataclasses import dataclass
from typing import List

from metrics_sync.adapters.base import FetchResult
from metrics_sync.models import Subscription, RevenueEvent
from metrics_sync.observability import get_logger

logger = get_logger(__name__)


@dataclass
class NormalizeStats:
    """Outcome of one normalization pass."""
    subscriptions_upserted: int = 0
    events_received: int = 0
    events_inserted: int = 0
    orphan_events: int = 0

    @property
    def events_skipped(self) -> int:
        return self.events_received - self.events_inserted


def _orphans(subscriptions: List[Subscription], revenue_events: List[RevenueEvent]) -> int:
    known = {s.external_id for s in subscriptions}
    return sum(1 for e in revenue_events if e.subscription_external_id not in known)


class Normalizer:
    """Writes one FetchResult to the store."""

    def __init__(self, store):
        self.store = store

    async def persist(self, app_id: str, result: FetchResult) -> NormalizeStats:
        stats = NormalizeStats(events_received=len(result.revenue_events))

        for record in result.subscriptions + result.revenue_events:
            if record.platform is not result.platform:
                raise ValueError(
                    f"{result.platform.value} result contains a {record.platform.value} record"
                )

        stats.subscriptions_upserted = await self.store.upsert_subscriptions(app_id, result.subscriptions)
        stats.events_inserted = await self.store.insert_revenue_events(app_id, result.revenue_events)

        # Events for subscriptions fetched in an earlier run are expected on
        # incremental windows; they are only counted.
        stats.orphan_events = _orphans(result.subscriptions, result.revenue_events)

        logger.info(
            f"Normalized {result.platform.value}: {stats.subscriptions_upserted} subscriptions, "
            f"{stats.events_inserted} new events ({stats.events_skipped} already stored)",
            extra={"app_id": app_id, "platform": result.platform.value},
        )
        return stats
