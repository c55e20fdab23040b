"""
Repository mixins for the DuckDB store.

The store is split into focused concerns that share one connection:
- ConnectionsMixin: apps and platform connections
- SessionsMixin: sync sessions, logs and chunk progress
- BillingMixin: subscriptions and revenue events
- SnapshotsMixin: daily metrics snapshots
- NotificationsMixin: store notifications and report archive
"""
from metrics_sync.repositories.connections import ConnectionsMixin
from metrics_sync.repositories.sessions import SessionsMixin
from metrics_sync.repositories.billing import BillingMixin
from metrics_sync.repositories.snapshots import SnapshotsMixin
from metrics_sync.repositories.notifications import NotificationsMixin

__all__ = [
    "ConnectionsMixin",
    "SessionsMixin",
    "BillingMixin",
    "SnapshotsMixin",
    "NotificationsMixin",
]
