"""
Platform metrics sync engine.

Pulls subscription and revenue data from Stripe, Google Play and the App
Store into canonical records, and turns them into daily and weekly metrics:
- exceptions: Error taxonomy shared by adapters and orchestrator
- models: Canonical records, snapshots and enums
- adapters: Per-platform fetchers
- sync_service: Session lifecycle, chunking and cancellation
- snapshots / rollup: Daily metrics and weekly series
"""

from metrics_sync.exceptions import (
    SyncError,
    CredentialError,
    ApiError,
    ParseError,
    InvariantViolation,
    QueryTimeoutError,
)

from metrics_sync.models import (
    Platform,
    Subscription,
    RevenueEvent,
    MetricsSnapshot,
    SyncSession,
)

from metrics_sync.config import config

__all__ = [
    # Exceptions
    "SyncError",
    "CredentialError",
    "ApiError",
    "ParseError",
    "InvariantViolation",
    "QueryTimeoutError",
    # Models
    "Platform",
    "Subscription",
    "RevenueEvent",
    "MetricsSnapshot",
    "SyncSession",
    # Config
    "config",
]
