"""
Platform fetch adapters.

- StripeAdapter: payments API (cursor-paginated REST)
- GooglePlayAdapter: cloud-storage CSV exports
- AppStoreAdapter: store reporting API (daily TSV reports)
"""
from typing import Dict, Type

from metrics_sync.adapters.base import (
    FetchContext,
    FetchResult,
    FetchWindow,
    PlatformAdapter,
)
from metrics_sync.adapters.appstore import AppStoreAdapter
from metrics_sync.adapters.googleplay import GooglePlayAdapter
from metrics_sync.adapters.stripe import StripeAdapter
from metrics_sync.models import Platform

ADAPTERS: Dict[Platform, Type[PlatformAdapter]] = {
    Platform.STRIPE: StripeAdapter,
    Platform.GOOGLEPLAY: GooglePlayAdapter,
    Platform.APPSTORE: AppStoreAdapter,
}


def get_adapter(platform: Platform) -> PlatformAdapter:
    """New adapter instance for a platform."""
    try:
        return ADAPTERS[platform]()
    except KeyError:
        raise ValueError(f"No adapter for platform {platform.value}")


__all__ = [
    "ADAPTERS",
    "AppStoreAdapter",
    "FetchContext",
    "FetchResult",
    "FetchWindow",
    "GooglePlayAdapter",
    "PlatformAdapter",
    "StripeAdapter",
    "get_adapter",
]
