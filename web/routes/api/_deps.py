"""Shared dependencies for API route modules."""
import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from metrics_sync.observability import get_logger
from metrics_sync.store import get_store
from metrics_sync.sync_service import get_sync_service

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Track startup time for uptime calculation
START_TIME = time.time()

__all__ = ["limiter", "get_logger", "get_store", "get_sync_service", "START_TIME"]
