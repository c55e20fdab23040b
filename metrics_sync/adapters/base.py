"""
Adapter contract shared by all platform fetchers.

An adapter turns (credentials, window) into canonical subscriptions and
revenue events. It never raises: CredentialError, ApiError and any
unexpected error are converted into a failed FetchResult carrying whatever
partial data was gathered before the failure. Task cancellation propagates.
"""
import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from metrics_sync.exceptions import ApiError, CredentialError, InvariantViolation
from metrics_sync.models import BillingInterval, Platform, Subscription, RevenueEvent, ensure_utc
from metrics_sync.observability import get_logger, Timer

logger = get_logger(__name__)

CancellationCheck = Callable[[], Awaitable[bool]]
ReportSink = Callable[[date, str, int, Dict[str, Any]], Awaitable[None]]

_MONTHLY_PATTERN = re.compile(r"month|monthly|1m|30day|_m_|_mo_", re.IGNORECASE)
_YEARLY_PATTERN = re.compile(r"year|yearly|annual|12m|365day|_y_|_yr_", re.IGNORECASE)


async def _never_cancelled() -> bool:
    return False


def interval_from_name(*names: Optional[str]) -> Optional[BillingInterval]:
    """Billing interval guessed from product or plan identifiers."""
    for name in names:
        if not name:
            continue
        if _YEARLY_PATTERN.search(name):
            return BillingInterval.YEAR
        if _MONTHLY_PATTERN.search(name):
            return BillingInterval.MONTH
    return None


@dataclass(frozen=True)
class FetchWindow:
    """Half-open time window [start, end) in UTC."""
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} is before start {self.start}")

    def days(self) -> List[date]:
        """UTC calendar days touched by the window."""
        first = self.start.date()
        last = (self.end - timedelta(microseconds=1)).date() if self.end > self.start else first
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def chunks(self, chunk_days: int) -> List["FetchWindow"]:
        """Split into consecutive windows of at most ``chunk_days`` days."""
        step = timedelta(days=chunk_days)
        result = []
        cursor = self.start
        while cursor < self.end:
            chunk_end = min(cursor + step, self.end)
            result.append(FetchWindow(cursor, chunk_end))
            cursor = chunk_end
        return result or [self]


class FetchContext:
    """
    Per-run state threaded explicitly through an adapter.

    Holds debug counters, a cache that lives for the whole sync run (shared
    across chunks of one platform), the cancellation check and an optional
    sink for archiving downloaded report summaries.
    """

    def __init__(
        self,
        app_id: str = "",
        is_cancelled: Optional[CancellationCheck] = None,
        report_sink: Optional[ReportSink] = None,
    ):
        self.app_id = app_id
        self.counters: Counter = Counter()
        self.breakdowns: Dict[str, Counter] = {}
        self.cache: Dict[str, Any] = {}
        self._is_cancelled = is_cancelled or _never_cancelled
        self.report_sink = report_sink

    def incr(self, name: str, by: int = 1) -> None:
        self.counters[name] += by

    def count(self, breakdown: str, key: str, by: int = 1) -> None:
        """Increment ``key`` inside a named breakdown (e.g. invoice_status_counts)."""
        self.breakdowns.setdefault(breakdown, Counter())[key] += by

    async def cancelled(self) -> bool:
        return await self._is_cancelled()

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the counters for the current result."""
        data: Dict[str, Any] = dict(self.counters)
        for name, counter in self.breakdowns.items():
            data[name] = dict(counter)
        return data


@dataclass
class FetchResult:
    """Canonical output of one adapter call."""
    platform: Platform
    subscriptions: List[Subscription] = field(default_factory=list)
    revenue_events: List[RevenueEvent] = field(default_factory=list)
    debug_counters: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def record_count(self) -> int:
        return len(self.subscriptions) + len(self.revenue_events)


class PlatformAdapter(ABC):
    """
    Base class for platform fetch adapters.

    Subclasses implement ``_fetch`` and append to the result as they go, so
    that a failure part-way through still returns the data already gathered.
    """

    platform: Platform

    async def fetch(
        self,
        credentials: Dict[str, Any],
        window: FetchWindow,
        context: Optional[FetchContext] = None,
    ) -> FetchResult:
        context = context or FetchContext()
        result = FetchResult(platform=self.platform)

        try:
            with Timer(f"{self.platform.value}_fetch", logger, warn_threshold_ms=60000):
                await self._fetch(credentials, window, context, result)
        except (CredentialError, ApiError) as e:
            result.failed = True
            result.error = str(e)
            logger.error(
                f"{self.platform.display_name} fetch failed: {e}",
                extra={
                    "platform": self.platform.value,
                    "window_start": window.start.isoformat(),
                    "window_end": window.end.isoformat(),
                    "partial_records": result.record_count,
                },
            )
        except InvariantViolation:
            raise
        except Exception as e:
            # Anything outside the taxonomy still only fails this platform
            result.failed = True
            result.error = f"Unexpected {type(e).__name__}: {e}"
            logger.exception(
                f"{self.platform.display_name} fetch crashed: {e}",
                extra={
                    "platform": self.platform.value,
                    "window_start": window.start.isoformat(),
                    "window_end": window.end.isoformat(),
                    "partial_records": result.record_count,
                },
            )

        result.debug_counters = context.snapshot()
        logger.info(
            f"{self.platform.display_name}: {len(result.subscriptions)} subscriptions, "
            f"{len(result.revenue_events)} revenue events",
            extra={"platform": self.platform.value, "failed": result.failed},
        )
        return result

    @abstractmethod
    async def _fetch(
        self,
        credentials: Dict[str, Any],
        window: FetchWindow,
        context: FetchContext,
        result: FetchResult,
    ) -> None:
        """Populate ``result`` in place."""

    async def close(self) -> None:
        """Release network resources."""
