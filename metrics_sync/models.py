"""
Canonical domain models for subscription and revenue metrics.

Every platform adapter produces these shapes; everything downstream of the
normalizer (store, snapshot builder, rollup, query surface) consumes only them.
"""
from dataclasses import dataclass, field, fields, asdict
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(seconds: Optional[float]) -> Optional[datetime]:
    """Unix seconds -> aware UTC datetime (None passes through)."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def day_bounds(day: date):
    """[start, end) of a UTC calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def round_money(value: float) -> float:
    return round(value, 2)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class Platform(str, Enum):
    """Billing platforms plus the derived cross-platform row."""
    APPSTORE = "appstore"
    GOOGLEPLAY = "googleplay"
    STRIPE = "stripe"
    UNIFIED = "unified"

    @classmethod
    def sources(cls) -> List["Platform"]:
        """Real platforms in processing order (payments API, cloud export, store reporting)."""
        return [cls.STRIPE, cls.GOOGLEPLAY, cls.APPSTORE]

    @property
    def display_name(self) -> str:
        names = {
            Platform.APPSTORE: "App Store",
            Platform.GOOGLEPLAY: "Google Play",
            Platform.STRIPE: "Stripe",
            Platform.UNIFIED: "Unified",
        }
        return names[self]


class SubscriptionStatus(str, Enum):
    """Normalized subscription status."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def from_stripe(cls, raw: str) -> "SubscriptionStatus":
        mapping = {
            "active": cls.ACTIVE,
            "trialing": cls.TRIALING,
            "past_due": cls.PAST_DUE,
            "unpaid": cls.PAST_DUE,
            "incomplete": cls.PAST_DUE,
            "paused": cls.PAST_DUE,
            "canceled": cls.CANCELED,
            "incomplete_expired": cls.CANCELED,
        }
        return mapping.get((raw or "").lower(), cls.EXPIRED)

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


class RevenueEventType(str, Enum):
    """Kinds of money movement tracked per subscription."""
    FIRST_PAYMENT = "first_payment"
    RENEWAL = "renewal"
    REFUND = "refund"


class BillingInterval(str, Enum):
    """Subscription billing period unit."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def monthly_factor(self) -> float:
        """Multiplier turning one period's price into a monthly amount."""
        factors = {
            self.DAY: 30.0,
            self.WEEK: 4.33,
            self.MONTH: 1.0,
            self.YEAR: 1.0 / 12.0,
        }
        return factors[self]

    @property
    def approx_days(self) -> int:
        days = {self.DAY: 1, self.WEEK: 7, self.MONTH: 30, self.YEAR: 365}
        return days[self]


class SessionStatus(str, Enum):
    """Sync session lifecycle state."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    """Sync log entry level shown to users."""
    INFO = "info"
    ERROR = "error"
    SUCCESS = "success"


class WeekStart(str, Enum):
    """First day of a reporting week."""
    MONDAY = "monday"
    SUNDAY = "sunday"

    @property
    def weekday(self) -> int:
        """Python weekday() number of the first day."""
        return 0 if self is WeekStart.MONDAY else 6

    def week_start_for(self, day: date) -> date:
        return day - timedelta(days=(day.weekday() - self.weekday) % 7)


# ═══════════════════════════════════════════════════════════════════════════════
# CANONICAL RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Subscription:
    """Subscription keyed by (platform, external_id)."""
    platform: Platform
    external_id: str
    status: SubscriptionStatus
    product_id: str
    start_date: datetime
    end_date: Optional[datetime] = None
    is_trial: bool = False
    will_cancel: bool = False
    is_in_grace: bool = False
    amount: Optional[float] = None
    interval: Optional[BillingInterval] = None
    interval_count: int = 1
    currency: Optional[str] = None
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    raw_status: Optional[str] = None

    def __post_init__(self):
        self.start_date = ensure_utc(self.start_date)
        self.end_date = ensure_utc(self.end_date)
        self.canceled_at = ensure_utc(self.canceled_at)
        self.trial_end = ensure_utc(self.trial_end)

    @property
    def key(self) -> tuple:
        return (self.platform.value, self.external_id)

    def is_active_during(self, start: datetime, end: datetime) -> bool:
        """True if the active interval overlaps [start, end)."""
        if self.start_date >= end:
            return False
        return self.end_date is None or self.end_date > start

    def is_trial_at(self, moment: datetime) -> bool:
        if self.trial_end is not None:
            return moment < self.trial_end
        return self.is_trial

    @property
    def monthly_amount(self) -> Optional[float]:
        """Price normalized to one month, None when price is unknown."""
        if self.amount is None or self.interval is None:
            return None
        count = self.interval_count or 1
        return self.amount * self.interval.monthly_factor / count


@dataclass
class RevenueEvent:
    """Money movement keyed by (platform, external_id of the transaction)."""
    platform: Platform
    external_id: str
    subscription_external_id: str
    event_type: RevenueEventType
    amount: float
    timestamp: datetime
    currency: Optional[str] = None
    amount_excluding_tax: Optional[float] = None
    amount_proceeds: Optional[float] = None
    product_id: Optional[str] = None

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def key(self) -> tuple:
        return (self.platform.value, self.external_id)

    @property
    def sign(self) -> int:
        return -1 if self.event_type is RevenueEventType.REFUND else 1

    def net_amount(self, fallback_ratio: float):
        """
        Signed net amount and whether it was estimated.

        Returns:
            Tuple of (net, estimated)
        """
        if self.amount_proceeds is not None:
            return self.sign * abs(self.amount_proceeds), False
        return self.sign * abs(self.amount) * fallback_ratio, True


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════════

STOCK_METRICS = (
    "active_subscribers",
    "trial_subscribers",
    "paid_subscribers",
    "monthly_subscribers",
    "yearly_subscribers",
    "mrr",
)

FLOW_METRICS = (
    "cancellations",
    "grace_events",
    "first_payments",
    "renewals",
    "monthly_revenue_gross",
    "monthly_revenue_net",
    "churn",
    "refunds",
)

MONEY_METRICS = ("mrr", "monthly_revenue_gross", "monthly_revenue_net")

ALL_METRICS = STOCK_METRICS + FLOW_METRICS


@dataclass
class MetricsSnapshot:
    """One day of metrics for one (app, platform)."""
    app_id: str
    date: date
    platform: Platform
    active_subscribers: int = 0
    trial_subscribers: int = 0
    paid_subscribers: int = 0
    monthly_subscribers: int = 0
    yearly_subscribers: int = 0
    mrr: float = 0.0
    cancellations: int = 0
    grace_events: int = 0
    first_payments: int = 0
    renewals: int = 0
    monthly_revenue_gross: float = 0.0
    monthly_revenue_net: float = 0.0
    churn: int = 0
    refunds: int = 0
    net_revenue_estimated: bool = False

    def metric(self, name: str):
        if name not in ALL_METRICS:
            raise KeyError(f"Unknown metric: {name}")
        return getattr(self, name)

    def metrics_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in ALL_METRICS}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["platform"] = self.platform.value
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def unified_from(cls, app_id: str, day: date, rows: Iterable["MetricsSnapshot"]) -> "MetricsSnapshot":
        """
        Field-wise sum of per-platform rows for one day.

        This is the only constructor of unified rows. A platform without a
        row contributes zero.
        """
        unified = cls(app_id=app_id, date=day, platform=Platform.UNIFIED)
        for row in rows:
            if row.platform is Platform.UNIFIED:
                continue
            for name in ALL_METRICS:
                setattr(unified, name, getattr(unified, name) + getattr(row, name))
            unified.net_revenue_estimated = unified.net_revenue_estimated or row.net_revenue_estimated
        for name in MONEY_METRICS:
            setattr(unified, name, round_money(getattr(unified, name)))
        return unified

    @classmethod
    def column_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


# ═══════════════════════════════════════════════════════════════════════════════
# APPS, CONNECTIONS, SESSIONS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class App:
    """Application whose platforms are synced."""
    id: str
    name: str
    week_start_day: WeekStart = WeekStart.MONDAY
    currency: str = "USD"


@dataclass
class PlatformConnection:
    """Decrypted connection for one (app, platform)."""
    id: int
    app_id: str
    platform: Platform
    credentials: Dict[str, Any] = field(repr=False, default_factory=dict)
    is_active: bool = True
    last_sync: Optional[datetime] = None


@dataclass
class SyncSession:
    """Current or most recent sync attempt for an app."""
    id: str
    app_id: str
    status: SessionStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    force_historical: bool = False
    platform: Optional[Platform] = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "force_historical": self.force_historical,
            "platform": self.platform.value if self.platform else None,
        }


@dataclass
class SyncLogEntry:
    """User-facing line in a session's sync log."""
    app_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_id": self.app_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level.value,
        }
