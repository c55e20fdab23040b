"""
Centralized configuration for the platform metrics sync engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from metrics_sync.config import config

    chunk_days = config.sync.chunk_size_days
    fee_ratio = config.metrics.estimated_net_revenue_ratio
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class SyncConfig:
    """Sync window and chunking configuration."""

    historical_days: int = field(default_factory=lambda: _env_int("HISTORICAL_SYNC_DAYS", 365))
    chunk_size_days: int = field(default_factory=lambda: _env_int("SYNC_CHUNK_SIZE_DAYS", 30))

    # Play reports are restated for weeks after the fact
    google_play_lookback_days: int = field(
        default_factory=lambda: _env_int("GOOGLE_PLAY_LOOKBACK_DAYS", 90)
    )

    # App Store daily reports land 1-3 days late
    app_store_report_delay_days: int = field(
        default_factory=lambda: _env_int("APP_STORE_REPORT_DELAY_DAYS", 3)
    )

    proceeds_batch_size: int = field(default_factory=lambda: _env_int("PROCEEDS_BATCH_SIZE", 10))

    # Fixed processing order: payments API, cloud export, store reporting
    platform_order: tuple = ("stripe", "googleplay", "appstore")


@dataclass(frozen=True)
class HttpConfig:
    """Outbound HTTP configuration shared by all platform adapters."""

    timeout_seconds: float = field(default_factory=lambda: _env_float("HTTP_TIMEOUT_SECONDS", 30.0))
    max_attempts: int = field(default_factory=lambda: _env_int("HTTP_MAX_ATTEMPTS", 3))
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_keepalive_connections: int = 10
    max_connections: int = 20

    stripe_base_url: str = "https://api.stripe.com/v1"
    app_store_base_url: str = "https://api.appstoreconnect.apple.com/v1"
    gcs_base_url: str = "https://storage.googleapis.com"

    # App Store Connect allows roughly 3600 requests/hour per key
    app_store_requests_per_second: float = 1.0
    app_store_burst: int = 5


@dataclass(frozen=True)
class MetricsConfig:
    """Snapshot and rollup configuration."""

    # Used when a revenue event carries no measured proceeds
    estimated_net_revenue_ratio: float = field(
        default_factory=lambda: _env_float("ESTIMATED_NET_REVENUE_RATIO", 0.85)
    )
    flow_window_days: int = field(default_factory=lambda: _env_int("FLOW_WINDOW_DAYS", 30))
    weekly_history_weeks: int = field(default_factory=lambda: _env_int("WEEKLY_HISTORY_WEEKS", 52))
    default_week_start_day: str = "monday"


@dataclass(frozen=True)
class StorageConfig:
    """DuckDB storage configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("DUCKDB_PATH", str(Path(__file__).parent.parent / "data" / "metrics.duckdb"))
        )
    )
    query_timeout: float = 30.0
    long_query_timeout: float = 120.0


@dataclass(frozen=True)
class SecurityConfig:
    """Credential blob encryption."""

    credentials_key: Optional[str] = field(
        default_factory=lambda: os.getenv("CREDENTIALS_ENCRYPTION_KEY") or None
    )


@dataclass(frozen=True)
class SchedulerConfig:
    """Daily sync schedule (UTC)."""

    enabled: bool = field(default_factory=lambda: os.getenv("SCHEDULER_ENABLED", "true").lower() == "true")
    daily_sync_hour: int = field(default_factory=lambda: _env_int("DAILY_SYNC_HOUR", 3))
    daily_sync_minute: int = field(default_factory=lambda: _env_int("DAILY_SYNC_MINUTE", 0))
    timezone: str = "UTC"


@dataclass(frozen=True)
class WebConfig:
    """Web API configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("WEB_PORT", 8080))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text"))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.4.0"
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()


# ─── Convenience Exports ──────────────────────────────────────────────────────
VERSION = config.version
HISTORICAL_SYNC_DAYS = config.sync.historical_days
SYNC_CHUNK_SIZE_DAYS = config.sync.chunk_size_days
GOOGLE_PLAY_LOOKBACK_DAYS = config.sync.google_play_lookback_days
APP_STORE_REPORT_DELAY_DAYS = config.sync.app_store_report_delay_days
PROCEEDS_BATCH_SIZE = config.sync.proceeds_batch_size
HTTP_TIMEOUT_SECONDS = config.http.timeout_seconds
HTTP_MAX_ATTEMPTS = config.http.max_attempts
ESTIMATED_NET_REVENUE_RATIO = config.metrics.estimated_net_revenue_ratio
FLOW_WINDOW_DAYS = config.metrics.flow_window_days
WEEKLY_HISTORY_WEEKS = config.metrics.weekly_history_weeks


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = None) -> None:
    """
    Validate configuration values.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If any value is out of range
    """
    cfg = app_config or config
    errors = []

    if cfg.sync.historical_days <= 0:
        errors.append("HISTORICAL_SYNC_DAYS must be positive")

    if cfg.sync.chunk_size_days <= 0:
        errors.append("SYNC_CHUNK_SIZE_DAYS must be positive")

    if cfg.sync.proceeds_batch_size <= 0:
        errors.append("PROCEEDS_BATCH_SIZE must be positive")

    if cfg.http.max_attempts < 1:
        errors.append("HTTP_MAX_ATTEMPTS must be at least 1")

    if not 0 < cfg.metrics.estimated_net_revenue_ratio <= 1:
        errors.append("ESTIMATED_NET_REVENUE_RATIO must be in (0, 1]")

    if cfg.metrics.weekly_history_weeks <= 0:
        errors.append("WEEKLY_HISTORY_WEEKS must be positive")

    if not 0 <= cfg.scheduler.daily_sync_hour <= 23:
        errors.append("DAILY_SYNC_HOUR must be between 0 and 23")

    if cfg.security.credentials_key and len(cfg.security.credentials_key) != 44:
        errors.append("CREDENTIALS_ENCRYPTION_KEY must be a urlsafe base64 Fernet key (44 chars)")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
