"""
Pydantic request and response models for API endpoints.
"""
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from metrics_sync.models import Platform


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class StoreStats(BaseModel):
    """DuckDB statistics."""
    status: str
    latency_ms: Optional[float] = None
    apps: Optional[int] = None
    subscriptions: Optional[int] = None
    revenue_events: Optional[int] = None
    metrics_snapshots: Optional[int] = None
    db_size_mb: Optional[float] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    duckdb: StoreStats
    scheduler_running: bool = Field(False, description="Whether the daily sync scheduler is running")


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC
# ═══════════════════════════════════════════════════════════════════════════════

class SyncRequest(BaseModel):
    """Body of a sync trigger."""
    force_historical: bool = Field(False, description="Refetch the full historical window")
    platform: Optional[Platform] = Field(None, description="Sync only this platform")


class SyncTriggerResponse(BaseModel):
    session_id: str


class SyncCancelResponse(BaseModel):
    cancelled_sessions: List[str] = Field(default_factory=list)


class SyncSessionModel(BaseModel):
    """Sync session state."""
    id: str
    app_id: str
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    force_historical: bool = False
    platform: Optional[str] = None


class SyncProgressModel(BaseModel):
    """Chunk progress of one platform within a session."""
    platform: str
    chunks_completed: int
    total_chunks: int
    last_chunk_end: Optional[str] = None


class SyncStatusResponse(BaseModel):
    active: bool
    session: Optional[SyncSessionModel] = None
    progress: List[SyncProgressModel] = Field(default_factory=list)


class SyncLogModel(BaseModel):
    """One user-facing sync log line."""
    app_id: str
    session_id: Optional[str] = None
    timestamp: str
    message: str
    level: str


class SyncLogsResponse(BaseModel):
    app_id: str
    logs: List[SyncLogModel]


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════════

class LatestMetricsResponse(BaseModel):
    """Stock metrics at the latest date plus flow metrics over the trailing window."""
    app_id: str
    date: Optional[str] = Field(None, description="Latest snapshot date (ISO format)")
    flow_window_days: int
    platforms: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class WeeklyPoint(BaseModel):
    week_start: str = Field(description="First day of the week (ISO format)")
    values: Dict[str, float] = Field(description="Metric value per platform, including unified")


class WeeklyHistoryResponse(BaseModel):
    app_id: str
    metric: str
    weeks: List[WeeklyPoint]


class DebugDataResponse(BaseModel):
    """Raw rows and sync state for troubleshooting."""
    app_id: str
    snapshots: List[Dict[str, Any]]
    snapshot_count: int
    platforms_with_data: List[str]
    latest_session: Optional[Dict[str, Any]] = None
    progress: List[Dict[str, Any]] = Field(default_factory=list)
    sync_logs: List[Dict[str, Any]] = Field(default_factory=list)
    billing_counts: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    store_reports: List[Dict[str, Any]] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# WEBHOOKS
# ═══════════════════════════════════════════════════════════════════════════════

class StoreNotificationRequest(BaseModel):
    """App Store server notification envelope."""
    signedPayload: str


class StoreNotificationResponse(BaseModel):
    notification_uuid: str
    notification_type: Optional[str] = None
    subtype: Optional[str] = None
    stored: bool
