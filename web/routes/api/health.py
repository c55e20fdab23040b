"""Health check endpoint."""
import time

from fastapi import APIRouter, Request

from metrics_sync.observability import get_correlation_id, Timer
from metrics_sync.scheduler import get_scheduler
from web.config import VERSION
from web.schemas import HealthResponse
from ._deps import limiter, get_store, get_logger, START_TIME

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check for container and load balancer monitoring."""
    try:
        with Timer("health_check_db") as timer:
            store = await get_store()
            stats = await store.get_stats()
        duckdb = {"status": "connected", "latency_ms": round(timer.elapsed_ms, 2), **stats}
    except Exception as e:
        logger.warning(f"Health check store error: {e}")
        duckdb = {"status": f"error: {e}"}

    return {
        "status": "healthy" if duckdb["status"] == "connected" else "degraded",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        "duckdb": duckdb,
        "scheduler_running": get_scheduler().is_running,
    }
