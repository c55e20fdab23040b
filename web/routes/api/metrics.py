"""Metrics query endpoints."""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from metrics_sync.models import WeekStart
from metrics_sync.queries import get_latest_metrics, get_weekly_metrics_history, get_all_debug_data
from web.schemas import LatestMetricsResponse, WeeklyHistoryResponse, DebugDataResponse

router = APIRouter(prefix="/apps/{app_id}/metrics")


@router.get("/latest", response_model=LatestMetricsResponse)
async def latest_metrics(app_id: str):
    return await get_latest_metrics(app_id)


@router.get("/weekly", response_model=WeeklyHistoryResponse)
async def weekly_metrics(
    app_id: str,
    metric: str = Query(..., description="Metric name, e.g. mrr or active_subscribers"),
    week_start: Optional[WeekStart] = Query(None, description="monday or sunday, defaults to the app setting"),
):
    """Weekly series of one metric, oldest first."""
    try:
        weeks = await get_weekly_metrics_history(app_id, metric, week_start_day=week_start)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"app_id": app_id, "metric": metric, "weeks": weeks}


@router.get("/debug", response_model=DebugDataResponse)
async def debug_data(app_id: str):
    return await get_all_debug_data(app_id)
