"""Sync trigger, cancel, status and log endpoints."""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from metrics_sync.queries import get_sync_logs
from web.config import SYNC_TRIGGER_LIMIT
from web.schemas import (
    SyncRequest,
    SyncTriggerResponse,
    SyncCancelResponse,
    SyncStatusResponse,
    SyncLogsResponse,
)
from ._deps import limiter, get_sync_service, get_logger

router = APIRouter(prefix="/apps/{app_id}/sync")
logger = get_logger(__name__)


@router.post("", response_model=SyncTriggerResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_sync(request: Request, app_id: str, body: Optional[SyncRequest] = None):
    """Start a sync session in the background, cancelling any active one."""
    body = body or SyncRequest()
    service = await get_sync_service()
    try:
        session_id = await service.trigger_sync(app_id, body.force_historical, body.platform)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id}


@router.post("/cancel", response_model=SyncCancelResponse)
async def cancel_sync(app_id: str):
    service = await get_sync_service()
    return {"cancelled_sessions": await service.cancel_sync(app_id)}


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(app_id: str):
    service = await get_sync_service()
    return await service.get_active_sync_status(app_id)


@router.get("/logs", response_model=SyncLogsResponse)
async def sync_logs(
    app_id: str,
    limit: int = Query(100, ge=1, le=1000),
    session_id: Optional[str] = Query(None),
):
    return {"app_id": app_id, "logs": await get_sync_logs(app_id, limit=limit, session_id=session_id)}
