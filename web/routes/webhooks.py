"""Inbound store notifications."""
from fastapi import APIRouter, HTTPException, Request

from metrics_sync.exceptions import ParseError
from metrics_sync.notifications import ingest_store_notification
from web.config import WEBHOOK_LIMIT
from web.routes.api._deps import limiter, get_logger
from web.schemas import StoreNotificationRequest, StoreNotificationResponse

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/appstore/{app_id}", response_model=StoreNotificationResponse)
@limiter.limit(WEBHOOK_LIMIT)
async def appstore_notification(request: Request, app_id: str, body: StoreNotificationRequest):
    """Persist an App Store server notification once per UUID."""
    try:
        return await ingest_store_notification(app_id, body.signedPayload)
    except ParseError as e:
        logger.warning(f"Rejected App Store notification for app {app_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
