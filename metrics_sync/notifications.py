"""
App Store server notification ingestion.

Notifications are a best-effort signal: they are decoded, stored once per
notificationUUID and announced on the event bus. Metrics are never derived
from them.
"""
from typing import Any, Dict, Optional

import jwt

from metrics_sync.events import events, SyncEvent
from metrics_sync.exceptions import ParseError
from metrics_sync.models import Platform, from_unix
from metrics_sync.observability import get_logger
from metrics_sync.store import get_store, MetricsStore

logger = get_logger(__name__)


def decode_signed_payload(signed_payload: str) -> Dict[str, Any]:
    """
    Claims of a JWS-signed notification.

    The signature chain is not verified here.

    Raises:
        ParseError: If the payload is not a decodable JWS
    """
    try:
        claims = jwt.decode(signed_payload, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise ParseError("Invalid signed notification payload", str(e), platform=Platform.APPSTORE.value)
    if not claims.get("notificationUUID"):
        raise ParseError("Notification has no notificationUUID", platform=Platform.APPSTORE.value, record=claims)
    return claims


async def ingest_store_notification(
    app_id: str,
    signed_payload: str,
    store: Optional[MetricsStore] = None,
) -> Dict[str, Any]:
    """
    Decode and persist one notification.

    Returns:
        Dict with notification_uuid, notification_type and whether it was new
    """
    claims = decode_signed_payload(signed_payload)
    store = store or await get_store()

    signed_date = claims.get("signedDate")
    stored = await store.save_store_notification(
        app_id=app_id,
        notification_uuid=claims["notificationUUID"],
        notification_type=claims.get("notificationType"),
        subtype=claims.get("subtype"),
        signed_at=from_unix(signed_date / 1000) if signed_date else None,
        payload=claims,
    )

    summary = {
        "notification_uuid": claims["notificationUUID"],
        "notification_type": claims.get("notificationType"),
        "subtype": claims.get("subtype"),
        "stored": stored,
    }
    if stored:
        logger.info(
            f"Stored {summary['notification_type']} notification for app {app_id}",
            extra={"app_id": app_id, "notification_uuid": summary["notification_uuid"]},
        )
        await events.emit(SyncEvent.NOTIFICATION_RECEIVED, {"app_id": app_id, **summary}, source="notifications")
    else:
        logger.debug(f"Duplicate notification {summary['notification_uuid']} ignored")
    return summary
