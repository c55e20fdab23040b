"""
FastAPI application for the platform metrics sync engine.
"""
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, JSONResponse
from starlette.middleware.gzip import GZipMiddleware

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from web.config import VERSION, LOG_LEVEL, LOG_FORMAT
from web.middleware import RequestLoggingMiddleware, RequestTimeoutMiddleware
from web.routes import api, webhooks
from web.routes.api.health import router as health_router
from web.routes.api._deps import limiter
from metrics_sync.config import config, validate_config, ConfigurationError
from metrics_sync.events import events, SyncEvent
from metrics_sync.observability import setup_logging, get_logger
from metrics_sync.scheduler import start_scheduler, stop_scheduler
from metrics_sync.store import get_store, close_store
from metrics_sync.sync_service import reset_sync_service

# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
setup_logging(level=LOG_LEVEL, json_format=(LOG_FORMAT == "json"))
logger = get_logger(__name__)

app = FastAPI(
    title="Platform Metrics Sync",
    description="Subscription metrics aggregated from Stripe, Google Play and the App Store",
    version=VERSION,
    default_response_class=ORJSONResponse,
)

app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return _rate_limit_exceeded_handler(request, exc)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=500, content={"error": "Configuration error", "detail": str(exc)})


# Logging must wrap the timeout so the correlation id is set when it fires
app.add_middleware(RequestTimeoutMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(health_router)
app.include_router(api.router, prefix="/api")
app.include_router(webhooks.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Platform metrics sync starting...")

    try:
        validate_config()
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    store = await get_store()
    stats = await store.get_stats()
    logger.info(
        f"DuckDB ready: {stats['apps']} apps, "
        f"{stats['metrics_snapshots']} snapshots, "
        f"{stats['db_size_mb']} MB"
    )

    if config.scheduler.enabled:
        start_scheduler()

    _register_event_handlers()
    logger.info("API ready")


def _register_event_handlers():
    """Log sync lifecycle events that matter to operators."""

    @events.on(SyncEvent.PLATFORM_FAILED)
    async def on_platform_failed(data: dict):
        logger.warning(
            f"Platform {data.get('platform')} failed for app {data.get('app_id')}: {data.get('error')}"
        )

    @events.on(SyncEvent.SYNC_COMPLETED)
    async def on_sync_completed(data: dict):
        logger.debug(f"Sync session {data.get('session_id')} completed")


@app.on_event("shutdown")
async def shutdown_event():
    stop_scheduler()
    events.clear_handlers()
    reset_sync_service()
    await close_store()
    logger.info("Platform metrics sync stopped")


if __name__ == "__main__":
    import uvicorn

    from web.config import WEB_HOST, WEB_PORT

    uvicorn.run("web.main:app", host=WEB_HOST, port=WEB_PORT)
