"""
Web API configuration.
"""
from metrics_sync.config import config, VERSION

# Web server settings
WEB_HOST = config.web.host
WEB_PORT = config.web.port
LOG_LEVEL = config.web.log_level
LOG_FORMAT = config.web.log_format

# Rate limits for endpoints that start work or accept external input
SYNC_TRIGGER_LIMIT = "10/minute"
WEBHOOK_LIMIT = "120/minute"

__all__ = ["VERSION", "WEB_HOST", "WEB_PORT", "LOG_LEVEL", "LOG_FORMAT", "SYNC_TRIGGER_LIMIT", "WEBHOOK_LIMIT"]
