"""
Observability helpers: structured logging, correlation IDs, timing.

Usage:
    from metrics_sync.observability import setup_logging, get_logger, correlation_context

    # At process startup:
    setup_logging()

    # In modules:
    logger = get_logger(__name__)

    # Around one sync session:
    with correlation_context(session_id):
        logger.info("Fetching chunk", extra={"platform": "stripe"})
"""
import functools
import inspect
import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Any, Dict, Callable

# Correlation ID for the current request or sync session
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Extra fields added to every log line (app_id, platform, ...)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new short correlation ID."""
    return str(uuid.uuid4())[:8]


class correlation_context:
    """Context manager that binds a correlation ID for its duration."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self):
        self.token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args):
        _correlation_id.reset(self.token)


def add_log_context(**kwargs) -> None:
    """Add extra context to be included in all log messages."""
    current = _log_context.get()
    _log_context.set({**current, **kwargs})


def clear_log_context() -> None:
    """Clear the log context."""
    _log_context.set({})


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter.

    Each line carries timestamp, level, logger, message, the correlation ID
    when one is bound, the log context, any ``extra`` fields and exception text.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        context = _log_context.get()
        if context:
            log_entry.update(context)

        log_entry.update(_record_extras(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter.

    Format: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        correlation_str = f" [{correlation_id}]" if correlation_id else ""

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        base_msg = (
            f"{timestamp} - {record.levelname:8} - {record.name}{correlation_str} - "
            f"{record.getMessage()}"
        )

        extras = _record_extras(record)
        if extras:
            base_msg += f" | {extras}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_libs: bool = False
) -> None:
    """
    Configure logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON logs; otherwise human-readable
        include_libs: If True, keep third-party library loggers at ``level``
    """
    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    if not include_libs:
        for noisy in ("httpx", "httpcore", "apscheduler", "uvicorn.access"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("stripe_invoices", logger) as t:
            page = await client.get("invoices")
        print(t.elapsed_ms)
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_threshold_ms: float = 1000):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_threshold_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


def timed(name: Optional[str] = None, warn_threshold_ms: float = 1000):
    """
    Decorator for timing function execution (sync or async).

    Args:
        name: Operation name (defaults to function name)
        warn_threshold_ms: Log at WARNING level if exceeds this threshold
    """
    def decorator(func: Callable) -> Callable:
        operation_name = name or func.__name__
        func_logger = get_logger(func.__module__)

        def _log(start: float) -> None:
            elapsed_ms = (time.perf_counter() - start) * 1000
            level = logging.WARNING if elapsed_ms > warn_threshold_ms else logging.DEBUG
            func_logger.log(
                level,
                f"{operation_name} completed",
                extra={"duration_ms": round(elapsed_ms, 2)}
            )

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _log(start)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _log(start)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST COUNTERS
# ═══════════════════════════════════════════════════════════════════════════════

class RequestStats:
    """
    In-memory counters for outbound platform calls and inbound API requests.

    Keys are free-form labels such as ``"stripe GET /invoices"``.
    """

    def __init__(self, max_samples: int = 100):
        self._counts: Dict[str, int] = {}
        self._errors: Dict[str, int] = {}
        self._timings: Dict[str, list] = {}
        self._max_samples = max_samples

    def record(self, key: str, duration_ms: float, error: Optional[str] = None) -> None:
        self._counts[key] = self._counts.get(key, 0) + 1
        if error:
            self._errors[error] = self._errors.get(error, 0) + 1

        samples = self._timings.setdefault(key, [])
        samples.append(duration_ms)
        if len(samples) > self._max_samples:
            self._timings[key] = samples[-self._max_samples:]

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of counters with average/max timings."""
        timing = {}
        for key, samples in self._timings.items():
            if samples:
                timing[key] = {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 2),
                    "max_ms": round(max(samples), 2),
                }
        return {
            "requests": dict(self._counts),
            "errors": dict(self._errors),
            "timing": timing,
        }

    def reset(self) -> None:
        self._counts.clear()
        self._errors.clear()
        self._timings.clear()


# Global stats instance
request_stats = RequestStats()
