"""
In-process event bus for sync lifecycle notifications.

Decouples the orchestrator from whatever wants to react to a sync
(cache busting in the web layer, metrics, tests).

Usage:
    from metrics_sync.events import events, SyncEvent

    @events.on(SyncEvent.SYNC_COMPLETED)
    async def handle_completed(data: dict):
        print(f"Session {data['session_id']} finished")

    await events.emit(SyncEvent.SYNC_COMPLETED, {"session_id": "..."})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from metrics_sync.observability import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    """Events emitted by the sync orchestrator."""

    SYNC_STARTED = "sync.started"
    CHUNK_PERSISTED = "sync.chunk_persisted"
    PLATFORM_FAILED = "sync.platform_failed"
    SYNC_COMPLETED = "sync.completed"
    SYNC_CANCELLED = "sync.cancelled"
    NOTIFICATION_RECEIVED = "notification.received"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "sync_service"


@dataclass
class Event:
    """Event payload plus metadata."""

    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async publish/subscribe bus.

    Handlers run concurrently; one failing handler is logged and does not
    affect the others or the emitter. The last ``max_history`` events are
    kept for debugging.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[SyncEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of ``subscribe``. ``None`` subscribes to every event."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler {handler.__name__}")

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "sync_service",
    ) -> Event:
        """Emit an event to all subscribed handlers and return it."""
        event = Event(type=event_type, data=data or {}, metadata=EventMetadata(source=source))

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, [])) + list(self._wildcard_handlers)
        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


# Global event bus instance
events = EventBus()
