"""
Publish/subscribe events for sync runs.

Sync runs report progress and completion through the bus; cache warming and
analytics refresh live outside this package and only subscribe to
``SyncEvent.ORDERS_SYNCED``.

Usage:
    from ordersync.events import events, SyncEvent

    @events.on(SyncEvent.ORDERS_SYNCED)
    async def warm_cache(data: dict):
        print(f"{data['orders_processed']} orders changed ({data['sync_type']})")

    await events.emit(SyncEvent.SYNC_PROGRESS, {"stage": "importing", "percent": 40})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from ordersync.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    """Events emitted during sync runs."""

    SYNC_STARTED = "sync.started"
    SYNC_PROGRESS = "sync.progress"
    BATCH_ATTEMPT = "sync.batch_attempt"
    PERFORMANCE_UPDATE = "sync.performance"
    # UI completion notice, emitted for both success and failure
    SYNC_COMPLETED = "sync.completed"
    # Cache-warming signal, emitted only when orders actually changed
    ORDERS_SYNCED = "orders.synced"
    JOB_GROUP_FINISHED = "jobs.group_finished"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    event_id: str = field(default_factory=lambda: f"{datetime.now(timezone.utc).timestamp():.6f}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "sync_orchestrator"


@dataclass
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus.

    Features:
    - Multiple handlers per event, plus wildcard handlers
    - Error isolation (one handler failure doesn't affect others)
    - Bounded event history for debugging and tests
    """

    def __init__(self, max_history: int = 200):
        self._handlers: Dict[SyncEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._lock = asyncio.Lock()

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to register an event handler.

        Args:
            event_type: Event type to subscribe to, or None for all events
        """

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Registered event handler",
            extra={"handler": getattr(handler, "__name__", repr(handler)),
                   "event_type": event_type.value if event_type else "*"},
        )

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        """
        Returns:
            True if handler was found and removed
        """
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "sync_orchestrator",
    ) -> Event:
        """Emit an event to all subscribed handlers and return it."""
        event = Event(type=event_type, data=data or {}, metadata=EventMetadata(source=source))

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 50) -> List[Event]:
        """Most recent events, oldest first, optionally filtered by type."""
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return history[-limit:]

    def clear_handlers(self) -> None:
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


# Global event bus instance
events = EventBus()


# ═══════════════════════════════════════════════════════════════════════════════
# CONVENIENCE FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════


async def emit_sync_started(sync_type: str, bus: EventBus = None, **kwargs) -> Event:
    return await (bus or events).emit(SyncEvent.SYNC_STARTED, {"sync_type": sync_type, **kwargs})


async def emit_sync_progress(sync_type: str, progress: Dict[str, Any], bus: EventBus = None) -> Event:
    return await (bus or events).emit(SyncEvent.SYNC_PROGRESS, {"sync_type": sync_type, **progress})


async def emit_batch_attempt(
    batch_number: int, attempt: int, max_attempts: int, bus: EventBus = None, **kwargs
) -> Event:
    """Emit "Fetching batch N (attempt a/m)" so long retries stay visible."""
    return await (bus or events).emit(
        SyncEvent.BATCH_ATTEMPT,
        {
            "batch_number": batch_number,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "message": f"Fetching batch {batch_number} (attempt {attempt}/{max_attempts})",
            **kwargs,
        },
    )


async def emit_sync_completed(
    sync_type: str, success: bool, duration_ms: float, bus: EventBus = None, **kwargs
) -> Event:
    return await (bus or events).emit(
        SyncEvent.SYNC_COMPLETED,
        {"sync_type": sync_type, "success": success, "duration_ms": duration_ms, **kwargs},
    )


async def emit_orders_synced(orders_processed: int, sync_type: str, bus: EventBus = None) -> Event:
    """Emit the cache-warming signal."""
    return await (bus or events).emit(
        SyncEvent.ORDERS_SYNCED,
        {"orders_processed": orders_processed, "sync_type": sync_type},
    )
