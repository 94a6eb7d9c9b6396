"""
Event Bus System for Configuration Distribution

Provides an async event bus used to push configuration updates and alert
transitions to in-process subscribers, plus the Publisher capability the
Distribution Core depends on.
"""

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


class BaseEvent(BaseModel):
    """Base class for all events in the system"""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "screenhub"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConfigurationEvent(BaseEvent):
    """Event emitted when a named configuration changes"""

    event_type: str = "config.updated"
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def config_name(self) -> str | None:
        return self.payload.get("name")


class AlertEvent(BaseEvent):
    """Event emitted when a health alert is triggered or resolved"""

    event_type: str = "alert.triggered"
    alert_id: str
    check_name: str
    level: str
    message: str
    value: float | None = None
    triggered_at: datetime
    resolved_at: datetime | None = None


@runtime_checkable
class Publisher(Protocol):
    """Outbound publish capability for configuration updates"""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class EventHandler:
    """Wrapper for event handler functions with metadata"""

    def __init__(
        self,
        handler: Callable[[BaseEvent], Awaitable[None]],
        event_types: list[str],
        priority: int = 0,
    ):
        self.handler = handler
        self.event_types = set(event_types)
        self.priority = priority
        self.handler_id = str(uuid4())

    async def handle(self, event: BaseEvent) -> None:
        """Execute the handler function"""
        try:
            await self.handler(event)
        except Exception as e:
            logger.error(
                "event_handler_failed",
                handler_id=self.handler_id,
                event_type=event.event_type,
                error=str(e),
                exc_info=True,
            )

    def matches_event(self, event: BaseEvent) -> bool:
        """Check if this handler should process the given event"""
        return event.event_type in self.event_types


class EventBus:
    """
    Async event bus for inter-service communication

    Features:
    - Non-blocking event emission
    - Topic-based event routing
    - Priority-based handler execution
    - Bounded queue to prevent memory issues
    """

    def __init__(self, max_queue_size: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._processor_task: asyncio.Task | None = None
        self._running = False
        self._handler_tasks: set[asyncio.Task] = set()
        self._stats = {
            "events_processed": 0,
            "events_dropped": 0,
            "handlers_count": 0,
            "active_handler_tasks": 0,
        }

    async def start(self) -> None:
        """Start the event processing loop"""
        if self._running:
            logger.warning("event_bus_already_running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("event_bus_started")

    async def stop(self) -> None:
        """Stop the event processing loop, draining queued events first"""
        if not self._running:
            return

        self._running = False

        if self._processor_task:
            self._processor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._processor_task
            self._processor_task = None

        while not self._event_queue.empty():
            try:
                event = self._event_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_single_event(event)

        await self._cleanup_handler_tasks()
        logger.info("event_bus_stopped")

    def subscribe(
        self,
        event_types: str | list[str],
        handler: Callable[[BaseEvent], Awaitable[None]],
        priority: int = 0,
    ) -> str:
        """
        Subscribe to events

        Args:
            event_types: Event type(s) to listen for
            handler: Async function to handle events
            priority: Handler priority (higher = executed first)

        Returns:
            Handler ID for unsubscribing
        """
        if isinstance(event_types, str):
            event_types = [event_types]

        event_handler = EventHandler(handler, event_types, priority)

        for event_type in event_types:
            self._handlers.setdefault(event_type, []).append(event_handler)
            self._handlers[event_type].sort(key=lambda h: h.priority, reverse=True)

        self._stats["handlers_count"] = sum(len(h) for h in self._handlers.values())
        logger.debug("event_handler_subscribed", handler_id=event_handler.handler_id, event_types=event_types)

        return event_handler.handler_id

    def unsubscribe(self, handler_id: str) -> bool:
        """
        Unsubscribe a handler

        Returns:
            True if handler was found and removed
        """
        removed = False

        for event_type, handlers in list(self._handlers.items()):
            remaining = [h for h in handlers if h.handler_id != handler_id]
            if len(remaining) != len(handlers):
                removed = True
            if remaining:
                self._handlers[event_type] = remaining
            else:
                del self._handlers[event_type]

        self._stats["handlers_count"] = sum(len(h) for h in self._handlers.values())
        return removed

    def emit_nowait(self, event: BaseEvent) -> bool:
        """
        Emit an event without blocking

        Returns:
            True if event was queued, False if queue is full
        """
        try:
            self._event_queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            logger.warning("event_queue_full", event_type=event.event_type)
            return False

    async def emit(self, event: BaseEvent, timeout: float | None = None) -> bool:
        """
        Emit an event with optional timeout

        Returns:
            True if event was queued
        """
        try:
            await asyncio.wait_for(self._event_queue.put(event), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            self._stats["events_dropped"] += 1
            logger.warning("event_queue_timeout", event_type=event.event_type)
            return False

    async def _process_events(self) -> None:
        """Main event processing loop"""
        try:
            while self._running:
                try:
                    # Wait with a timeout so shutdown is noticed
                    event = await asyncio.wait_for(self._event_queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_single_event(event)
        except asyncio.CancelledError:
            logger.debug("event_processing_cancelled")
            raise

    async def _process_single_event(self, event: BaseEvent) -> None:
        """Dispatch an event to every matching handler without awaiting them"""
        handlers = self._handlers.get(event.event_type, [])
        self._stats["events_processed"] += 1

        if not handlers:
            return

        for handler in handlers:
            task = asyncio.create_task(handler.handle(event))
            task.add_done_callback(self._remove_handler_task)
            self._handler_tasks.add(task)

        self._stats["active_handler_tasks"] = len(self._handler_tasks)
        # Give handlers a chance to start
        await asyncio.sleep(0)

    def _remove_handler_task(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        self._stats["active_handler_tasks"] = len(self._handler_tasks)

    async def _cleanup_handler_tasks(self) -> None:
        """Wait briefly for in-flight handlers, then cancel stragglers"""
        if not self._handler_tasks:
            return

        pending = list(self._handler_tasks)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=5.0)

        for task in pending:
            if not task.done():
                task.cancel()

        self._handler_tasks.clear()
        self._stats["active_handler_tasks"] = 0

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics"""
        return {
            **self._stats,
            "queue_size": self._event_queue.qsize(),
            "max_queue_size": self._event_queue.maxsize,
            "is_running": self._running,
            "event_types": list(self._handlers.keys()),
        }

    def is_running(self) -> bool:
        return self._running


class EventBusPublisher:
    """Publisher that routes a topic and payload onto the in-process EventBus"""

    def __init__(self, event_bus: EventBus, emit_timeout: float | None = 1.0):
        self.event_bus = event_bus
        self.emit_timeout = emit_timeout

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        event = ConfigurationEvent(event_type=topic, payload=payload)
        queued = await self.event_bus.emit(event, timeout=self.emit_timeout)
        if not queued:
            raise RuntimeError(f"Event bus rejected event for topic {topic}")

