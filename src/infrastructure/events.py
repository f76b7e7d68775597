"""Lifecycle event emitter.

The RecordStore reports what it does (saves, loads, fallbacks, quota
warnings, batch progress, errors) through this emitter instead of writing to
a console. Subscribers are plain callables or coroutine functions.

Delivery is in subscription order. A failing subscriber is logged and
skipped; it never breaks the store operation that emitted the event.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

#: Subscribe with this name to receive every event.
ALL_EVENTS = "*"

# Event names emitted by the RecordStore
SAVE = "save"
LOAD = "load"
UPDATE = "update"
DELETE = "delete"
ERROR = "error"
FALLBACK = "fallback"
QUOTA_WARNING = "quota_warning"
BATCH_PROGRESS = "batch_progress"
EXPORT = "export"
EXPORT_WARNING = "export_warning"
IMPORT = "import"
IMPORT_WARNING = "import_warning"
MIGRATION = "migration"


class StoreEvent(BaseModel):
    """A single emitted event."""

    type: str = Field(..., description="Event name")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Event time")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload (never record contents)")


EventHandler = Callable[[StoreEvent], Union[None, Awaitable[None]]]


class EventEmitter:
    """Publish/subscribe hub for store lifecycle events.

    Thread Safety:
        Designed for a single event loop. Subscriptions may change while an
        event is being delivered; delivery uses a snapshot.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._emitted = 0

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` (or ALL_EVENTS).

        Returns:
            A zero-argument function that removes the subscription
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_type: str, **data: Any) -> StoreEvent:
        """Deliver an event to its subscribers and to ALL_EVENTS subscribers.

        Returns:
            The StoreEvent that was delivered
        """
        event = StoreEvent(type=event_type, data=data)
        self._emitted += 1
        handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get(ALL_EVENTS, []))

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event handler for '{event_type}' failed: {str(e)}", exc_info=True)

        return event

    def subscriber_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    @property
    def emitted_count(self) -> int:
        return self._emitted
