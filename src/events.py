"""
Events - Recording what reconciliations did to the objects they manage.

Nodes and the parent controller report each mutation, status update and
failure as an event on the parent object. Events are logged, kept in a
bounded history and published on an in-memory pub/sub bus. The same bus
backs watch streams of the in-memory store.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from config import ControllerConfig
from resources import ResourceRef, now_rfc3339

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Severity of a recorded event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """An event recorded against an object."""

    involved_object: ResourceRef
    event_type: EventType
    reason: str
    message: str
    source: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the event to a JSON-compatible dict."""
        return {
            "involvedObject": {
                "group": self.involved_object.group,
                "kind": self.involved_object.kind,
                "namespace": self.involved_object.namespace,
                "name": self.involved_object.name,
            },
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "source": self.source,
            "timestamp": self.timestamp,
        }


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Any], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking.  Full queues cause events to be dropped with a warning to
    prevent back-pressure on publishers.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: Any) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[Any], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug(f"Queue full on unsubscribe of {subscriber_id}")
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventRecorder:
    """
    Records events against objects.

    Every event is logged, appended to a bounded history and published on
    the bus when one is attached.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        component: str = "reconciler",
        history_size: int = 256,
    ):
        self.bus = bus
        self.component = component
        self.history: Deque[Event] = deque(maxlen=history_size)

    @classmethod
    def from_config(
        cls, config: ControllerConfig, bus: Optional[EventBus] = None
    ) -> "EventRecorder":
        """Create a recorder, and a bus unless one is given, from config."""
        if bus is None:
            bus = EventBus(queue_size=config.event_queue_size)
        return cls(
            bus=bus, component=config.name, history_size=config.event_history_size
        )

    async def event(
        self,
        obj: Dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
    ) -> Event:
        """
        Record an event against an object.

        Args:
            obj: The object the event is about, usually the parent.
            event_type: Normal or Warning.
            reason: Short CamelCase reason, e.g. ``Created``.
            message: Human readable description.

        Returns:
            The recorded Event.
        """
        event = Event(
            involved_object=ResourceRef.from_object(obj),
            event_type=event_type,
            reason=reason,
            message=message,
            source=self.component,
            timestamp=now_rfc3339(),
        )

        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        logger.log(level, f"Event({event.involved_object}) {reason}: {message}")

        self.history.append(event)
        if self.bus is not None:
            await self.bus.publish(event)
        return event

    def events_for(self, reason: Optional[str] = None) -> List[Event]:
        """Return recorded events, optionally only those with ``reason``."""
        return [e for e in self.history if reason is None or e.reason == reason]
