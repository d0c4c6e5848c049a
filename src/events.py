"""
Event Streaming - In-memory pub/sub for object change events.

The object store publishes an event for every mutation. The reconciliation
manager consumes them as its watch source, and the HTTP API re-exposes them
as Server-Sent Events, similar to the Kubernetes watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of object events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ObjectEvent:
    """Event emitted when a stored object changes."""

    event_type: EventType
    api_version: str
    kind: str
    namespace: str
    name: str
    resource_version: str
    object: Dict[str, Any]
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "type": self.event_type.value,
            "object": self.object,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_object(cls, event_type: EventType, obj: Dict[str, Any]) -> "ObjectEvent":
        """
        Create an event from a stored object dict.

        Args:
            event_type: The type of event.
            obj: The object as returned by the store.

        Returns:
            A new ObjectEvent instance.
        """
        metadata = obj.get("metadata", {})
        return cls(
            event_type=event_type,
            api_version=obj.get("apiVersion", ""),
            kind=obj.get("kind", ""),
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            resource_version=str(metadata.get("resourceVersion", "")),
            object=obj,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ObjectEvent]:
        return self

    async def __anext__(self) -> ObjectEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for object events.

    Full subscriber queues drop events rather than block the publisher; the
    manager's periodic resync covers anything a slow subscriber missed.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ObjectEvent) -> None:
        """Publish an event to all subscribers (non-blocking)."""
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for "
                    f"{event.kind} {event.namespace}/{event.name} "
                    f"(subscriber {subscriber_id}: queue full)"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

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
        """Remove a subscriber and terminate its iterator."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
