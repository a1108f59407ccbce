"""
Event Streaming - In-memory pub/sub for DeviceLink watch events, and the
recorder for user-facing link events.

Watch events carry the before/after snapshots of a link so subscribers can
filter on exactly the fields they care about. Recorded events are
Kubernetes-style ``Normal``/``Warning`` notes attached to a link.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import DeviceLink, NamespacedName

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    GENERIC = "GENERIC"


@dataclass
class WatchEvent:
    """Event emitted when a DeviceLink changes."""

    event_type: EventType
    key: NamespacedName
    old: Optional[DeviceLink]
    new: Optional[DeviceLink]
    timestamp: str

    @property
    def object(self) -> Optional[DeviceLink]:
        """The most recent snapshot carried by the event."""
        return self.new if self.new is not None else self.old

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        obj = self.object
        data = {
            "type": self.event_type.value,
            "key": str(self.key),
            "object": obj.to_dict() if obj is not None else None,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def create(
        cls,
        event_type: EventType,
        key: NamespacedName,
        old: Optional[DeviceLink] = None,
        new: Optional[DeviceLink] = None,
    ) -> "WatchEvent":
        """Create an event stamped with the current time."""
        return cls(
            event_type=event_type,
            key=key,
            old=old,
            new=new,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[WatchEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self

    async def __anext__(self) -> WatchEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for watch events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped to prevent
    back-pressure on publishers; the periodic resync covers the gap.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: WatchEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

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
        filter_fn: Optional[Callable[[WatchEvent], bool]] = None,
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

        logger.info(f"New event subscriber: {subscriber_id}")
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
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


# Recorded (user-facing) link events

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REASON_CREATED = "Created"
REASON_FAILED_CREATED = "FailedCreated"
REASON_CONNECTED = "Connected"
REASON_FAILED_CONNECTED = "FailedConnected"
REASON_FAILED_SENT = "FailedSent"


class EventRecorder:
    """
    Records Normal/Warning events against a DeviceLink.

    Recording is fire-and-forget: a failing sink is logged and never
    changes the outcome of the caller.
    """

    def __init__(self, db: Any = None, component: str = "limb"):
        self._db = db
        self.component = component

    async def event(
        self, link: DeviceLink, event_type: str, reason: str, message: str
    ) -> None:
        level = logging.WARNING if event_type == EVENT_WARNING else logging.INFO
        logger.log(level, f"{event_type} {reason} on {link.key}: {message}")

        if self._db is None:
            return
        try:
            await self._db.record_link_event(
                key=link.key,
                link_uid=link.metadata.uid,
                event_type=event_type,
                reason=reason,
                message=message,
                component=self.component,
            )
        except Exception as e:
            logger.warning(f"Unable to record {reason} event for {link.key}: {e}")

    async def normal(self, link: DeviceLink, reason: str, message: str) -> None:
        await self.event(link, EVENT_NORMAL, reason, message)

    async def warning(self, link: DeviceLink, reason: str, message: str) -> None:
        await self.event(link, EVENT_WARNING, reason, message)
