"""Unit tests for event streaming and recorded link events."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from events import (
    EVENT_NORMAL,
    EVENT_WARNING,
    EventBus,
    EventRecorder,
    EventSubscription,
    EventType,
    WatchEvent,
)
from models import NamespacedName

from conftest import make_link

KEY = NamespacedName("default", "living-room-light")

# ==================== EventType tests ====================


class TestEventType:
    """Tests for the EventType enum."""

    def test_values(self):
        assert EventType.ADDED.value == "ADDED"
        assert EventType.MODIFIED.value == "MODIFIED"
        assert EventType.DELETED.value == "DELETED"
        assert EventType.GENERIC.value == "GENERIC"

    def test_all_members(self):
        assert len(EventType) == 4


# ==================== WatchEvent tests ====================


class TestWatchEvent:
    """Tests for the WatchEvent dataclass."""

    def test_create_stamps_time(self):
        event = WatchEvent.create(EventType.ADDED, KEY, new=make_link())
        assert event.timestamp
        assert event.old is None

    def test_object_prefers_new(self):
        old, new = make_link(), make_link()
        new.metadata.generation = 2
        event = WatchEvent.create(EventType.MODIFIED, KEY, old=old, new=new)
        assert event.object is new

    def test_object_falls_back_to_old(self):
        old = make_link()
        event = WatchEvent.create(EventType.DELETED, KEY, old=old)
        assert event.object is old

    def test_to_sse_format(self):
        event = WatchEvent(
            event_type=EventType.ADDED,
            key=KEY,
            old=None,
            new=make_link(),
            timestamp="2024-01-15T10:30:00Z",
        )
        sse = event.to_sse()

        assert sse.startswith("event: ADDED\n")
        assert sse.endswith("\n\n")
        data_line = sse.split("\n")[1]
        assert data_line.startswith("data: ")

        data = json.loads(data_line[len("data: "):])
        assert data["type"] == "ADDED"
        assert data["key"] == "default/living-room-light"
        assert data["object"]["spec"]["adaptor"]["parameters"] == {"ip": "192.168.1.20"}
        assert data["timestamp"] == "2024-01-15T10:30:00Z"


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the in-memory event bus."""

    async def test_subscribe_and_receive(self):
        bus = EventBus()
        _, subscription = await bus.subscribe()

        event = WatchEvent.create(EventType.ADDED, KEY, new=make_link())
        await bus.publish(event)

        received = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert received is event

    async def test_filter(self):
        bus = EventBus()
        _, subscription = await bus.subscribe(
            lambda e: e.event_type == EventType.DELETED
        )

        await bus.publish(WatchEvent.create(EventType.ADDED, KEY, new=make_link()))
        deleted = WatchEvent.create(EventType.DELETED, KEY, old=make_link())
        await bus.publish(deleted)

        received = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert received is deleted

    async def test_unsubscribe_stops_iteration(self):
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(subscriber_id)

        assert bus.subscriber_count() == 0
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    async def test_full_queue_drops_events(self):
        bus = EventBus(queue_size=1)
        _, subscription = await bus.subscribe()

        first = WatchEvent.create(EventType.ADDED, KEY, new=make_link())
        await bus.publish(first)
        await bus.publish(WatchEvent.create(EventType.MODIFIED, KEY, new=make_link()))

        assert await subscription.__anext__() is first

    async def test_unsubscribe_unknown_is_noop(self):
        bus = EventBus()
        await bus.unsubscribe("missing")
        assert bus.subscriber_count() == 0

    async def test_subscription_is_async_iterator(self):
        queue = asyncio.Queue()
        subscription = EventSubscription(queue)
        event = WatchEvent.create(EventType.ADDED, KEY, new=make_link())
        queue.put_nowait(event)
        queue.put_nowait(None)

        received = [e async for e in subscription]

        assert received == [event]


# ==================== EventRecorder tests ====================


@pytest.mark.asyncio
class TestEventRecorder:
    """Tests for recorded link events."""

    async def test_normal_records(self):
        db = AsyncMock()
        recorder = EventRecorder(db, component="limb/edge-1")
        link = make_link()

        await recorder.normal(link, "Created", "device instance is created")

        db.record_link_event.assert_awaited_once_with(
            key=link.key,
            link_uid=link.metadata.uid,
            event_type=EVENT_NORMAL,
            reason="Created",
            message="device instance is created",
            component="limb/edge-1",
        )

    async def test_warning_records(self):
        db = AsyncMock()
        recorder = EventRecorder(db)

        await recorder.warning(make_link(), "FailedSent", "cannot send data")

        assert db.record_link_event.call_args.kwargs["event_type"] == EVENT_WARNING

    async def test_failing_sink_is_swallowed(self):
        db = AsyncMock()
        db.record_link_event = AsyncMock(side_effect=Exception("db down"))
        recorder = EventRecorder(db)

        await recorder.warning(make_link(), "FailedSent", "cannot send data")

    async def test_without_sink(self):
        recorder = EventRecorder()
        await recorder.normal(make_link(), "Connected", "connected to adaptor")
