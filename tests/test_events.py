"""Unit tests for operation events."""

import asyncio
import json

import pytest

from events import EventBus, EventSubscription, EventType, OperationEvent


def make_event(event_type=EventType.PHASE_CHANGED, key="q1", **kwargs):
    params = {
        "event_type": event_type,
        "operation": "create",
        "kind": "JobQueue",
        "key": key,
        "phase": "waiting",
        "timestamp": "2024-01-15T10:30:00Z",
    }
    params.update(kwargs)
    return OperationEvent(**params)


# ==================== OperationEvent tests ====================


class TestOperationEvent:
    """Tests for the OperationEvent dataclass."""

    def test_event_type_values(self):
        assert [t.value for t in EventType] == [
            "PHASE_CHANGED",
            "MUTATION_DISPATCHED",
            "COMPLETED",
        ]

    def test_to_dict(self):
        event = make_event(detail={"step": "waiting for creation of"})
        assert event.to_dict() == {
            "event_type": "PHASE_CHANGED",
            "operation": "create",
            "kind": "JobQueue",
            "key": "q1",
            "phase": "waiting",
            "detail": {"step": "waiting for creation of"},
            "timestamp": "2024-01-15T10:30:00Z",
        }

    def test_to_json_handles_odd_values(self):
        event = make_event(detail={"duration": 1.5, "error": ValueError("boom")})
        parsed = json.loads(event.to_json())
        assert parsed["detail"]["duration"] == 1.5
        assert parsed["detail"]["error"] == "boom"

    def test_default_timestamp_is_utc(self):
        event = OperationEvent(
            event_type=EventType.COMPLETED,
            operation="delete",
            kind="JobQueue",
            key="q1",
            phase="succeeded",
        )
        assert event.timestamp.endswith("Z")


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_async_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        event = make_event()
        await queue.put(event)
        await queue.put(None)  # Sentinel to stop

        received = [e async for e in sub]

        assert received == [event]

    async def test_filter_fn_applied(self):
        queue = asyncio.Queue()
        sub = EventSubscription(
            queue, filter_fn=lambda e: e.event_type is EventType.COMPLETED
        )

        await queue.put(make_event(EventType.PHASE_CHANGED))
        await queue.put(make_event(EventType.COMPLETED))
        await queue.put(None)

        received = [e async for e in sub]

        assert len(received) == 1
        assert received[0].event_type is EventType.COMPLETED

    async def test_sentinel_stops_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        await queue.put(None)

        assert [e async for e in sub] == []


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=16)

    async def test_publish_no_subscribers(self, bus):
        """Publishing with no subscribers does not raise."""
        await bus.publish(make_event())

    async def test_subscribe_returns_id_and_subscription(self, bus):
        subscriber_id, subscription = await bus.subscribe()
        assert isinstance(subscriber_id, str)
        assert isinstance(subscription, EventSubscription)

    async def test_multiple_subscribers_all_receive(self, bus):
        event = make_event()
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()

        await bus.publish(event)

        e1 = await asyncio.wait_for(sub1.__anext__(), timeout=1.0)
        e2 = await asyncio.wait_for(sub2.__anext__(), timeout=1.0)
        assert e1 is event
        assert e2 is event

    async def test_filtered_subscription_by_key(self, bus):
        _, sub = await bus.subscribe(lambda e: e.key == "q2")

        await bus.publish(make_event(key="q1"))
        await bus.publish(make_event(key="q2"))

        event = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert event.key == "q2"

    async def test_unsubscribe_sends_sentinel(self, bus):
        sid, sub = await bus.subscribe()
        await bus.unsubscribe(sid)

        assert [e async for e in sub] == []
        assert bus.subscriber_count() == 0

    async def test_unsubscribe_unknown_id(self, bus):
        await bus.unsubscribe("missing")
        assert bus.subscriber_count() == 0

    async def test_full_queue_drops_event(self, caplog):
        bus = EventBus(queue_size=1)
        _, sub = await bus.subscribe()
        first = make_event()

        await bus.publish(first)
        # Dropped with a warning
        await bus.publish(make_event())

        event = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert event is first
        assert "queue full" in caplog.text

    async def test_subscriber_count(self, bus):
        assert bus.subscriber_count() == 0

        sid1, _ = await bus.subscribe()
        sid2, _ = await bus.subscribe()
        assert bus.subscriber_count() == 2

        await bus.unsubscribe(sid1)
        await bus.unsubscribe(sid2)
        assert bus.subscriber_count() == 0
