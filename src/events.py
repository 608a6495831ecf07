"""
Operation Events - In-memory pub/sub for reconciliation progress.

Reconcilers publish an event on every phase change, every dispatched
mutation and on completion. Subscribers consume them through an async
iterator, optionally filtered.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of operation events."""

    PHASE_CHANGED = "PHASE_CHANGED"
    MUTATION_DISPATCHED = "MUTATION_DISPATCHED"
    COMPLETED = "COMPLETED"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class OperationEvent:
    """Event emitted while a reconciliation operation progresses."""

    event_type: EventType
    operation: str
    kind: str
    key: str
    phase: str
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "operation": self.operation,
            "kind": self.kind,
            "key": self.key,
            "phase": self.phase,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the event, falling back to str() for odd detail values."""
        return json.dumps(self.to_dict(), default=str)


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[OperationEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[OperationEvent]:
        return self

    async def __anext__(self) -> OperationEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for operation events.

    Each subscriber gets its own bounded ``asyncio.Queue``. Publishing never
    blocks: events for a subscriber with a full queue are dropped.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    async def publish(self, event: OperationEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[OperationEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate; only events for which it returns
                ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber.

        Sends a ``None`` sentinel so the subscription's iterator terminates.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning(
                    f"Could not signal end of stream to {subscriber_id}: queue full"
                )
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
