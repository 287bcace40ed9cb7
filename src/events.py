"""
Event Streaming - In-memory pub/sub for plan entry transitions.

The executor publishes an event every time an entry changes state so that
callers (the CLI progress output, tests) can follow a run as it happens.
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
    """Entry transitions."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RETRYING = "RETRYING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class EntryEvent:
    """Event emitted when a plan entry changes state."""

    event_type: EventType
    run_id: str
    key: str
    address: str
    action: str
    attempt: int = 0
    message: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "key": self.key,
            "address": self.address,
            "action": self.action,
            "attempt": self.attempt,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Format the event as a single JSON line."""
        return json.dumps(self.to_dict())


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["EntryEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["EntryEvent"]:
        return self

    async def __anext__(self) -> "EntryEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for entry events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues drop events so a slow subscriber never
    stalls the executor.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: EntryEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.
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
        filter_fn: Optional[Callable[[EntryEvent], bool]] = None,
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
        """
        Remove a subscriber.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates once queued events are consumed. If the queue
        is full the oldest event is dropped to make room for it.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            if queue.full():
                queue.get_nowait()
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id} to end its stream"
                )
            queue.put_nowait(None)
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
