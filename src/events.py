"""
Diagnostic Events - Operator-visible events attached to resources.

The EventRecorder logs each event and fans it out to an in-memory pub/sub
bus, which the HTTP input plugin streams as Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from store import ManagedResource

logger = logging.getLogger(__name__)


class EventSeverity(Enum):
    """Severity of a diagnostic event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class DiagnosticEvent:
    """Event emitted against a resource."""

    severity: EventSeverity
    reason: str
    message: str
    namespace: str
    name: str
    generation: int
    source: str
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "severity": self.severity.value,
            "reason": self.reason,
            "message": self.message,
            "namespace": self.namespace,
            "name": self.name,
            "generation": self.generation,
            "source": self.source,
            "timestamp": self.timestamp,
        }
        return f"event: {self.severity.value}\ndata: {json.dumps(data)}\n\n"

    @classmethod
    def from_resource(
        cls,
        resource: ManagedResource,
        severity: EventSeverity,
        reason: str,
        message: str,
        source: str,
    ) -> "DiagnosticEvent":
        """Create an event attached to a resource."""
        return cls(
            severity=severity,
            reason=reason,
            message=message,
            namespace=resource.namespace,
            name=resource.name,
            generation=resource.generation,
            source=source,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
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
        filter_fn: Optional[Callable[["DiagnosticEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["DiagnosticEvent"]:
        return self

    async def __anext__(self) -> "DiagnosticEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub bus for diagnostic events.

    Maintains an ``asyncio.Queue`` per subscriber. Publishing never blocks:
    full queues cause events to be dropped for that subscriber.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish(self, event: DiagnosticEvent) -> None:
        """
        Publish an event to all subscribers.

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

    def subscribe(
        self,
        filter_fn: Optional[Callable[[DiagnosticEvent], bool]] = None,
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
        self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully. A full queue loses its oldest
        event to make room for the sentinel.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventRecorder:
    """Fire-and-forget sink for diagnostic events."""

    def __init__(
        self, event_bus: Optional[EventBus] = None, source: str = "groupwise-controller"
    ):
        self._event_bus = event_bus
        self.source = source

    def event(
        self,
        resource: ManagedResource,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        """
        Record an event against a resource.

        Never raises and never blocks; has no effect on control flow.
        """
        level = logging.WARNING if severity == EventSeverity.WARNING else logging.INFO
        logger.log(
            level,
            f"{severity.value} {reason} on {resource.identity}: {message}",
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                DiagnosticEvent.from_resource(
                    resource, severity, reason, message, self.source
                )
            )
