"""
Change Watcher - PostgreSQL LISTEN/NOTIFY feed of record changes.

Triggers installed by the migrations publish a small JSON payload on every
insert, update and delete of resources and resource groups. The watcher
turns those payloads into WatchEvents and hands them to the handler
registered for the record kind.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Set

from store import NamespacedName

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "groupwise_events"


class WatchEventType:
    """Operations reported by the change triggers."""

    CREATED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"
    # Explicit reconcile request, not a data change
    RECONCILE = "RECONCILE"


class RecordKind:
    """Record kinds published on the notification channel."""

    RESOURCE = "resource"
    GROUP = "group"


@dataclass
class WatchEvent:
    """A change to a single record."""

    kind: str
    event_type: str
    identity: NamespacedName
    old: Dict[str, Any] = field(default_factory=dict)
    new: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: str) -> "WatchEvent":
        """
        Parse a notification payload.

        Raises:
            ValueError: If the payload is not valid JSON or lacks required keys
        """
        try:
            data = json.loads(payload)
            return cls(
                kind=data["kind"],
                event_type=data["op"],
                identity=NamespacedName(data["namespace"], data["name"]),
                old=data.get("old") or {},
                new=data.get("new") or {},
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid notification payload: {e}") from e


WatchHandler = Callable[[WatchEvent], Awaitable[None]]


class NotificationWatcher:
    """
    Dispatches record-change notifications to per-kind handlers.

    Holds one dedicated pool connection for LISTEN while running.
    """

    def __init__(self, pool: Any, channel: str = DEFAULT_CHANNEL):
        self.pool = pool
        self.channel = channel
        self._handlers: Dict[str, List[WatchHandler]] = {}
        self._stop_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def add_handler(self, kind: str, handler: WatchHandler) -> None:
        """Register a handler for events on a record kind."""
        self._handlers.setdefault(kind, []).append(handler)

    async def dispatch(self, event: WatchEvent) -> None:
        """Deliver an event to every handler registered for its kind."""
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug(f"No handler for {event.kind} event on {event.identity}")
            return

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"Watch handler failed for {event.kind} {event.identity}: {e}",
                    exc_info=True,
                )

    def _on_notification(
        self, connection: Any, pid: int, channel: str, payload: str
    ) -> None:
        """asyncpg listener callback; runs on the event loop."""
        try:
            event = WatchEvent.from_payload(payload)
        except ValueError as e:
            logger.warning(f"Dropping notification on {channel}: {e}")
            return

        task = asyncio.create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start(self) -> None:
        """Listen until stop() is called."""
        self._stop_event.clear()
        async with self.pool.acquire() as conn:
            await conn.add_listener(self.channel, self._on_notification)
            logger.info(f"Listening for changes on channel '{self.channel}'")
            try:
                await self._stop_event.wait()
            finally:
                await conn.remove_listener(self.channel, self._on_notification)
                logger.info(f"Stopped listening on channel '{self.channel}'")

    async def stop(self) -> None:
        """Stop listening and wait for in-flight dispatches."""
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
