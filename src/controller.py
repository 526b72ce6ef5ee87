"""
Operator Controller - Work queue driven reconciliation loop.

Similar to Kubernetes controllers: watch events and periodic resyncs put
resource identities on a rate-limited queue, and a fixed pool of workers
takes identities off the queue and runs the reconciler on them. The queue
guarantees that one identity is never processed by two workers at once.
"""

import asyncio
import logging
from typing import List, Optional

from config import ControllerConfig
from mapper import EnqueueRequestsForGroupEvents
from reconciler import ResourceReconciler
from store import NamespacedName, Store
from watch import WatchEvent, WatchEventType
from workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that drives reconciliation.

    Owns the worker pool and the resync loop. Watch handlers for resource
    and group events are exposed as methods so the application can
    register them with a NotificationWatcher.
    """

    def __init__(
        self,
        reconciler: ResourceReconciler,
        queue: RateLimitingQueue,
        store: Store,
        config: Optional[ControllerConfig] = None,
        group_handler: Optional[EnqueueRequestsForGroupEvents] = None,
    ):
        self.reconciler = reconciler
        self.queue = queue
        self.store = store
        self.config = config or ControllerConfig()
        self.group_handler = group_handler
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the workers and the resync loop; returns once they stop."""
        logger.info(
            f"Starting controller with {self.config.max_concurrent_reconciles} workers"
        )
        self.running = True
        self._shutdown_event.clear()

        # Initial list: resources written while no controller was running
        count = await self.enqueue_all()
        logger.info(f"Queued {count} resources for initial sync")

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass

    async def stop(self):
        """Stop accepting work and wait for in-flight reconciles to end."""
        logger.info("Stopping controller")
        self.running = False
        self._shutdown_event.set()
        await self.queue.shutdown()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while True:
            identity = await self.queue.get()
            if identity is None:
                break
            await self._process(identity)
        logger.debug(f"Worker {worker_id} stopped")

    async def _process(self, identity: NamespacedName) -> None:
        """
        Reconcile one identity and decide whether it goes back on the queue.

        - error: requeue with per-item exponential backoff
        - requeue_after: requeue after the given delay
        - requeue: requeue with backoff
        - success: reset the item's backoff
        """
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(identity),
                timeout=self.config.reconcile_timeout,
            )
        except Exception as e:
            attempts = self.queue.num_requeues(identity) + 1
            logger.error(
                f"Error reconciling {identity} (attempt {attempts}): {e}",
                exc_info=True,
            )
            await self.queue.add_rate_limited(identity)
        else:
            if result.requeue_after is not None:
                self.queue.forget(identity)
                await self.queue.add_after(identity, result.requeue_after)
            elif result.requeue:
                await self.queue.add_rate_limited(identity)
            else:
                self.queue.forget(identity)
        finally:
            await self.queue.done(identity)

    async def _resync_loop(self) -> None:
        """Periodically queue every resource so missed events are recovered."""
        interval = self.config.resync_interval
        if interval <= 0:
            return

        while self.running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                count = await self.enqueue_all()
                logger.debug(f"Resync queued {count} resources")
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

    async def enqueue_all(self) -> int:
        """Queue every resource in the store; returns the count."""
        resources = await self.store.list_resources()
        for resource in resources:
            await self.queue.add(resource.identity)
        return len(resources)

    async def handle_resource_event(self, event: WatchEvent) -> None:
        """
        Watch handler for resource events.

        Updates that only touch finalizers or status are skipped; everything
        else queues the resource.
        """
        if event.event_type == WatchEventType.UPDATED:
            changed = any(
                event.old.get(key) != event.new.get(key)
                for key in ("generation", "deleting")
            )
            if not changed:
                return
        await self.queue.add(event.identity)

    async def handle_group_event(self, event: WatchEvent) -> None:
        """Watch handler for resource group events."""
        if self.group_handler is not None:
            await self.group_handler(event)

    async def trigger_reconciliation(self, identity: NamespacedName):
        """Manually queue a resource for reconciliation."""
        logger.info(f"Manually triggering reconciliation for {identity}")
        await self.queue.add(identity)
