"""
Work Queue - Deduplicating, rate-limited queue of resource identities.

Provides the scheduling guarantees the reconciler relies on:
- an identity waiting in the queue is only queued once;
- an identity being processed is never handed to a second worker; if it is
  added again meanwhile it is re-queued when the first worker calls done();
- failed identities are retried with per-item exponential backoff.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)


class ItemExponentialFailureRateLimiter:
    """
    Per-item exponential backoff with jitter.

    The delay for an item is ``base_delay * 2**failures``, capped at
    ``max_delay``, then scaled by a random factor in ±``jitter_factor``.
    There is no limit on the number of retries.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 1000.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        """Return the delay before the item's next attempt and count a failure."""
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1

        # Exponent is capped so the intermediate value stays small
        delay = min(self.base_delay * (2 ** min(failures, 30)), self.max_delay)
        jitter = 1 + (random.random() * 2 - 1) * self.jitter_factor
        return max(delay * jitter, 0.0)

    def forget(self, item: Hashable) -> None:
        """Reset the failure count for an item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Number of failures recorded for an item."""
        return self._failures.get(item, 0)


class RateLimitingQueue:
    """
    Asyncio work queue with dedup, single-flight processing and backoff.

    Workers loop on ``get()``, process the item, then call ``done()``.
    """

    def __init__(
        self, rate_limiter: Optional[ItemExponentialFailureRateLimiter] = None
    ):
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._cond = asyncio.Condition()
        self._shutting_down = False
        self._waiting: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    async def add(self, item: Hashable) -> None:
        """Queue an item unless it is already waiting."""
        async with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                # Re-queued by done()
                return
            self._queue.append(item)
            self._cond.notify()

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next item and mark it as processing.

        Returns:
            The item, or None once the queue is shut down.
        """
        async with self._cond:
            while not self._queue and not self._shutting_down:
                await self._cond.wait()
            if self._shutting_down:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    async def done(self, item: Hashable) -> None:
        """Mark an item as processed, re-queueing it if it was added meanwhile."""
        async with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    async def add_after(self, item: Hashable, delay: float) -> None:
        """Queue an item once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            await self.add(item)
            return

        task = asyncio.create_task(self._add_after(item, delay))
        self._waiting.add(task)
        task.add_done_callback(self._waiting.discard)

    async def _add_after(self, item: Hashable, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.add(item)

    async def add_rate_limited(self, item: Hashable) -> None:
        """Queue an item after its backoff delay."""
        delay = self.rate_limiter.when(item)
        logger.debug(f"Requeueing {item} in {delay:.2f}s")
        await self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        """Stop tracking backoff for an item."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    async def shutdown(self) -> None:
        """Stop accepting items and wake every waiting worker."""
        async with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

        for task in list(self._waiting):
            task.cancel()
        self._waiting.clear()
