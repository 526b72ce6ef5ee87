"""
Group Event Mapper - Re-queues resources when the group they reference changes.

A change to a resource group does not touch the resources in it, so the
mapper looks up every resource that currently references the group and
queues each one for reconciliation.
"""

import logging
from typing import List

from store import GroupPhase, NamespacedName, Store
from watch import WatchEvent, WatchEventType
from workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class GroupEventMapper:
    """Maps a resource group identity to the resources that reference it."""

    def __init__(self, store: Store):
        self.store = store

    async def map_event(self, group: NamespacedName) -> List[NamespacedName]:
        """
        Return the identities of all resources referencing ``group``.

        Reads the store on every call so that a resource moved out of the
        group stops being mapped. Order is not significant.
        """
        resources = await self.store.list_resources_for_group(group)
        return [r.identity for r in resources]


class EnqueueRequestsForGroupEvents:
    """
    Watch handler for resource group events.

    - create: queue every resource in the group
    - update: queue them when the group became active or its spec changed
    - delete: queue them so they surface the missing group
    """

    def __init__(self, mapper: GroupEventMapper, queue: RateLimitingQueue):
        self.mapper = mapper
        self.queue = queue

    async def __call__(self, event: WatchEvent) -> None:
        if event.event_type == WatchEventType.UPDATED:
            if not self._should_requeue_on_update(event):
                return
        await self.enqueue_resources_for_group(event.identity)

    def _should_requeue_on_update(self, event: WatchEvent) -> bool:
        became_active = (
            event.old.get("phase") != GroupPhase.ACTIVE
            and event.new.get("phase") == GroupPhase.ACTIVE
        )
        spec_changed = event.old.get("generation") != event.new.get("generation")
        return became_active or spec_changed

    async def enqueue_resources_for_group(self, group: NamespacedName) -> int:
        """Queue every resource referencing the group; returns the count."""
        identities = await self.mapper.map_event(group)
        for identity in identities:
            await self.queue.add(identity)

        if identities:
            logger.info(
                f"Queued {len(identities)} resources for changes to group {group}"
            )
        return len(identities)
