"""
Finalizer manager - Adds and removes deletion guards on resources.

A finalizer keeps a resource in the store after it has been marked for
deletion, until the owner of the finalizer removes it.
"""

import logging

from store import ManagedResource, Store, has_finalizer

logger = logging.getLogger(__name__)

# Finalizer owned by this controller
FINALIZER_RESOURCES = "groupwise.io/resources"


class FinalizerManager:
    """Adds and removes finalizers through the store, skipping no-op writes."""

    def __init__(self, store: Store):
        self.store = store

    async def add_finalizers(self, resource: ManagedResource, *finalizers: str) -> None:
        """
        Add finalizers to a resource.

        Finalizers already present on the fetched resource are skipped; if
        nothing is missing the store is not touched.

        Args:
            resource: The resource as last fetched from the store
            finalizers: Finalizer names to add
        """
        missing = [f for f in finalizers if not has_finalizer(resource, f)]
        if not missing:
            return

        await self.store.add_finalizers(resource.identity, *missing)
        resource.finalizers.extend(missing)
        logger.info(f"Added finalizers {missing} to {resource.identity}")

    async def remove_finalizers(
        self, resource: ManagedResource, *finalizers: str
    ) -> None:
        """
        Remove finalizers from a resource.

        Args:
            resource: The resource as last fetched from the store
            finalizers: Finalizer names to remove
        """
        present = [f for f in finalizers if has_finalizer(resource, f)]
        if not present:
            return

        await self.store.remove_finalizers(resource.identity, *present)
        resource.finalizers = [f for f in resource.finalizers if f not in present]
        logger.info(f"Removed finalizers {present} from {resource.identity}")
