"""
Resource Reconciler - Lifecycle decision procedure for a single resource.

Fetches the current record and either converges it (adding this
controller's finalizer first) or tears it down (removing the finalizer
only after teardown succeeds).
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from events import EventRecorder, EventSeverity
from finalizers import FINALIZER_RESOURCES, FinalizerManager
from plugins.base import RequeueNeeded, RequeueNeededAfter
from plugins.engines.base import ConvergenceEngine
from store import (
    ManagedResource,
    NamespacedName,
    RecordNotFoundError,
    Store,
    has_finalizer,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a successful reconcile() call."""

    requeue: bool = False
    requeue_after: Optional[float] = None


def handle_reconcile_error(err: Optional[Exception]) -> ReconcileResult:
    """
    Convert the outcome of a reconcile pass into a ReconcileResult.

    Requeue signals become results; any other error is re-raised unchanged.
    """
    if err is None:
        return ReconcileResult()
    if isinstance(err, RequeueNeededAfter):
        logger.info(f"requeue after {err.duration}s due to: {err.message}")
        return ReconcileResult(requeue_after=err.duration)
    if isinstance(err, RequeueNeeded):
        logger.info(f"requeue due to: {err.message}")
        return ReconcileResult(requeue=True)
    raise err


class ResourceReconciler:
    """
    Reconciles one resource identity per call.

    Holds no state between calls: every invocation re-fetches the record.
    Callers must not run two reconciles for the same identity concurrently.
    """

    def __init__(
        self,
        store: Store,
        finalizer_manager: FinalizerManager,
        engine: ConvergenceEngine,
        recorder: EventRecorder,
        finalizer: str = FINALIZER_RESOURCES,
    ):
        self.store = store
        self.finalizer_manager = finalizer_manager
        self.engine = engine
        self.recorder = recorder
        self.finalizer = finalizer

    async def reconcile(self, identity: NamespacedName) -> ReconcileResult:
        """
        Run one pass of the decision procedure.

        Args:
            identity: The resource to reconcile

        Returns:
            ReconcileResult; a plain result means success.

        Raises:
            Exception: Any store or engine error; the caller requeues.
        """
        try:
            await self._reconcile(identity)
        except RequeueNeeded as e:
            return handle_reconcile_error(e)
        return ReconcileResult()

    async def _reconcile(self, identity: NamespacedName) -> None:
        try:
            resource = await self.store.get_resource(identity)
        except RecordNotFoundError:
            logger.debug(f"Resource {identity} not found, nothing to do")
            return

        if resource.is_being_deleted:
            await self._run(resource, self._cleanup_resource, "CleanupError")
        else:
            await self._run(resource, self._reconcile_resource, "ReconcileError")

    async def _run(
        self,
        resource: ManagedResource,
        step: Callable[[ManagedResource], Awaitable[None]],
        reason: str,
    ) -> None:
        try:
            await step(resource)
        except RequeueNeeded:
            raise
        except Exception as e:
            self.recorder.event(resource, EventSeverity.WARNING, reason, str(e))
            raise

    async def _reconcile_resource(self, resource: ManagedResource) -> None:
        await self.finalizer_manager.add_finalizers(resource, self.finalizer)
        await self.engine.converge(resource)
        logger.info(f"Converged {resource.identity}")

    async def _cleanup_resource(self, resource: ManagedResource) -> None:
        if not has_finalizer(resource, self.finalizer):
            return
        await self.engine.teardown(resource)
        await self.finalizer_manager.remove_finalizers(resource, self.finalizer)
        logger.info(f"Tore down {resource.identity}")
