"""Unit tests for controller.py - Work queue driven controller."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import ControllerConfig
from controller import Controller
from events import EventRecorder
from finalizers import FINALIZER_RESOURCES, FinalizerManager
from mapper import EnqueueRequestsForGroupEvents, GroupEventMapper
from plugins.base import EngineError
from plugins.engines.github_actions import GitHubActionsEngine
from reconciler import ReconcileResult, ResourceReconciler
from store import ManagedResource, NamespacedName
from watch import RecordKind, WatchEvent, WatchEventType
from workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

IDENTITY = NamespacedName("default", "checkout-node")


def resource_event(event_type, old=None, new=None):
    return WatchEvent(
        kind=RecordKind.RESOURCE,
        event_type=event_type,
        identity=IDENTITY,
        old=old or {},
        new=new or {},
    )


@pytest.fixture
def mock_queue():
    queue = MagicMock(spec=RateLimitingQueue)
    queue.add = AsyncMock()
    queue.done = AsyncMock()
    queue.add_after = AsyncMock()
    queue.add_rate_limited = AsyncMock()
    queue.shutdown = AsyncMock()
    queue.num_requeues.return_value = 0
    return queue


@pytest.fixture
def mock_reconciler():
    reconciler = MagicMock(spec=ResourceReconciler)
    reconciler.reconcile = AsyncMock(return_value=ReconcileResult())
    return reconciler


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.list_resources = AsyncMock(return_value=[])
    return store


@pytest.fixture
def controller(mock_reconciler, mock_queue, mock_store):
    return Controller(mock_reconciler, mock_queue, mock_store, ControllerConfig())


class TestControllerInit:
    def test_init(self, controller, mock_reconciler, mock_queue, mock_store):
        assert controller.reconciler is mock_reconciler
        assert controller.queue is mock_queue
        assert controller.store is mock_store
        assert controller.group_handler is None
        assert controller.running is False

    def test_default_config(self, mock_reconciler, mock_queue, mock_store):
        controller = Controller(mock_reconciler, mock_queue, mock_store)
        assert controller.config.max_concurrent_reconciles == 3


@pytest.mark.asyncio
class TestProcess:
    """Tests for Controller._process."""

    async def test_success_forgets_backoff(self, controller, mock_queue):
        await controller._process(IDENTITY)

        mock_queue.forget.assert_called_once_with(IDENTITY)
        mock_queue.add_rate_limited.assert_not_called()
        mock_queue.done.assert_awaited_once_with(IDENTITY)

    async def test_error_requeues_with_backoff(
        self, controller, mock_reconciler, mock_queue
    ):
        mock_reconciler.reconcile.side_effect = EngineError("boom")

        await controller._process(IDENTITY)

        mock_queue.add_rate_limited.assert_awaited_once_with(IDENTITY)
        mock_queue.forget.assert_not_called()
        mock_queue.done.assert_awaited_once_with(IDENTITY)

    async def test_requeue_after(self, controller, mock_reconciler, mock_queue):
        mock_reconciler.reconcile.return_value = ReconcileResult(requeue_after=30.0)

        await controller._process(IDENTITY)

        mock_queue.add_after.assert_awaited_once_with(IDENTITY, 30.0)
        mock_queue.add_rate_limited.assert_not_called()
        mock_queue.done.assert_awaited_once_with(IDENTITY)

    async def test_requeue(self, controller, mock_reconciler, mock_queue):
        mock_reconciler.reconcile.return_value = ReconcileResult(requeue=True)

        await controller._process(IDENTITY)

        mock_queue.add_rate_limited.assert_awaited_once_with(IDENTITY)
        mock_queue.done.assert_awaited_once_with(IDENTITY)

    async def test_timeout_is_retried(self, mock_reconciler, mock_queue, mock_store):
        async def hang(identity):
            await asyncio.sleep(10)

        mock_reconciler.reconcile.side_effect = hang
        controller = Controller(
            mock_reconciler,
            mock_queue,
            mock_store,
            ControllerConfig(reconcile_timeout=0.01),
        )

        await controller._process(IDENTITY)

        mock_queue.add_rate_limited.assert_awaited_once_with(IDENTITY)
        mock_queue.done.assert_awaited_once_with(IDENTITY)


@pytest.mark.asyncio
class TestEventHandlers:
    """Tests for the watch handlers."""

    @pytest.mark.parametrize(
        "event_type",
        [WatchEventType.CREATED, WatchEventType.DELETED, WatchEventType.RECONCILE],
    )
    async def test_enqueues(self, controller, mock_queue, event_type):
        await controller.handle_resource_event(resource_event(event_type))

        mock_queue.add.assert_awaited_once_with(IDENTITY)

    async def test_update_generation_change_enqueues(self, controller, mock_queue):
        event = resource_event(
            WatchEventType.UPDATED,
            old={"generation": 1, "deleting": False},
            new={"generation": 2, "deleting": False},
        )

        await controller.handle_resource_event(event)

        mock_queue.add.assert_awaited_once_with(IDENTITY)

    async def test_update_deletion_marker_enqueues(self, controller, mock_queue):
        event = resource_event(
            WatchEventType.UPDATED,
            old={"generation": 1, "deleting": False},
            new={"generation": 1, "deleting": True},
        )

        await controller.handle_resource_event(event)

        mock_queue.add.assert_awaited_once_with(IDENTITY)

    async def test_finalizer_only_update_skipped(self, controller, mock_queue):
        event = resource_event(
            WatchEventType.UPDATED,
            old={"generation": 1, "deleting": False},
            new={"generation": 1, "deleting": False},
        )

        await controller.handle_resource_event(event)

        mock_queue.add.assert_not_called()

    async def test_group_event_delegates(
        self, mock_reconciler, mock_queue, mock_store
    ):
        handler = AsyncMock()
        controller = Controller(
            mock_reconciler, mock_queue, mock_store, group_handler=handler
        )
        event = WatchEvent(RecordKind.GROUP, WatchEventType.CREATED, IDENTITY)

        await controller.handle_group_event(event)

        handler.assert_awaited_once_with(event)

    async def test_group_event_without_handler(self, controller, mock_queue):
        event = WatchEvent(RecordKind.GROUP, WatchEventType.CREATED, IDENTITY)

        await controller.handle_group_event(event)

        mock_queue.add.assert_not_called()

    async def test_trigger_reconciliation(self, controller, mock_queue):
        await controller.trigger_reconciliation(IDENTITY)

        mock_queue.add.assert_awaited_once_with(IDENTITY)


@pytest.mark.asyncio
class TestResync:
    """Tests for the initial sync and resync loop."""

    async def test_enqueue_all(self, controller, mock_store, mock_queue):
        mock_store.list_resources.return_value = [
            ManagedResource(namespace="default", name="a"),
            ManagedResource(namespace="prod", name="b"),
        ]

        count = await controller.enqueue_all()

        assert count == 2
        queued = [c.args[0] for c in mock_queue.add.call_args_list]
        assert queued == [NamespacedName("default", "a"), NamespacedName("prod", "b")]

    async def test_resync_disabled(self, mock_reconciler, mock_queue, mock_store):
        controller = Controller(
            mock_reconciler, mock_queue, mock_store, ControllerConfig(resync_interval=0)
        )
        controller.running = True

        await asyncio.wait_for(controller._resync_loop(), timeout=1)

        mock_store.list_resources.assert_not_called()

    async def test_resync_stops_on_shutdown(
        self, mock_reconciler, mock_queue, mock_store
    ):
        controller = Controller(
            mock_reconciler,
            mock_queue,
            mock_store,
            ControllerConfig(resync_interval=3600),
        )
        controller.running = True
        task = asyncio.create_task(controller._resync_loop())
        await asyncio.sleep(0)

        controller._shutdown_event.set()

        await asyncio.wait_for(task, timeout=1)
        mock_store.list_resources.assert_not_called()

    async def test_resync_error_does_not_stop_loop(
        self, mock_reconciler, mock_queue, mock_store
    ):
        controller = Controller(
            mock_reconciler,
            mock_queue,
            mock_store,
            ControllerConfig(resync_interval=0.01),
        )
        mock_store.list_resources.side_effect = [ConnectionError("db down"), []]
        controller.running = True
        task = asyncio.create_task(controller._resync_loop())

        for _ in range(100):
            if mock_store.list_resources.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        controller._shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert mock_store.list_resources.await_count >= 2


@pytest.mark.asyncio
class TestControllerLifecycle:
    """Start/stop with a real queue, reconciler and in-memory store."""

    async def wait_for(self, predicate, timeout=2.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    async def test_initial_sync_reconciles_existing_resources(
        self, fake_store, engine, sample_resource
    ):
        queue = RateLimitingQueue()
        reconciler = ResourceReconciler(
            fake_store,
            FinalizerManager(fake_store),
            engine,
            EventRecorder(),
        )
        controller = Controller(reconciler, queue, fake_store, ControllerConfig())

        task = asyncio.create_task(controller.start())
        await self.wait_for(lambda: engine.count("converge") == 1)
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

        stored = fake_store.get(sample_resource.identity)
        assert stored.finalizers == [FINALIZER_RESOURCES]
        assert controller.running is False

    async def test_failed_reconcile_is_retried(self, fake_store, engine):
        engine.converge_error = EngineError("first attempt fails")
        queue = RateLimitingQueue(
            ItemExponentialFailureRateLimiter(base_delay=0.01, jitter_factor=0.0)
        )
        reconciler = ResourceReconciler(
            fake_store, FinalizerManager(fake_store), engine, EventRecorder()
        )
        controller = Controller(reconciler, queue, fake_store, ControllerConfig())

        task = asyncio.create_task(controller.start())
        await self.wait_for(lambda: engine.count("converge") == 1)
        engine.converge_error = None
        await self.wait_for(lambda: engine.count("converge") == 2)
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

    async def test_worker_pool_bounds_concurrency(self, mock_store):
        in_flight = 0
        peak = 0
        seen = []

        async def slow_reconcile(identity):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            seen.append(identity)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return ReconcileResult()

        reconciler = MagicMock(spec=ResourceReconciler)
        reconciler.reconcile = AsyncMock(side_effect=slow_reconcile)
        queue = RateLimitingQueue()
        controller = Controller(
            reconciler,
            queue,
            mock_store,
            ControllerConfig(max_concurrent_reconciles=3),
        )

        task = asyncio.create_task(controller.start())
        for i in range(8):
            await queue.add(NamespacedName("default", f"r{i}"))
        await self.wait_for(lambda: len(seen) == 8)
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

        assert peak == 3

    async def test_single_flight_per_identity(self, mock_store):
        in_flight = 0
        overlapped = False
        calls = 0

        async def slow_reconcile(identity):
            nonlocal in_flight, overlapped, calls
            calls += 1
            in_flight += 1
            if in_flight > 1:
                overlapped = True
            await asyncio.sleep(0.02)
            in_flight -= 1
            return ReconcileResult()

        reconciler = MagicMock(spec=ResourceReconciler)
        reconciler.reconcile = AsyncMock(side_effect=slow_reconcile)
        queue = RateLimitingQueue()
        controller = Controller(reconciler, queue, mock_store, ControllerConfig())

        task = asyncio.create_task(controller.start())
        await queue.add(IDENTITY)
        await self.wait_for(lambda: calls == 1)
        # Added again while in flight: processed once more, afterwards
        await queue.add(IDENTITY)
        await queue.add(IDENTITY)
        await self.wait_for(lambda: calls == 2)
        await asyncio.sleep(0.05)
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

        assert calls == 2
        assert overlapped is False

    async def test_group_change_dispatches_converge_for_members(
        self, fake_store, sample_resource, group_identity
    ):
        engine = GitHubActionsEngine()
        await engine.initialize({"owner": "acme", "repo": "infra", "workflow": "w"})
        queue = RateLimitingQueue()
        reconciler = ResourceReconciler(
            fake_store, FinalizerManager(fake_store), engine, EventRecorder()
        )
        controller = Controller(
            reconciler,
            queue,
            fake_store,
            ControllerConfig(resync_interval=0),
            group_handler=EnqueueRequestsForGroupEvents(
                GroupEventMapper(fake_store), queue
            ),
        )

        with patch.object(
            engine, "_trigger_workflow", new_callable=AsyncMock, return_value=101
        ) as trigger, patch.object(
            engine,
            "_wait_for_completion",
            new_callable=AsyncMock,
            return_value={"status": "completed", "conclusion": "success"},
        ):
            task = asyncio.create_task(controller.start())
            await self.wait_for(lambda: trigger.await_count == 1)

            # Only the group's generation moves; the resource is unchanged
            await controller.handle_group_event(
                WatchEvent(
                    kind=RecordKind.GROUP,
                    event_type=WatchEventType.UPDATED,
                    identity=group_identity,
                    old={"phase": "active", "generation": 1},
                    new={"phase": "active", "generation": 2},
                )
            )
            await self.wait_for(lambda: trigger.await_count == 2)
            await controller.stop()
            await asyncio.wait_for(task, timeout=1)

        inputs = trigger.call_args[0][0]
        assert inputs["operation"] == "converge"
        assert inputs["resource"] == str(sample_resource.identity)
        assert inputs["generation"] == str(sample_resource.generation)
