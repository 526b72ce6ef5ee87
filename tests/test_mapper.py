"""Unit tests for mapper.py - Group event mapping and enqueueing."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeStore
from mapper import EnqueueRequestsForGroupEvents, GroupEventMapper
from store import GroupPhase, ManagedResource, NamespacedName
from watch import RecordKind, WatchEvent, WatchEventType
from workqueue import RateLimitingQueue


@pytest.fixture
def store(group_identity):
    other = NamespacedName("default", "other-mesh")
    return FakeStore(
        ManagedResource(namespace="default", name="a", group=group_identity),
        ManagedResource(namespace="default", name="b", group=group_identity),
        ManagedResource(namespace="default", name="c", group=other),
    )


def group_event(identity, event_type, old=None, new=None):
    return WatchEvent(
        kind=RecordKind.GROUP,
        event_type=event_type,
        identity=identity,
        old=old or {},
        new=new or {},
    )


@pytest.mark.asyncio
class TestGroupEventMapper:
    """Tests for GroupEventMapper.map_event."""

    async def test_maps_referencing_resources(self, store, group_identity):
        mapper = GroupEventMapper(store)

        identities = await mapper.map_event(group_identity)

        assert set(identities) == {
            NamespacedName("default", "a"),
            NamespacedName("default", "b"),
        }

    async def test_reflects_removed_reference(self, store, group_identity):
        mapper = GroupEventMapper(store)
        assert len(await mapper.map_event(group_identity)) == 2

        moved = store.get(NamespacedName("default", "b"))
        moved.group = None

        identities = await mapper.map_event(group_identity)
        assert set(identities) == {NamespacedName("default", "a")}

    async def test_unreferenced_group_maps_to_nothing(self, store):
        mapper = GroupEventMapper(store)

        assert await mapper.map_event(NamespacedName("default", "unused")) == []

    async def test_store_error_propagates(self, store, group_identity):
        store.errors["list_resources"] = ConnectionError("db down")
        mapper = GroupEventMapper(store)

        with pytest.raises(ConnectionError):
            await mapper.map_event(group_identity)


@pytest.mark.asyncio
class TestEnqueueRequestsForGroupEvents:
    """Tests for the group watch handler."""

    @pytest.fixture
    def queue(self):
        queue = MagicMock(spec=RateLimitingQueue)
        queue.add = AsyncMock()
        return queue

    @pytest.fixture
    def handler(self, store, queue):
        return EnqueueRequestsForGroupEvents(GroupEventMapper(store), queue)

    def queued(self, queue):
        return {c.args[0] for c in queue.add.call_args_list}

    async def test_create_enqueues_all(self, handler, queue, group_identity):
        await handler(group_event(group_identity, WatchEventType.CREATED))

        assert self.queued(queue) == {
            NamespacedName("default", "a"),
            NamespacedName("default", "b"),
        }

    async def test_delete_enqueues_all(self, handler, queue, group_identity):
        await handler(group_event(group_identity, WatchEventType.DELETED))

        assert queue.add.await_count == 2

    async def test_update_became_active(self, handler, queue, group_identity):
        event = group_event(
            group_identity,
            WatchEventType.UPDATED,
            old={"generation": 1, "phase": GroupPhase.PENDING},
            new={"generation": 1, "phase": GroupPhase.ACTIVE},
        )

        await handler(event)

        assert queue.add.await_count == 2

    async def test_update_generation_changed(self, handler, queue, group_identity):
        event = group_event(
            group_identity,
            WatchEventType.UPDATED,
            old={"generation": 1, "phase": GroupPhase.ACTIVE},
            new={"generation": 2, "phase": GroupPhase.ACTIVE},
        )

        await handler(event)

        assert queue.add.await_count == 2

    async def test_update_without_change_ignored(self, handler, queue, group_identity):
        event = group_event(
            group_identity,
            WatchEventType.UPDATED,
            old={"generation": 3, "phase": GroupPhase.ACTIVE},
            new={"generation": 3, "phase": GroupPhase.ACTIVE},
        )

        await handler(event)

        queue.add.assert_not_called()

    async def test_update_became_pending_ignored(self, handler, queue, group_identity):
        event = group_event(
            group_identity,
            WatchEventType.UPDATED,
            old={"generation": 1, "phase": GroupPhase.ACTIVE},
            new={"generation": 1, "phase": GroupPhase.PENDING},
        )

        await handler(event)

        queue.add.assert_not_called()

    async def test_enqueue_returns_count(self, store, group_identity):
        queue = RateLimitingQueue()
        handler = EnqueueRequestsForGroupEvents(GroupEventMapper(store), queue)

        count = await handler.enqueue_resources_for_group(group_identity)

        assert count == 2
        assert len(queue) == 2
