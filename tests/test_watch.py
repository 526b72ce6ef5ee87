"""Unit tests for watch.py - Change notification watcher."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from store import NamespacedName
from watch import (
    DEFAULT_CHANNEL,
    NotificationWatcher,
    RecordKind,
    WatchEvent,
    WatchEventType,
)


def payload(**overrides):
    data = {
        "kind": "resource",
        "op": "UPDATE",
        "namespace": "default",
        "name": "checkout-node",
        "old": {"generation": 1, "deleting": False},
        "new": {"generation": 2, "deleting": False},
    }
    data.update(overrides)
    return json.dumps(data)


class TestWatchEvent:
    """Tests for WatchEvent.from_payload."""

    def test_from_payload(self):
        event = WatchEvent.from_payload(payload())

        assert event.kind == RecordKind.RESOURCE
        assert event.event_type == WatchEventType.UPDATED
        assert event.identity == NamespacedName("default", "checkout-node")
        assert event.old == {"generation": 1, "deleting": False}
        assert event.new == {"generation": 2, "deleting": False}

    def test_from_payload_null_images(self):
        event = WatchEvent.from_payload(payload(op="INSERT", old=None))

        assert event.event_type == WatchEventType.CREATED
        assert event.old == {}

    def test_from_payload_reconcile_request(self):
        raw = json.dumps(
            {"kind": "resource", "op": "RECONCILE", "namespace": "a", "name": "b"}
        )

        event = WatchEvent.from_payload(raw)

        assert event.event_type == WatchEventType.RECONCILE
        assert event.old == {} and event.new == {}

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps({"kind": "resource", "op": "UPDATE", "namespace": "a"}),
            json.dumps(["resource"]),
        ],
    )
    def test_from_payload_invalid(self, raw):
        with pytest.raises(ValueError, match="Invalid notification payload"):
            WatchEvent.from_payload(raw)


@pytest.mark.asyncio
class TestDispatch:
    """Tests for handler dispatch."""

    @pytest.fixture
    def watcher(self):
        return NotificationWatcher(MagicMock())

    async def test_dispatch_by_kind(self, watcher):
        resource_handler = AsyncMock()
        group_handler = AsyncMock()
        watcher.add_handler(RecordKind.RESOURCE, resource_handler)
        watcher.add_handler(RecordKind.GROUP, group_handler)
        event = WatchEvent.from_payload(payload())

        await watcher.dispatch(event)

        resource_handler.assert_awaited_once_with(event)
        group_handler.assert_not_called()

    async def test_dispatch_without_handler(self, watcher):
        await watcher.dispatch(WatchEvent.from_payload(payload(kind="group")))

    async def test_handler_error_is_logged_and_others_still_run(
        self, watcher, caplog
    ):
        failing = AsyncMock(side_effect=RuntimeError("handler broke"))
        second = AsyncMock()
        watcher.add_handler(RecordKind.RESOURCE, failing)
        watcher.add_handler(RecordKind.RESOURCE, second)

        with caplog.at_level(logging.ERROR, logger="watch"):
            await watcher.dispatch(WatchEvent.from_payload(payload()))

        second.assert_awaited_once()
        assert "handler broke" in caplog.text

    async def test_on_notification_schedules_dispatch(self, watcher):
        handler = AsyncMock()
        watcher.add_handler(RecordKind.RESOURCE, handler)

        watcher._on_notification(None, 42, DEFAULT_CHANNEL, payload())
        await watcher.stop()

        handler.assert_awaited_once()
        assert handler.call_args[0][0].identity.name == "checkout-node"

    async def test_on_notification_drops_bad_payload(self, watcher, caplog):
        handler = AsyncMock()
        watcher.add_handler(RecordKind.RESOURCE, handler)

        with caplog.at_level(logging.WARNING, logger="watch"):
            watcher._on_notification(None, 42, DEFAULT_CHANNEL, "{broken")
        await watcher.stop()

        handler.assert_not_called()
        assert "Dropping notification" in caplog.text


@pytest.mark.asyncio
class TestListen:
    """Tests for the LISTEN lifecycle."""

    async def test_start_listens_until_stopped(self):
        conn = AsyncMock()
        pool = MagicMock()

        @asynccontextmanager
        async def mock_acquire():
            yield conn

        pool.acquire = mock_acquire
        watcher = NotificationWatcher(pool, channel="test_channel")

        task = asyncio.create_task(watcher.start())
        await asyncio.sleep(0)
        conn.add_listener.assert_awaited_once_with(
            "test_channel", watcher._on_notification
        )
        assert not task.done()

        await watcher.stop()
        await asyncio.wait_for(task, timeout=1.0)

        conn.remove_listener.assert_awaited_once_with(
            "test_channel", watcher._on_notification
        )
