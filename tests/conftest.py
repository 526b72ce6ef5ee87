"""Pytest configuration and fixtures."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from events import EventBus, EventRecorder
from fakes import FakeStore, RecordingEngine
from store import ManagedResource, NamespacedName, ResourceGroup


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def group_identity():
    return NamespacedName("default", "payments-mesh")


@pytest.fixture
def sample_group(group_identity):
    return ResourceGroup(
        namespace=group_identity.namespace,
        name=group_identity.name,
        spec={"egress": "allow-all"},
        generation=1,
        id=1,
    )


@pytest.fixture
def sample_resource(group_identity):
    """A live resource in the sample group that has never been reconciled."""
    return ManagedResource(
        namespace="default",
        name="checkout-node",
        spec={"port": 8080, "protocol": "http"},
        group=group_identity,
        generation=1,
        id=1,
        created_at=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def fake_store(sample_resource):
    return FakeStore(sample_resource)


@pytest.fixture
def engine():
    return RecordingEngine()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)
