"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from events import EventRecorder
from reconcilers.base import ReconcileContext, Services
from resources import ResourceRef
from store import InMemoryStore
from tracker import DependencyTracker

PARENT_API_VERSION = "example.com/v1"
PARENT_KIND = "Widget"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_parent(
    name="my-widget",
    namespace="default",
    spec=None,
    finalizers=None,
    deleting=False,
    status=None,
):
    """Build a Widget parent object."""
    metadata = {"name": name, "namespace": namespace}
    if finalizers:
        metadata["finalizers"] = list(finalizers)
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-15T10:30:00Z"
    obj = {
        "apiVersion": PARENT_API_VERSION,
        "kind": PARENT_KIND,
        "metadata": metadata,
        "spec": spec if spec is not None else {"size": 3},
    }
    if status is not None:
        obj["status"] = status
    return obj


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory store with no objects."""
    return InMemoryStore()


@pytest.fixture
def recorder():
    return EventRecorder(component="test-controller")


@pytest.fixture
def tracker(clock):
    return DependencyTracker(ttl=100.0, sweep_interval=10.0, shards=4, clock=clock)


@pytest.fixture
def services(store, recorder, tracker):
    return Services(store=store, recorder=recorder, tracker=tracker)


@pytest.fixture
def parent(store):
    """A Widget seeded into the store."""
    return store.add(make_parent())


@pytest.fixture
def ctx(services, parent):
    """Context for reconciling the seeded parent."""
    return ReconcileContext(services, parent_ref=ResourceRef.from_object(parent))


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
