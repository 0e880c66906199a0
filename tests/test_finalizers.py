"""Unit tests for finalizers functionality."""

import pytest

from conftest import make_parent
from errors import (
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from events import EventType
from reconcilers import (
    CastParent,
    ReconcileContext,
    ReconcileNode,
    ReconcileResult,
    WithFinalizer,
    add_finalizer,
    clear_finalizer,
)
from resources import ResourceRef, freeze

FINALIZER = "widgets.example.com/cleanup"


class CleanupNode(ReconcileNode):
    """Node that records the finalizers it saw and optionally fails."""

    name = "Cleanup"

    def __init__(self, error=None, result=None):
        self.error = error
        self.result = result or ReconcileResult()
        self.calls = []

    async def reconcile(self, ctx, parent):
        self.calls.append(list(parent["metadata"].get("finalizers") or []))
        if self.error is not None:
            raise self.error
        return self.result


def seed(store, services, **kwargs):
    parent = store.add(make_parent(**kwargs))
    ctx = ReconcileContext(services, parent_ref=ResourceRef.from_object(parent))
    return ctx, parent


@pytest.mark.asyncio
class TestFinalizerPatches:
    """Tests for add_finalizer and clear_finalizer."""

    async def test_add_finalizer(self, store, services, recorder):
        ctx, parent = seed(store, services)
        version = parent["metadata"]["resourceVersion"]

        await add_finalizer(ctx, parent, FINALIZER)

        action = store.actions_for("patch")[0]
        assert action.payload == {
            "metadata": {"finalizers": [FINALIZER], "resourceVersion": version}
        }
        assert parent["metadata"]["finalizers"] == [FINALIZER]
        assert parent["metadata"]["resourceVersion"] != version

        stored = await store.get(ctx.parent_ref)
        assert stored["metadata"]["finalizers"] == [FINALIZER]
        assert stored["metadata"]["resourceVersion"] == parent["metadata"]["resourceVersion"]
        assert recorder.events_for("FinalizerPatched")[0].event_type == EventType.NORMAL

    async def test_add_existing_finalizer_is_noop(self, store, services):
        ctx, parent = seed(store, services, finalizers=[FINALIZER])
        await add_finalizer(ctx, parent, FINALIZER)
        assert store.actions_for("patch") == []

    async def test_clear_keeps_other_finalizers(self, store, services):
        ctx, parent = seed(store, services, finalizers=["other", FINALIZER])

        await clear_finalizer(ctx, parent, FINALIZER)

        stored = await store.get(ctx.parent_ref)
        assert stored["metadata"]["finalizers"] == ["other"]

    async def test_clear_missing_finalizer_is_noop(self, store, services):
        ctx, parent = seed(store, services, finalizers=["other"])
        await clear_finalizer(ctx, parent, FINALIZER)
        assert store.actions_for("patch") == []

    async def test_stale_parent_conflicts(self, store, services, recorder):
        ctx, parent = seed(store, services)
        # someone else changes the parent after it was read
        await store.patch(ctx.parent_ref, b'{"metadata": {"labels": {"a": "b"}}}', None)

        with pytest.raises(ConflictError):
            await add_finalizer(ctx, parent, FINALIZER)

        assert "finalizers" not in parent["metadata"]
        stored = await store.get(ctx.parent_ref)
        assert "finalizers" not in stored["metadata"]
        warning = recorder.events_for("FinalizerPatchFailed")[0]
        assert warning.event_type == EventType.WARNING

    async def test_clearing_last_finalizer_releases_parent(self, store, services):
        ctx, parent = seed(store, services, finalizers=[FINALIZER], deleting=True)

        await clear_finalizer(ctx, parent, FINALIZER)

        assert parent["metadata"]["finalizers"] == []
        with pytest.raises(NotFoundError):
            await store.get(ctx.parent_ref)


def test_with_finalizer_requires_name():
    with pytest.raises(ValueError):
        WithFinalizer("", CleanupNode())


@pytest.mark.asyncio
class TestWithFinalizer:
    """Tests for the WithFinalizer node."""

    async def test_active_parent_adds_finalizer_first(self, store, services):
        ctx, parent = seed(store, services)
        inner = CleanupNode(result=ReconcileResult.after(30))

        result = await WithFinalizer(FINALIZER, inner).reconcile(ctx, parent)

        assert inner.calls == [[FINALIZER]]
        assert result.requeue_after == 30

    async def test_patch_failure_skips_nested_node(self, store, services):
        ctx, parent = seed(store, services)
        store.fail("patch", TransientStoreError("connection reset"))
        inner = CleanupNode()

        with pytest.raises(TransientStoreError):
            await WithFinalizer(FINALIZER, inner).reconcile(ctx, parent)
        assert inner.calls == []

    async def test_terminating_parent_cleans_up_then_clears(self, store, services):
        ctx, parent = seed(store, services, finalizers=[FINALIZER], deleting=True)
        inner = CleanupNode()

        await WithFinalizer(FINALIZER, inner).reconcile(ctx, parent)

        assert inner.calls == [[FINALIZER]]
        with pytest.raises(NotFoundError):
            await store.get(ctx.parent_ref)

    async def test_failed_cleanup_keeps_finalizer(self, store, services):
        ctx, parent = seed(store, services, finalizers=[FINALIZER], deleting=True)
        inner = CleanupNode(error=TransientStoreError("api unavailable"))

        with pytest.raises(TransientStoreError):
            await WithFinalizer(FINALIZER, inner).reconcile(ctx, parent)

        stored = await store.get(ctx.parent_ref)
        assert stored["metadata"]["finalizers"] == [FINALIZER]
        assert store.actions_for("patch") == []

    async def test_terminating_without_finalizer_skips(self, store, services):
        ctx, parent = seed(store, services, finalizers=["other"], deleting=True)
        inner = CleanupNode()

        result = await WithFinalizer(FINALIZER, inner).reconcile(ctx, parent)

        assert result.is_empty
        assert inner.calls == []
        assert store.actions == []

    async def test_read_only_projection_rejected_before_patch(self, store, services):
        ctx, parent = seed(store, services)
        inner = CleanupNode()
        node = CastParent(lambda p: p, WithFinalizer(FINALIZER, inner))

        with pytest.raises(ValidationError):
            await node.reconcile(ctx, parent)

        assert inner.calls == []
        assert store.actions == []
        stored = await store.get(ctx.parent_ref)
        assert "finalizers" not in stored["metadata"]

    async def test_clear_on_read_only_projection_rejected(self, store, services):
        ctx, parent = seed(store, services, finalizers=[FINALIZER], deleting=True)

        with pytest.raises(ValidationError):
            await clear_finalizer(ctx, freeze(parent), FINALIZER)

        assert store.actions == []
        stored = await store.get(ctx.parent_ref)
        assert stored["metadata"]["finalizers"] == [FINALIZER]
