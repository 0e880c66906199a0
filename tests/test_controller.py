"""Unit tests for controller.py - The parent controller."""

import asyncio
import importlib
from unittest.mock import patch

import pytest

from conditions import ConditionSet, ConditionStatus, get_condition, set_condition
import controller as controller_module
from conftest import make_parent
from controller import ParentController
from errors import (
    ConflictError,
    NotFoundError,
    ReconcileCancelledError,
    TransientStoreError,
    ValidationError,
)
from events import EventType
from reconcilers import (
    CastParent,
    ChildReconciler,
    ReconcileResult,
    Sequence,
    Services,
    Sync,
    WithFinalizer,
)
from resources import ResourceRef

TIMES = ["2024-01-15T10:00:00Z", "2024-01-15T11:00:00Z", "2024-01-15T12:00:00Z"]


class Clock:
    """Hands out successive timestamps, repeating the last one."""

    def __init__(self, times):
        self.times = list(times)

    def __call__(self):
        if len(self.times) > 1:
            return self.times.pop(0)
        return self.times[0]


def config_map_child(reflected):
    def desired(ctx, parent):
        return {
            "metadata": {"name": f"{parent['metadata']['name']}-config"},
            "data": {"size": str(parent["spec"]["size"])},
        }

    def reflect(parent, child, error):
        reflected.append((child, error))
        if child is not None:
            parent["status"]["configMap"] = {
                "name": child["metadata"]["name"],
                "uid": child["metadata"]["uid"],
            }

    return ChildReconciler("v1", "ConfigMap", desired, reflect)


@pytest.mark.asyncio
class TestParentController:
    """Tests for ParentController.reconcile."""

    async def test_missing_parent_is_noop(self, services, store):
        controller = ParentController(Sync(lambda c, p: None), services)

        result = await controller.reconcile(
            ResourceRef("example.com", "Widget", "default", "gone")
        )

        assert result.is_empty
        assert store.actions == []

    async def test_creates_child_and_persists_status(self, services, store, recorder):
        seeded = store.add(make_parent())
        ref = ResourceRef.from_object(seeded)
        reflected = []
        controller = ParentController(
            config_map_child(reflected),
            services,
            conditions=ConditionSet("Ready"),
            now=Clock(TIMES),
        )

        await controller.reconcile(ref)

        assert [a.verb for a in store.actions] == ["create", "update_status"]

        stored = await store.get(ref)
        status = stored["status"]
        assert status["observedGeneration"] == stored["metadata"]["generation"]

        ready = get_condition(status, "Ready")
        assert ready["status"] == ConditionStatus.UNKNOWN.value
        assert ready["lastTransitionTime"] == TIMES[0]
        assert ready["observedGeneration"] == 1

        child = await store.get(ResourceRef("", "ConfigMap", "default", "my-widget-config"))
        assert status["configMap"]["uid"] == child["metadata"]["uid"]

        created = recorder.events_for("Created")
        assert len(created) == 1
        assert created[0].message == "Created ConfigMap 'my-widget-config'"
        assert recorder.events_for("StatusUpdated")

    async def test_unchanged_status_not_written(self, services, store):
        seeded = store.add(make_parent())
        ref = ResourceRef.from_object(seeded)
        controller = ParentController(
            config_map_child([]),
            services,
            conditions=ConditionSet("Ready"),
            now=Clock(TIMES),
        )

        await controller.reconcile(ref)
        first = await store.get(ref)
        store.actions.clear()

        await controller.reconcile(ref)

        assert store.actions == []
        second = await store.get(ref)
        assert second["status"] == first["status"]
        assert get_condition(second["status"], "Ready")["lastTransitionTime"] == TIMES[0]

    async def test_changed_condition_gets_new_transition_time(self, services, store):
        seeded = store.add(make_parent())
        ref = ResourceRef.from_object(seeded)
        state = {"ready": False}

        def sync(ctx, parent):
            if state["ready"]:
                set_condition(parent["status"], "Ready", ConditionStatus.TRUE, "Ready")

        controller = ParentController(
            Sync(sync), services, conditions=ConditionSet("Ready"), now=Clock(TIMES)
        )

        await controller.reconcile(ref)
        state["ready"] = True
        await controller.reconcile(ref)

        ready = get_condition((await store.get(ref))["status"], "Ready")
        assert ready["status"] == "True"
        assert ready["lastTransitionTime"] == TIMES[1]

    async def test_null_conditions_seeded(self, services, store):
        seeded = store.add(make_parent(status={"conditions": None}))
        ref = ResourceRef.from_object(seeded)
        controller = ParentController(
            Sync(lambda c, p: None),
            services,
            conditions=ConditionSet("Ready"),
            now=Clock(TIMES),
        )

        await controller.reconcile(ref)

        ready = get_condition((await store.get(ref))["status"], "Ready")
        assert ready["status"] == ConditionStatus.UNKNOWN.value
        assert ready["lastTransitionTime"] == TIMES[0]

    async def test_observed_generation_follows_parent(self, services, store):
        parent = make_parent()
        parent["metadata"]["generation"] = 7
        ref = ResourceRef.from_object(store.add(parent))

        await ParentController(Sync(lambda c, p: None), services).reconcile(ref)

        assert (await store.get(ref))["status"]["observedGeneration"] == 7

    async def test_returns_requeue_directive(self, services, store):
        ref = ResourceRef.from_object(store.add(make_parent()))
        controller = ParentController(
            Sequence(
                Sync(lambda c, p: ReconcileResult.after(60)),
                Sync(lambda c, p: ReconcileResult.after(15)),
            ),
            services,
        )

        result = await controller.reconcile(ref)

        assert result.requeue_after == 15

    async def test_terminating_parent_finalizer_removed(self, services, store):
        seeded = store.add(make_parent(finalizers=["x"], deleting=True))
        ref = ResourceRef.from_object(seeded)
        finalized = []

        controller = ParentController(
            WithFinalizer(
                "x",
                Sync(lambda c, p: None, finalize=lambda c, p: finalized.append(True)),
            ),
            services,
        )

        await controller.reconcile(ref)

        patches = store.actions_for("patch")
        assert len(patches) == 1
        assert patches[0].payload["metadata"]["finalizers"] == []
        assert finalized == [True]
        # released parents get no status write
        assert store.actions_for("update_status") == []
        with pytest.raises(NotFoundError):
            await store.get(ref)

    async def test_error_persists_status_and_raises(self, services, store, recorder):
        ref = ResourceRef.from_object(store.add(make_parent()))

        def sync(ctx, parent):
            parent["status"]["phase"] = "Failed"
            raise ConflictError("child moved on")

        controller = ParentController(Sync(sync), services)

        with pytest.raises(ConflictError):
            await controller.reconcile(ref)

        assert (await store.get(ref))["status"]["phase"] == "Failed"
        failed = recorder.events_for("ReconcileFailed")[0]
        assert failed.event_type == EventType.WARNING
        assert failed.message == "Reconciliation failed: child moved on"

    async def test_finalizer_under_read_only_projection(self, services, store, recorder):
        ref = ResourceRef.from_object(store.add(make_parent()))
        controller = ParentController(
            CastParent(lambda p: p, WithFinalizer("x", Sync(lambda c, p: None))),
            services,
        )

        with pytest.raises(ValidationError):
            await controller.reconcile(ref)

        assert store.actions_for("patch") == []
        assert "finalizers" not in (await store.get(ref))["metadata"]
        assert recorder.events_for("ReconcileFailed")

    async def test_status_failure_raised_when_tree_succeeds(self, services, store, recorder):
        ref = ResourceRef.from_object(store.add(make_parent()))
        store.fail("update_status", TransientStoreError("connection reset"))

        with pytest.raises(TransientStoreError):
            await ParentController(Sync(lambda c, p: None), services).reconcile(ref)

        assert recorder.events_for("StatusUpdateFailed")

    async def test_tree_error_wins_over_status_failure(self, services, store):
        ref = ResourceRef.from_object(store.add(make_parent()))
        store.fail("update_status", TransientStoreError("connection reset"))

        def sync(ctx, parent):
            raise ConflictError("stale")

        with pytest.raises(ConflictError):
            await ParentController(Sync(sync), services).reconcile(ref)

    async def test_fresh_stash_per_reconcile(self, services, store):
        ref = ResourceRef.from_object(store.add(make_parent()))
        seen = []

        def sync(ctx, parent):
            seen.append(ctx.stash.retrieve("count", 0))
            ctx.stash.stash("count", 1)

        controller = ParentController(Sync(sync), services)
        await controller.reconcile(ref)
        await controller.reconcile(ref)

        assert seen == [0, 0]

    async def test_shutdown_aborts_sequence(self, services, store):
        ref = ResourceRef.from_object(store.add(make_parent()))
        shutdown = asyncio.Event()
        calls = []

        def first(ctx, parent):
            calls.append("first")
            shutdown.set()

        controller = ParentController(
            Sequence(Sync(first), Sync(lambda c, p: calls.append("second"))),
            services,
            shutdown_event=shutdown,
        )

        with pytest.raises(ReconcileCancelledError):
            await controller.reconcile(ref)
        assert calls == ["first"]

    async def test_concurrent_parents(self, services, store):
        refs = [
            ResourceRef.from_object(store.add(make_parent(name=f"widget-{i}")))
            for i in range(5)
        ]
        controller = ParentController(config_map_child([]), services)

        await asyncio.gather(*(controller.reconcile(ref) for ref in refs))

        children = await store.list("", "ConfigMap", namespace="default")
        assert len(children) == 5


@pytest.mark.asyncio
class TestEnqueueTracked:
    """Tests for mapping changed objects to dependent parents."""

    async def test_tracked_object_maps_to_parent(self, services, store):
        ref = ResourceRef.from_object(store.add(make_parent()))
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "creds", "namespace": "default"},
        }

        def sync(ctx, parent):
            ctx.track(ResourceRef.from_object(secret))

        controller = ParentController(Sync(sync), services)
        await controller.reconcile(ref)

        assert controller.enqueue_tracked(secret) == {ref}

    async def test_without_tracker(self, store):
        controller = ParentController(Sync(lambda c, p: None), Services(store=store))
        assert controller.enqueue_tracked({"kind": "Secret", "metadata": {}}) == set()


def test_import_leaves_logging_configuration_to_host():
    with patch("logging.basicConfig") as basic_config:
        importlib.reload(controller_module)

    basic_config.assert_not_called()
