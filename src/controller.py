"""
Parent Controller - Top-level driver of one reconciliation.

Similar to Kubernetes controllers: the hosting scheduler hands over the
identity of a parent resource, the controller fetches it, runs the reconcile
tree against it, and persists the resulting status. Requeue and backoff
decisions stay with the scheduler.
"""

import asyncio
import copy
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from conditions import ConditionSet, normalize_conditions
from errors import NotFoundError, ReconcileError
from events import EventType
from reconcilers.base import ReconcileContext, ReconcileNode, ReconcileResult, Services
from resources import ResourceRef, get_finalizers, is_terminating, now_rfc3339

logger = logging.getLogger(__name__)


class ParentController:
    """
    Reconciles parent resources of one type.

    Each call to :meth:`reconcile` is independent: it fetches the parent,
    builds a fresh context and stash, runs the root node and writes status
    back only when it changed. Distinct parents may be reconciled
    concurrently; the dependency tracker is the only state they share.
    """

    def __init__(
        self,
        reconciler: ReconcileNode,
        services: Services,
        conditions: Optional[ConditionSet] = None,
        name: str = "ParentController",
        shutdown_event: Optional[asyncio.Event] = None,
        now: Callable[[], str] = now_rfc3339,
    ):
        self.reconciler = reconciler
        self.services = services
        self.conditions = conditions
        self.name = name
        self.shutdown_event = shutdown_event
        self._now = now

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        """
        Reconcile one parent.

        Args:
            ref: Identity of the parent, as queued by the scheduler.

        Returns:
            The requeue directive of the reconcile tree. A parent that no
            longer exists yields an empty result.

        Raises:
            Exception: The first error of the reconcile tree, or the status
                update error when the tree succeeded.
        """
        start_time = time.monotonic()
        logger.info(f"{self.name}: reconciling {ref}")

        try:
            parent = await self.services.store.get(ref)
        except NotFoundError:
            logger.info(f"{self.name}: {ref} not found, nothing to reconcile")
            return ReconcileResult()

        original = copy.deepcopy(parent)
        if not isinstance(parent.get("status"), dict):
            parent["status"] = {}
        if self.conditions is not None:
            self.conditions.initialize(parent["status"])

        ctx = ReconcileContext(
            services=self.services,
            parent_ref=ref,
            shutdown_event=self.shutdown_event,
        )

        result = ReconcileResult()
        reconcile_error: Optional[Exception] = None
        try:
            result = await self.reconciler.reconcile(ctx, parent)
        except Exception as e:
            reconcile_error = e
            logger.error(
                f"{self.name}: error reconciling {ref}: {e}",
                exc_info=not isinstance(e, ReconcileError),
            )

        await self._persist_status(ctx, parent, original, reconcile_error)

        if reconcile_error is not None:
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "ReconcileFailed",
                f"Reconciliation failed: {reconcile_error}",
            )
            raise reconcile_error

        duration_seconds = time.monotonic() - start_time
        logger.info(f"{self.name}: reconciled {ref} in {duration_seconds:.3f}s")
        return result

    async def _persist_status(
        self,
        ctx: ReconcileContext,
        parent: Dict[str, Any],
        original: Dict[str, Any],
        reconcile_error: Optional[Exception],
    ) -> None:
        """
        Normalize the computed status and write it if it changed.

        A status update failure is raised only when the reconcile tree
        itself succeeded; otherwise the tree's error wins and the status
        failure is logged and recorded.
        """
        generation = (parent.get("metadata") or {}).get("generation", 0)
        status = parent["status"]
        previous = original.get("status") or {}

        normalize_conditions(status, previous, generation, now=self._now())
        status["observedGeneration"] = generation

        if status == previous:
            return
        if is_terminating(parent) and not get_finalizers(parent):
            # the store removes the parent once its last finalizer is gone
            logger.debug(f"{self.name}: {ctx.parent_ref} released, status not written")
            return

        try:
            updated = await self.services.store.update_status(parent)
        except Exception as e:
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "StatusUpdateFailed",
                f"Failed to update status: {e}",
            )
            if reconcile_error is None:
                raise
            logger.error(f"{self.name}: failed to update status of {ctx.parent_ref}: {e}")
            return

        parent["metadata"]["resourceVersion"] = updated["metadata"]["resourceVersion"]
        await ctx.record_event(parent, EventType.NORMAL, "StatusUpdated", "Updated status")

    def enqueue_tracked(self, obj: Dict[str, Any]) -> Set[ResourceRef]:
        """
        Map a changed object to the parents that depend on it.

        Schedulers call this for watch events on tracked kinds and requeue
        every returned reference.
        """
        if self.services.tracker is None:
            return set()
        return self.services.tracker.lookup_object(obj)
