"""
Finalizers - Blocking parent removal until cleanup has finished.

Finalizers are added and removed with a JSON merge patch that touches only
``metadata.finalizers`` and carries the parent's resource version, so a
concurrent change to the parent makes the patch fail instead of being
overwritten. Conflicts are not retried here; the next reconciliation
starts from a fresh read.
"""

import json
import logging
from typing import Any, Dict, List

from errors import ValidationError
from events import EventType
from reconcilers.base import ReconcileContext, ReconcileNode, ReconcileResult
from resources import FrozenDict, ResourceRef, get_finalizers, is_terminating

logger = logging.getLogger(__name__)


async def add_finalizer(
    ctx: ReconcileContext, parent: Dict[str, Any], finalizer: str
) -> None:
    """Add ``finalizer`` to the parent unless it is already present."""
    finalizers = get_finalizers(parent)
    if finalizer in finalizers:
        return
    await _patch_finalizers(ctx, parent, finalizers + [finalizer])


async def clear_finalizer(
    ctx: ReconcileContext, parent: Dict[str, Any], finalizer: str
) -> None:
    """Remove ``finalizer`` from the parent if it is present."""
    finalizers = get_finalizers(parent)
    if finalizer not in finalizers:
        return
    await _patch_finalizers(ctx, parent, [f for f in finalizers if f != finalizer])


async def _patch_finalizers(
    ctx: ReconcileContext, parent: Dict[str, Any], finalizers: List[str]
) -> None:
    """
    Replace the parent's finalizer list with a version-qualified merge patch.

    On success the parent's finalizers and resourceVersion are refreshed
    from the store's response so later writes in this reconciliation are
    based on the new version.
    """
    ref = ResourceRef.from_object(parent)
    metadata = parent["metadata"]
    if isinstance(metadata, FrozenDict):
        raise ValidationError(
            "Cannot patch finalizers of a read-only projection; supply "
            "reflect_back or hold the finalizer outside the projection",
            ref=ref,
        )
    version = metadata.get("resourceVersion")
    patch = json.dumps(
        {"metadata": {"finalizers": finalizers, "resourceVersion": version}}
    ).encode()

    try:
        patched = await ctx.store.patch(ref, patch, version)
    except Exception as e:
        logger.error(f"Failed to patch finalizers of {ref}: {e}")
        await ctx.record_event(
            parent,
            EventType.WARNING,
            "FinalizerPatchFailed",
            f"Failed to patch finalizers: {e}",
        )
        raise

    metadata["finalizers"] = get_finalizers(patched)
    metadata["resourceVersion"] = patched["metadata"]["resourceVersion"]
    logger.info(f"Patched finalizers of {ref}: {finalizers}")
    await ctx.record_event(
        parent,
        EventType.NORMAL,
        "FinalizerPatched",
        f"Patched finalizers {finalizers}",
    )


class WithFinalizer(ReconcileNode):
    """
    Hold a finalizer on the parent while a nested node owns external state.

    Active parent: the finalizer is added if missing, then the nested node
    runs. Terminating parent: the nested node runs (its finalize path) and
    only if it succeeds is the finalizer removed. A failed cleanup keeps the
    finalizer, and with it the parent, until a later reconciliation
    succeeds.

    The finalizer name must be unique to this node and stable across
    releases; renaming it strands every parent holding the old name.
    """

    def __init__(self, finalizer: str, node: ReconcileNode, name: str = ""):
        if not finalizer:
            raise ValueError("Finalizer name must not be empty")
        self.finalizer = finalizer
        self.node = node
        self.name = name or f"WithFinalizer({finalizer})"

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        if not is_terminating(parent):
            await add_finalizer(ctx, parent, self.finalizer)
            return await self.node.reconcile(ctx, parent)

        if self.finalizer not in get_finalizers(parent):
            # cleanup already finished on an earlier pass
            return ReconcileResult()

        result = await self.node.reconcile(ctx, parent)
        await clear_finalizer(ctx, parent, self.finalizer)
        return result
