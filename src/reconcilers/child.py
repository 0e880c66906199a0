"""
Child Reconciler - Converging one child object with its parent.

Each reconciliation computes the desired child from the parent, finds the
existing child, and creates, updates or deletes so the two agree. The
outcome is reflected onto the parent's status through a caller function,
which is the only way child state reaches the parent.

A child is claimed either through a controller owner reference to the
parent (the default) or, in finalizer mode, through a caller predicate
while a finalizer on the parent guarantees cleanup. Never both.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ReconcileError,
    ValidationError,
)
from events import EventType
from reconcilers.base import (
    ReconcileContext,
    ReconcileNode,
    ReconcileResult,
    call_user,
)
from reconcilers.finalizers import add_finalizer, clear_finalizer
from resources import (
    ResourceRef,
    get_finalizers,
    get_metadata,
    is_owned_by,
    is_terminating,
    owner_reference,
    split_api_version,
)

logger = logging.getLogger(__name__)

# Fields the default comparison and merge leave to the server
SERVER_MANAGED_FIELDS = ("apiVersion", "kind", "metadata", "status")


def default_semantic_equals(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    """
    Compare the fields a desired child sets against the actual child.

    Every top-level field of ``desired`` except apiVersion, kind, metadata
    and status must match; desired labels and annotations must be present
    on the actual child with the same values.
    """
    for key, value in desired.items():
        if key in SERVER_MANAGED_FIELDS:
            continue
        if actual.get(key) != value:
            return False

    for field in ("labels", "annotations"):
        want = get_metadata(desired).get(field) or {}
        have = get_metadata(actual).get(field) or {}
        if any(have.get(key) != value for key, value in want.items()):
            return False
    return True


def default_merge_before_update(current: Dict[str, Any], desired: Dict[str, Any]) -> None:
    """Copy the desired fields onto ``current``, keeping server-managed ones."""
    for key, value in desired.items():
        if key in SERVER_MANAGED_FIELDS:
            continue
        current[key] = copy.deepcopy(value)

    metadata = current.setdefault("metadata", {})
    for field in ("labels", "annotations"):
        want = get_metadata(desired).get(field)
        if want:
            metadata[field] = {**(metadata.get(field) or {}), **want}


class ChildReconciler(ReconcileNode):
    """
    Keep exactly one child of a kind in line with the parent.

    Args:
        child_api_version: apiVersion of the child kind, e.g. ``v1``.
        child_kind: Kind of the child, e.g. ``ConfigMap``.
        desired_child: ``(ctx, parent) -> dict | None``; None means no child
            should exist.
        reflect_child_status_on_parent: ``(parent, child, error)``; receives
            the object returned by the store, None after deletion, or the
            error.
        semantic_equals: ``(desired, actual) -> bool``; equal children are
            not updated.
        merge_before_update: ``(current, desired)``; mutates a copy of the
            actual child into the object sent as the update.
        our_child: ``(parent, child) -> bool``; claims children without an
            owner reference. Requires ``finalizer``.
        finalizer: Finalizer held on the parent until the child is gone.
            Requires ``our_child``.
        labels: Labels merged onto every child this node writes.
        sanitize: ``(child) -> Any``; shapes what is logged for a child.
        name: Name used in logs.
    """

    def __init__(
        self,
        child_api_version: str,
        child_kind: str,
        desired_child: Callable[[ReconcileContext, Dict[str, Any]], Any],
        reflect_child_status_on_parent: Callable[
            [Dict[str, Any], Optional[Dict[str, Any]], Optional[Exception]], Any
        ],
        semantic_equals: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Any]] = None,
        merge_before_update: Optional[
            Callable[[Dict[str, Any], Dict[str, Any]], Any]
        ] = None,
        our_child: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Any]] = None,
        finalizer: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        sanitize: Optional[Callable[[Dict[str, Any]], Any]] = None,
        name: Optional[str] = None,
    ):
        if (finalizer is None) != (our_child is None):
            raise ValueError(
                "finalizer and our_child must be given together: a child is "
                "claimed by owner reference or by a finalizer-scoped predicate"
            )

        self.child_api_version = child_api_version
        self.child_group, _ = split_api_version(child_api_version)
        self.child_kind = child_kind
        self.desired_child = desired_child
        self.reflect_child_status_on_parent = reflect_child_status_on_parent
        self.semantic_equals = semantic_equals or default_semantic_equals
        self.merge_before_update = merge_before_update or default_merge_before_update
        self.our_child = our_child
        self.finalizer = finalizer
        self.labels = dict(labels or {})
        self.sanitize = sanitize
        self.name = name or f"ChildReconciler({child_kind})"

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        terminating = is_terminating(parent)

        if self.finalizer is not None:
            if terminating and self.finalizer not in get_finalizers(parent):
                return ReconcileResult()
            if not terminating:
                await add_finalizer(ctx, parent, self.finalizer)

        try:
            if terminating:
                # children of a terminating parent are only ever removed
                desired = None
            else:
                desired = await call_user(self.desired_child, ctx, parent)
            child = await self._reconcile_child(ctx, parent, desired)
        except Exception as e:
            await call_user(self.reflect_child_status_on_parent, parent, None, e)
            raise

        await call_user(self.reflect_child_status_on_parent, parent, child, None)

        if terminating and self.finalizer is not None:
            await clear_finalizer(ctx, parent, self.finalizer)
        return ReconcileResult()

    async def _reconcile_child(
        self,
        ctx: ReconcileContext,
        parent: Dict[str, Any],
        desired: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        children = await self._find_children(ctx, parent)
        if len(children) > 1:
            names = ", ".join(get_metadata(c).get("name", "") for c in children)
            raise ValidationError(
                f"{self.name}: found {len(children)} {self.child_kind} children "
                f"for {ctx.parent_ref} ({names}), expected at most one",
                ref=ctx.parent_ref,
            )
        actual = children[0] if children else None

        if desired is not None:
            desired = self._prepare_desired(parent, desired)

        if actual is None and desired is None:
            return None
        if actual is None:
            return await self._create(ctx, parent, desired)
        if desired is None:
            await self._delete(ctx, parent, actual)
            return None
        if is_terminating(actual):
            logger.debug(f"{self.name}: waiting for {ResourceRef.from_object(actual)}")
            return actual
        if await call_user(self.semantic_equals, desired, actual):
            return actual
        return await self._update(ctx, parent, actual, desired)

    async def _find_children(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        namespace = get_metadata(parent).get("namespace") or None
        candidates = await ctx.store.list(
            self.child_group, self.child_kind, namespace=namespace
        )
        matches = []
        for candidate in candidates:
            if await self._claims(parent, candidate):
                matches.append(candidate)
        return matches

    async def _claims(self, parent: Dict[str, Any], child: Dict[str, Any]) -> bool:
        if self.our_child is None:
            return is_owned_by(child, parent)
        return bool(await call_user(self.our_child, parent, child))

    def _prepare_desired(
        self, parent: Dict[str, Any], desired: Dict[str, Any]
    ) -> Dict[str, Any]:
        desired = copy.deepcopy(desired)
        if desired.setdefault("kind", self.child_kind) != self.child_kind:
            raise ValidationError(
                f"{self.name}: desired child has kind {desired['kind']}, "
                f"expected {self.child_kind}"
            )
        desired.setdefault("apiVersion", self.child_api_version)

        metadata = desired.setdefault("metadata", {})
        namespace = get_metadata(parent).get("namespace")
        if namespace:
            metadata.setdefault("namespace", namespace)
        if self.labels:
            metadata["labels"] = {**(metadata.get("labels") or {}), **self.labels}
        if self.finalizer is None:
            metadata["ownerReferences"] = [owner_reference(parent)]
        return desired

    async def _describe(self, child: Dict[str, Any]) -> Any:
        if self.sanitize is None:
            return child
        return await call_user(self.sanitize, child)

    async def _create(
        self, ctx: ReconcileContext, parent: Dict[str, Any], desired: Dict[str, Any]
    ) -> Dict[str, Any]:
        display = get_metadata(desired).get("name") or get_metadata(desired).get(
            "generateName", ""
        )
        try:
            created = await ctx.store.create(desired)
        except AlreadyExistsError as e:
            error = await self._collision_error(ctx, parent, desired, e)
            logger.error(f"{self.name}: {error.message}")
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "CreationFailed",
                f"Failed to create {self.child_kind} '{display}': {error.message}",
            )
            raise error from e
        except Exception as e:
            logger.error(f"{self.name}: failed to create {self.child_kind}: {e}")
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "CreationFailed",
                f"Failed to create {self.child_kind} '{display}': {e}",
            )
            raise

        name = get_metadata(created).get("name")
        logger.info(
            f"{self.name}: created {self.child_kind} {name}: "
            f"{await self._describe(created)}"
        )
        await ctx.record_event(
            parent, EventType.NORMAL, "Created", f"Created {self.child_kind} '{name}'"
        )
        return created

    async def _collision_error(
        self,
        ctx: ReconcileContext,
        parent: Dict[str, Any],
        desired: Dict[str, Any],
        error: AlreadyExistsError,
    ) -> ReconcileError:
        """Explain a create that hit an existing name. Foreign objects are never adopted."""
        ref = ResourceRef.from_object(desired)
        try:
            existing = await ctx.store.get(ref)
        except NotFoundError:
            return ConflictError(f"{ref} was deleted while being created", ref=ref)

        if await self._claims(parent, existing):
            return ConflictError(
                f"{ref} already exists and belongs to {ctx.parent_ref}; "
                "the cached view is stale",
                ref=ref,
            )
        return ValidationError(
            f"{ref} already exists and is not owned by {ctx.parent_ref}; "
            "refusing to adopt it",
            ref=ref,
        )

    async def _update(
        self,
        ctx: ReconcileContext,
        parent: Dict[str, Any],
        actual: Dict[str, Any],
        desired: Dict[str, Any],
    ) -> Dict[str, Any]:
        current = copy.deepcopy(actual)
        await call_user(self.merge_before_update, current, desired)
        name = get_metadata(actual).get("name")

        try:
            updated = await ctx.store.update(current)
        except Exception as e:
            logger.error(f"{self.name}: failed to update {self.child_kind} {name}: {e}")
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "UpdateFailed",
                f"Failed to update {self.child_kind} '{name}': {e}",
            )
            raise

        logger.info(
            f"{self.name}: updated {self.child_kind} {name}: "
            f"{await self._describe(updated)}"
        )
        await ctx.record_event(
            parent, EventType.NORMAL, "Updated", f"Updated {self.child_kind} '{name}'"
        )
        return updated

    async def _delete(
        self, ctx: ReconcileContext, parent: Dict[str, Any], actual: Dict[str, Any]
    ) -> None:
        ref = ResourceRef.from_object(actual)
        try:
            await ctx.store.delete(ref)
        except Exception as e:
            logger.error(f"{self.name}: failed to delete {ref}: {e}")
            await ctx.record_event(
                parent,
                EventType.WARNING,
                "DeleteFailed",
                f"Failed to delete {self.child_kind} '{ref.name}': {e}",
            )
            raise

        logger.info(
            f"{self.name}: deleted {self.child_kind} {ref.name}: "
            f"{await self._describe(actual)}"
        )
        await ctx.record_event(
            parent, EventType.NORMAL, "Deleted", f"Deleted {self.child_kind} '{ref.name}'"
        )
