"""
External Store - Interface to the resource store, plus an in-memory store.

The runtime only talks to objects through :class:`ExternalStore`. Writes are
optimistic: updates and patches carry the resource version they were based
on and fail with ConflictError when the stored object has moved on.

:class:`InMemoryStore` implements the full write semantics in process. It is
used by tests and by hosts that embed the runtime without a database; the
Postgres-backed store lives in ``db.py``.
"""

import copy
import itertools
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from errors import AlreadyExistsError, ConflictError, NotFoundError, ValidationError
from events import EventBus
from resources import (
    ResourceRef,
    get_finalizers,
    is_terminating,
    merge_patch,
    now_rfc3339,
)

logger = logging.getLogger(__name__)


class WatchEventType(Enum):
    """Kinds of change reported by a watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """A change to an object, as seen by a watch stream."""

    type: WatchEventType
    object: Dict[str, Any]


class ExternalStore(ABC):
    """
    Abstract resource store.

    Objects go in and come out as dicts. Returned objects are copies owned
    by the caller; they carry the server-managed metadata (uid,
    resourceVersion, generation) assigned by the store.
    """

    @abstractmethod
    async def get(self, ref: ResourceRef) -> Dict[str, Any]:
        """
        Fetch an object.

        Raises:
            NotFoundError: If no object exists for ``ref``.
        """
        pass

    @abstractmethod
    async def list(
        self,
        group: str,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        List objects of a kind.

        Args:
            group: API group of the kind (``""`` for core types).
            kind: Object kind.
            namespace: Restrict to one namespace; all namespaces when None.
            labels: Only objects carrying all of these labels.
        """
        pass

    @abstractmethod
    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an object.

        Raises:
            AlreadyExistsError: If the name is taken.
        """
        pass

    @abstractmethod
    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace an object's metadata and spec. Status is left untouched.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If ``obj``'s resourceVersion is stale.
        """
        pass

    @abstractmethod
    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace an object's status only.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If ``obj``'s resourceVersion is stale.
        """
        pass

    @abstractmethod
    async def patch(
        self, ref: ResourceRef, patch: bytes, expected_version: Optional[str]
    ) -> Dict[str, Any]:
        """
        Apply a JSON merge patch.

        Args:
            ref: The object to patch.
            patch: Encoded JSON merge patch document.
            expected_version: Resource version the patch is based on; the
                patch is rejected when the object has changed since.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If ``expected_version`` is stale.
        """
        pass

    @abstractmethod
    async def delete(self, ref: ResourceRef) -> None:
        """
        Delete an object, or mark it terminating while finalizers remain.

        Raises:
            NotFoundError: If the object does not exist.
        """
        pass

    @abstractmethod
    def watch(self, group: str, kind: str) -> AsyncIterator[WatchEvent]:
        """Stream changes to objects of a kind. Consumed by schedulers."""
        pass


# ==================== Shared write semantics ====================


def decode_patch(patch: bytes) -> Dict[str, Any]:
    """Decode a merge patch document, rejecting anything but an object."""
    try:
        document = json.loads(patch)
    except ValueError as e:
        raise ValidationError(f"Invalid merge patch: {e}")
    if not isinstance(document, dict):
        raise ValidationError("Merge patch must be a JSON object")
    return document


def stamp_created(obj: Dict[str, Any], resource_version: str) -> Dict[str, Any]:
    """
    Assign server-managed metadata to a new object.

    Expands ``generateName`` when no name is set. Modifies and returns ``obj``.
    """
    meta = obj.setdefault("metadata", {})
    if not meta.get("name"):
        prefix = meta.get("generateName")
        if not prefix:
            raise ValidationError(
                f"{obj.get('kind', 'Object')} needs metadata.name or "
                "metadata.generateName"
            )
        meta["name"] = f"{prefix}{uuid.uuid4().hex[:5]}"
    meta["uid"] = str(uuid.uuid4())
    meta["resourceVersion"] = resource_version
    meta["generation"] = 1
    meta["creationTimestamp"] = now_rfc3339()
    meta.pop("deletionTimestamp", None)
    return obj


def stamp_updated(
    previous: Dict[str, Any], current: Dict[str, Any], resource_version: str
) -> bool:
    """
    Carry server-managed metadata from ``previous`` onto ``current``.

    Identity fields and the deletion timestamp cannot be changed by writes;
    generation increments when the spec changes.

    Returns:
        True when the write leaves a terminating object with no finalizers,
        meaning the store should remove it.
    """
    meta = current.setdefault("metadata", {})
    prev_meta = previous.get("metadata") or {}

    for key in ("name", "namespace", "uid", "creationTimestamp", "deletionTimestamp"):
        if key in prev_meta:
            meta[key] = prev_meta[key]
        else:
            meta.pop(key, None)

    generation = prev_meta.get("generation", 1)
    if current.get("spec") != previous.get("spec"):
        generation += 1
    meta["generation"] = generation
    meta["resourceVersion"] = resource_version

    return is_terminating(current) and not get_finalizers(current)


def check_version(
    stored: Dict[str, Any], expected: Optional[str], ref: ResourceRef
) -> None:
    """Raise ConflictError when ``expected`` does not match the stored version."""
    if not expected:
        return
    actual = (stored.get("metadata") or {}).get("resourceVersion")
    if str(expected) != str(actual):
        raise ConflictError(
            f"Operation on {ref} cannot be fulfilled: resource version "
            f"{expected} is stale (current {actual})",
            ref=ref,
        )


# ==================== In-memory store ====================


@dataclass
class StoreAction:
    """A write attempted against the in-memory store."""

    verb: str
    ref: ResourceRef
    payload: Any = None


class InMemoryStore(ExternalStore):
    """
    Process-local store with the same write semantics as the Postgres store.

    Every attempted write is recorded in :attr:`actions`, and one-shot
    failures can be injected with :meth:`fail`.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._objects: Dict[ResourceRef, Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._bus = bus or EventBus()
        self._failures: Dict[str, List[Exception]] = {}
        self.actions: List[StoreAction] = []

    def add(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Seed an object without recording an action. Returns the stored copy."""
        stored = stamp_created(copy.deepcopy(obj), self._next_version())
        meta = obj.get("metadata") or {}
        # seeded objects may start out terminating
        if meta.get("deletionTimestamp"):
            stored["metadata"]["deletionTimestamp"] = meta["deletionTimestamp"]
        if meta.get("generation"):
            stored["metadata"]["generation"] = meta["generation"]
        self._objects[ResourceRef.from_object(stored)] = stored
        return copy.deepcopy(stored)

    def fail(self, verb: str, error: Exception) -> None:
        """Make the next call of ``verb`` raise ``error``."""
        self._failures.setdefault(verb, []).append(error)

    def actions_for(self, verb: str) -> List[StoreAction]:
        return [action for action in self.actions if action.verb == verb]

    def objects(self) -> List[Dict[str, Any]]:
        """Copies of every stored object."""
        return [copy.deepcopy(obj) for obj in self._objects.values()]

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _record(self, verb: str, ref: ResourceRef, payload: Any = None) -> None:
        self.actions.append(StoreAction(verb, ref, copy.deepcopy(payload)))
        failures = self._failures.get(verb)
        if failures:
            raise failures.pop(0)

    def _lookup(self, ref: ResourceRef) -> Dict[str, Any]:
        stored = self._objects.get(ref)
        if stored is None:
            raise NotFoundError(f"{ref} not found", ref=ref)
        return stored

    async def _commit(
        self, ref: ResourceRef, previous: Dict[str, Any], current: Dict[str, Any]
    ) -> Dict[str, Any]:
        released = stamp_updated(previous, current, self._next_version())
        if released:
            del self._objects[ref]
            logger.debug(f"Removed {ref}: finalizers cleared")
            await self._bus.publish(
                WatchEvent(WatchEventType.DELETED, copy.deepcopy(current))
            )
        else:
            self._objects[ref] = current
            await self._bus.publish(
                WatchEvent(WatchEventType.MODIFIED, copy.deepcopy(current))
            )
        return copy.deepcopy(current)

    async def get(self, ref: ResourceRef) -> Dict[str, Any]:
        return copy.deepcopy(self._lookup(ref))

    async def list(
        self,
        group: str,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        matches = []
        for ref, obj in sorted(
            self._objects.items(), key=lambda item: (item[0].namespace, item[0].name)
        ):
            if ref.group != group or ref.kind != kind:
                continue
            if namespace is not None and ref.namespace != namespace:
                continue
            if labels:
                have = (obj.get("metadata") or {}).get("labels") or {}
                if any(have.get(key) != value for key, value in labels.items()):
                    continue
            matches.append(copy.deepcopy(obj))
        return matches

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        created = stamp_created(copy.deepcopy(obj), self._next_version())
        ref = ResourceRef.from_object(created)
        self._record("create", ref, obj)
        if ref in self._objects:
            raise AlreadyExistsError(f"{ref} already exists", ref=ref)

        self._objects[ref] = created
        await self._bus.publish(WatchEvent(WatchEventType.ADDED, copy.deepcopy(created)))
        return copy.deepcopy(created)

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ResourceRef.from_object(obj)
        self._record("update", ref, obj)
        previous = self._lookup(ref)
        check_version(previous, (obj.get("metadata") or {}).get("resourceVersion"), ref)

        current = copy.deepcopy(obj)
        if "status" in previous:
            current["status"] = copy.deepcopy(previous["status"])
        else:
            current.pop("status", None)
        return await self._commit(ref, previous, current)

    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ResourceRef.from_object(obj)
        self._record("update_status", ref, obj.get("status"))
        previous = self._lookup(ref)
        check_version(previous, (obj.get("metadata") or {}).get("resourceVersion"), ref)

        current = copy.deepcopy(previous)
        current["status"] = copy.deepcopy(obj.get("status"))
        return await self._commit(ref, previous, current)

    async def patch(
        self, ref: ResourceRef, patch: bytes, expected_version: Optional[str]
    ) -> Dict[str, Any]:
        document = decode_patch(patch)
        self._record("patch", ref, document)
        previous = self._lookup(ref)
        check_version(previous, expected_version, ref)

        current = merge_patch(previous, document)
        return await self._commit(ref, previous, current)

    async def delete(self, ref: ResourceRef) -> None:
        self._record("delete", ref)
        previous = self._lookup(ref)

        if get_finalizers(previous):
            if not is_terminating(previous):
                current = copy.deepcopy(previous)
                stamp_updated(previous, current, self._next_version())
                # deletionTimestamp is immutable for writes, so set it afterwards
                current["metadata"]["deletionTimestamp"] = now_rfc3339()
                self._objects[ref] = current
                await self._bus.publish(
                    WatchEvent(WatchEventType.MODIFIED, copy.deepcopy(current))
                )
            return

        del self._objects[ref]
        await self._bus.publish(WatchEvent(WatchEventType.DELETED, copy.deepcopy(previous)))

    async def watch(self, group: str, kind: str) -> AsyncIterator[WatchEvent]:
        def matches(event: WatchEvent) -> bool:
            ref = ResourceRef.from_object(event.object)
            return ref.group == group and ref.kind == kind

        subscriber_id, subscription = await self._bus.subscribe(matches)
        try:
            async for event in subscription:
                yield event
        finally:
            await self._bus.unsubscribe(subscriber_id)
