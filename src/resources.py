"""
Resources - Object identity and metadata helpers.

Objects are plain JSON-shaped dicts with ``apiVersion``, ``kind``,
``metadata``, ``spec`` and ``status`` keys, the same shape the store
persists. This module holds the hashable reference type, metadata accessors,
owner references, JSON merge patch and the read-only views handed out by
read-only projections.
"""

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from errors import ValidationError


@dataclass(frozen=True)
class ResourceRef:
    """Identity of an object instance."""

    group: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ResourceRef":
        """
        Build a reference from an object dict.

        Args:
            obj: Object with ``apiVersion``, ``kind`` and ``metadata``.

        Returns:
            The object's ResourceRef. A missing namespace maps to ``""``.
        """
        group, _ = split_api_version(obj.get("apiVersion", ""))
        meta = obj.get("metadata") or {}
        return cls(
            group=group,
            kind=obj.get("kind", ""),
            namespace=meta.get("namespace") or "",
            name=meta.get("name", ""),
        )

    def __str__(self) -> str:
        kind = f"{self.kind}.{self.group}" if self.group else self.kind
        if self.namespace:
            return f"{kind}/{self.namespace}/{self.name}"
        return f"{kind}/{self.name}"


def split_api_version(api_version: str) -> Tuple[str, str]:
    """Split ``group/version`` into its parts; core types have no group."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def now_rfc3339() -> str:
    """Current UTC time in the timestamp format used for metadata."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def get_finalizers(obj: Dict[str, Any]) -> List[str]:
    return list(get_metadata(obj).get("finalizers") or [])


def is_terminating(obj: Dict[str, Any]) -> bool:
    """Return True once deletion of the object has been requested."""
    return bool(get_metadata(obj).get("deletionTimestamp"))


def owner_reference(owner: Dict[str, Any]) -> Dict[str, Any]:
    """Controller owner reference pointing at ``owner``."""
    meta = get_metadata(owner)
    return {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def is_owned_by(child: Dict[str, Any], owner: Dict[str, Any]) -> bool:
    """Return True if ``owner`` is the controller of ``child``."""
    uid = get_metadata(owner).get("uid")
    if not uid:
        return False
    for ref in get_metadata(child).get("ownerReferences") or []:
        if ref.get("uid") == uid and ref.get("controller"):
            return True
    return False


def merge_patch(target: Any, patch: Any) -> Any:
    """
    Apply a JSON merge patch (RFC 7386) and return the result.

    ``None`` values delete keys, dicts merge recursively and every other
    value replaces the target. Neither argument is modified.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


# ==================== Read-only views ====================


def _read_only(*args: Any, **kwargs: Any) -> None:
    raise ValidationError(
        "Cannot mutate a read-only projection; supply reflect_back to "
        "write changes to the parent"
    )


class FrozenDict(dict):
    """Dict whose mutators raise ValidationError. Deep copies are mutable."""

    __setitem__ = _read_only
    __delitem__ = _read_only
    __ior__ = _read_only
    clear = _read_only
    pop = _read_only
    popitem = _read_only
    setdefault = _read_only
    update = _read_only

    def __copy__(self) -> Dict[str, Any]:
        return dict(self)

    def __deepcopy__(self, memo: Dict[int, Any]) -> Dict[str, Any]:
        return thaw(self)


class FrozenList(list):
    """List whose mutators raise ValidationError. Deep copies are mutable."""

    __setitem__ = _read_only
    __delitem__ = _read_only
    __iadd__ = _read_only
    __imul__ = _read_only
    append = _read_only
    extend = _read_only
    insert = _read_only
    pop = _read_only
    remove = _read_only
    clear = _read_only
    sort = _read_only
    reverse = _read_only

    def __copy__(self) -> List[Any]:
        return list(self)

    def __deepcopy__(self, memo: Dict[int, Any]) -> List[Any]:
        return thaw(self)


def freeze(value: Any) -> Any:
    """Return a deep read-only view of a JSON-shaped value."""
    if isinstance(value, dict):
        return FrozenDict((key, freeze(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return FrozenList(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Return a deep mutable copy of a (possibly frozen) JSON-shaped value."""
    if isinstance(value, dict):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    return copy.deepcopy(value)
