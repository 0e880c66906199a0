"""
Status Conditions - Helpers for ``status.conditions``.

Conditions are dicts with ``type``, ``status``, ``reason``, ``message``,
``lastTransitionTime`` and ``observedGeneration`` keys, kept in an ordered
list that is unique by type. Nodes set conditions freely during a
reconciliation; the parent controller normalizes transition times against the
persisted value afterwards.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from resources import now_rfc3339


class ConditionStatus(str, Enum):
    """Allowed values of a condition's status field."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


def get_condition(
    status: Optional[Dict[str, Any]], condition_type: str
) -> Optional[Dict[str, Any]]:
    """Return the condition of the given type, or None."""
    for condition in (status or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    status: Dict[str, Any],
    condition_type: str,
    condition_status: Any,
    reason: str = "",
    message: str = "",
) -> Dict[str, Any]:
    """
    Set a condition on a status dict, replacing any entry of the same type.

    The entry keeps its position in the list. Transition time and observed
    generation are carried over untouched; the parent controller restamps
    them when the reconciliation finishes.

    Args:
        status: The status dict to modify.
        condition_type: Condition type, e.g. ``Ready``.
        condition_status: A ConditionStatus or its string value.
        reason: Machine readable CamelCase reason.
        message: Human readable message.

    Returns:
        The stored condition dict.
    """
    value = ConditionStatus(condition_status).value
    conditions = status.get("conditions") or []
    status["conditions"] = conditions

    for index, existing in enumerate(conditions):
        if existing.get("type") == condition_type:
            entry = dict(existing)
            entry.update(status=value, reason=reason, message=message)
            conditions[index] = entry
            return entry

    entry = {
        "type": condition_type,
        "status": value,
        "reason": reason,
        "message": message,
    }
    conditions.append(entry)
    return entry


def normalize_conditions(
    status: Dict[str, Any],
    previous: Optional[Dict[str, Any]],
    generation: int,
    now: Optional[str] = None,
) -> None:
    """
    Restamp conditions against the previously persisted status.

    A condition whose status, reason and message match the persisted
    condition of the same type keeps its ``lastTransitionTime``; anything
    else transitions at ``now``. Every condition records ``generation`` as
    its observed generation. Duplicate types collapse to the last value,
    at the position of the first.
    """
    if "conditions" not in status:
        return

    now = now or now_rfc3339()
    previous_by_type = {
        condition.get("type"): condition
        for condition in (previous or {}).get("conditions") or []
    }

    normalized: List[Dict[str, Any]] = []
    positions: Dict[str, int] = {}
    for condition in status.get("conditions") or []:
        entry = dict(condition)
        prior = previous_by_type.get(entry.get("type"))
        unchanged = prior is not None and all(
            prior.get(field) == entry.get(field)
            for field in ("status", "reason", "message")
        )
        if unchanged and prior.get("lastTransitionTime"):
            entry["lastTransitionTime"] = prior["lastTransitionTime"]
        else:
            entry["lastTransitionTime"] = now
        entry["observedGeneration"] = generation

        condition_type = entry.get("type")
        if condition_type in positions:
            normalized[positions[condition_type]] = entry
        else:
            positions[condition_type] = len(normalized)
            normalized.append(entry)

    status["conditions"] = normalized


class ConditionManager:
    """Marks conditions on one status, keeping the happy condition in step."""

    def __init__(self, condition_set: "ConditionSet", status: Dict[str, Any]):
        self.condition_set = condition_set
        self.status = status

    def get(self, condition_type: str) -> Optional[Dict[str, Any]]:
        return get_condition(self.status, condition_type)

    def is_happy(self) -> bool:
        happy = self.get(self.condition_set.happy)
        return happy is not None and happy.get("status") == ConditionStatus.TRUE

    def mark_true(self, condition_type: str, reason: str = "", message: str = ""):
        set_condition(self.status, condition_type, ConditionStatus.TRUE, reason, message)
        if condition_type in self.condition_set.dependents:
            self._recompute_happy()

    def mark_false(self, condition_type: str, reason: str, message: str = ""):
        set_condition(
            self.status, condition_type, ConditionStatus.FALSE, reason, message
        )
        if condition_type in self.condition_set.dependents:
            set_condition(
                self.status,
                self.condition_set.happy,
                ConditionStatus.FALSE,
                reason,
                message,
            )

    def mark_unknown(self, condition_type: str, reason: str, message: str = ""):
        set_condition(
            self.status, condition_type, ConditionStatus.UNKNOWN, reason, message
        )
        if condition_type not in self.condition_set.dependents:
            return
        # a False dependent keeps the happy condition False
        for dependent in self.condition_set.dependents:
            condition = self.get(dependent)
            if condition is not None and condition.get("status") == ConditionStatus.FALSE:
                return
        set_condition(
            self.status,
            self.condition_set.happy,
            ConditionStatus.UNKNOWN,
            reason,
            message,
        )

    def _recompute_happy(self) -> None:
        for dependent in self.condition_set.dependents:
            condition = self.get(dependent)
            if condition is None or condition.get("status") != ConditionStatus.TRUE:
                return
        set_condition(
            self.status,
            self.condition_set.happy,
            ConditionStatus.TRUE,
            self.condition_set.happy,
        )


class ConditionSet:
    """
    A happy condition plus the dependent conditions that determine it.

    The happy condition is True once every dependent is True, False while
    any dependent is False and Unknown otherwise. A resource type declares
    its condition set so the parent controller can seed the conditions on
    first use.
    """

    def __init__(self, happy: str, *dependents: str):
        if happy in dependents:
            raise ValueError(f"Happy condition '{happy}' cannot depend on itself")
        self.happy = happy
        self.dependents = tuple(dependents)

    @property
    def types(self) -> List[str]:
        return [self.happy, *self.dependents]

    def initialize(self, status: Dict[str, Any]) -> None:
        """Add every missing condition of the set as Unknown."""
        for condition_type in self.types:
            if get_condition(status, condition_type) is None:
                set_condition(
                    status, condition_type, ConditionStatus.UNKNOWN, "Initializing"
                )

    def manage(self, status: Dict[str, Any]) -> ConditionManager:
        return ConditionManager(self, status)
