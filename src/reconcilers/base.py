"""
Reconcile Node Base - Contract shared by every reconcile node.

A reconciliation is a tree of nodes. Each node receives the execution
context and the parent object, does its part of the work, and returns a
ReconcileResult or raises. Nodes nest explicitly: composite nodes hold their
children and call them directly.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from errors import ReconcileCancelledError, ReconcileError, UserFunctionError
from events import EventRecorder, EventType
from resources import ResourceRef
from store import ExternalStore
from tracker import DependencyTracker

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Requeue directive returned by a node.

    ``requeue`` asks for an immediate requeue; ``requeue_after`` asks for one
    after that many seconds. Neither means no requeue beyond the scheduler's
    normal resync.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None

    @classmethod
    def immediate(cls) -> "ReconcileResult":
        return cls(requeue=True)

    @classmethod
    def after(cls, seconds: float) -> "ReconcileResult":
        return cls(requeue_after=seconds)

    @property
    def is_empty(self) -> bool:
        return not self.requeue and not self.requeue_after

    def merge(self, other: Optional["ReconcileResult"]) -> "ReconcileResult":
        """Combine two directives, keeping the more urgent one."""
        if other is None:
            return self
        if self.requeue or other.requeue:
            return ReconcileResult(requeue=True)
        delays = [
            delay
            for delay in (self.requeue_after, other.requeue_after)
            if delay is not None and delay > 0
        ]
        return ReconcileResult(requeue_after=min(delays) if delays else None)


class Stash:
    """Scratch values shared by the nodes of one reconciliation."""

    def __init__(self):
        self._values: Dict[str, Any] = {}

    def stash(self, key: str, value: Any) -> None:
        self._values[key] = value

    def retrieve(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def retrieve_or_raise(self, key: str) -> Any:
        """Return a stashed value, raising KeyError when it was never stashed."""
        if key not in self._values:
            raise KeyError(f"Nothing stashed under '{key}'")
        return self._values[key]

    def clear(self, key: str) -> None:
        self._values.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._values


@dataclass
class Services:
    """External-service handles nodes act through."""

    store: ExternalStore
    recorder: Optional[EventRecorder] = None
    tracker: Optional[DependencyTracker] = None


class ReconcileContext:
    """
    Execution context threaded through every node call.

    Owned by one in-flight reconciliation. Holds the current services, the
    stash, the reference of the parent being reconciled and the shutdown
    event used to abort a reconciliation between nodes. Derived contexts
    share the stash; the context they were derived from is never changed.
    """

    def __init__(
        self,
        services: Services,
        stash: Optional[Stash] = None,
        parent_ref: Optional[ResourceRef] = None,
        original_services: Optional[Services] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.services = services
        self.stash = stash if stash is not None else Stash()
        self.parent_ref = parent_ref
        self.original_services = original_services or services
        self.shutdown_event = shutdown_event

    @property
    def store(self) -> ExternalStore:
        return self.services.store

    @property
    def recorder(self) -> Optional[EventRecorder]:
        return self.services.recorder

    @property
    def tracker(self) -> Optional[DependencyTracker]:
        return self.services.tracker

    def with_services(self, services: Services) -> "ReconcileContext":
        """Return a derived context using ``services``."""
        return ReconcileContext(
            services=services,
            stash=self.stash,
            parent_ref=self.parent_ref,
            original_services=self.original_services,
            shutdown_event=self.shutdown_event,
        )

    def track(self, tracked: ResourceRef, ttl: Optional[float] = None) -> None:
        """
        Requeue the parent when ``tracked`` changes.

        No-op when the context has no tracker or no parent reference.
        """
        if self.tracker is None or self.parent_ref is None:
            return
        self.tracker.track(self.parent_ref, tracked, ttl)

    async def record_event(
        self,
        obj: Dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        if self.recorder is not None:
            await self.recorder.event(obj, event_type, reason, message)

    def raise_if_cancelled(self) -> None:
        if self.shutdown_event is not None and self.shutdown_event.is_set():
            raise ReconcileCancelledError(
                f"Reconciliation of {self.parent_ref} cancelled by shutdown",
                ref=self.parent_ref,
            )


class ReconcileNode(ABC):
    """
    Abstract base class for reconcile nodes.

    The node set is closed: Sync, Sequence, CastParent, WithConfig,
    WithFinalizer and ChildReconciler. Nodes decide for themselves what to
    do for a terminating parent.
    """

    name: str = "ReconcileNode"

    @abstractmethod
    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        """
        Reconcile the parent.

        Args:
            ctx: Execution context of this reconciliation.
            parent: The parent object. Nodes may change its status.

        Returns:
            ReconcileResult with the requeue directive.

        Raises:
            ReconcileError: On the first failure; nothing after it runs.
        """
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


async def call_user(fn: Callable[..., Any], *args: Any) -> Any:
    """
    Call a caller-supplied function, awaiting it if it is async.

    ReconcileErrors pass through unchanged. Any other exception is wrapped
    in UserFunctionError with the original as its cause.
    """
    try:
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
    except ReconcileError:
        raise
    except Exception as e:
        name = getattr(fn, "__qualname__", repr(fn))
        raise UserFunctionError(f"{name} failed: {e}") from e
    return result


def as_result(value: Any, source: str) -> ReconcileResult:
    """Accept None or a ReconcileResult returned by a user function."""
    if value is None:
        return ReconcileResult()
    if isinstance(value, ReconcileResult):
        return value
    raise UserFunctionError(
        f"{source} returned {type(value).__name__}, expected ReconcileResult or None"
    )
