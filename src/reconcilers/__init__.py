"""
Reconcile nodes package.

Reconcile trees are built by nesting these nodes and handing the root to a
ParentController.
"""

from reconcilers.base import (
    ReconcileContext,
    ReconcileNode,
    ReconcileResult,
    Services,
    Stash,
)
from reconcilers.child import ChildReconciler
from reconcilers.composite import CastParent, Sequence, WithConfig
from reconcilers.finalizers import WithFinalizer, add_finalizer, clear_finalizer
from reconcilers.sync import Sync

__all__ = [
    "CastParent",
    "ChildReconciler",
    "ReconcileContext",
    "ReconcileNode",
    "ReconcileResult",
    "Sequence",
    "Services",
    "Stash",
    "Sync",
    "WithConfig",
    "WithFinalizer",
    "add_finalizer",
    "clear_finalizer",
]
