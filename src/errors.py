"""
Reconcile Errors - Error taxonomy shared by the store, nodes and controller.

Errors are raised, never returned. The ``retryable`` flag tells the hosting
scheduler whether backing off and trying again can help; the runtime itself
never retries.
"""

from typing import Any, Optional


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a resource."""

    retryable = True

    def __init__(self, message: str, ref: Optional[Any] = None):
        self.message = message
        self.ref = ref
        super().__init__(message)


class NotFoundError(ReconcileError):
    """Raised when the store has no object for a reference."""


class ConflictError(ReconcileError):
    """Raised when a write was qualified with a stale resource version."""


class AlreadyExistsError(ConflictError):
    """Raised when creating an object whose name is already taken."""


class ValidationError(ReconcileError):
    """
    Raised for configuration and ownership problems.

    Covers ambiguous child matches, mutation of a read-only projection and
    name collisions with foreign objects. Retrying without a change to the
    objects or the node configuration cannot succeed.
    """

    retryable = False


class TransientStoreError(ReconcileError):
    """Raised when the store could not be reached or failed server side."""


class UserFunctionError(ReconcileError):
    """Raised when a caller-supplied function fails with a non-reconcile error."""


class ReconcileCancelledError(ReconcileError):
    """Raised when a reconciliation is aborted by shutdown."""


def is_retryable(error: BaseException) -> bool:
    """Return whether a scheduler should requeue after ``error``."""
    if isinstance(error, ReconcileError):
        return error.retryable
    return True
