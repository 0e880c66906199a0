"""
Sync Node - Runs caller functions against the parent.

The leaf of most reconcile trees. Active parents get the sync function,
terminating parents get the finalize function.
"""

import logging
from typing import Any, Callable, Dict, Optional

from reconcilers.base import (
    ReconcileContext,
    ReconcileNode,
    ReconcileResult,
    as_result,
    call_user,
)
from resources import is_terminating

logger = logging.getLogger(__name__)


class Sync(ReconcileNode):
    """
    Run ``sync(ctx, parent)`` for an active parent.

    For a terminating parent ``finalize(ctx, parent)`` runs instead, or
    after ``sync`` when ``sync_during_finalization`` is set. Either function
    may be async and may return a ReconcileResult.
    """

    def __init__(
        self,
        sync: Callable[[ReconcileContext, Dict[str, Any]], Any],
        finalize: Optional[Callable[[ReconcileContext, Dict[str, Any]], Any]] = None,
        sync_during_finalization: bool = False,
        name: str = "Sync",
    ):
        self.sync = sync
        self.finalize = finalize
        self.sync_during_finalization = sync_during_finalization
        self.name = name

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        if not is_terminating(parent):
            return as_result(await call_user(self.sync, ctx, parent), self.name)

        result = ReconcileResult()
        if self.sync_during_finalization:
            result = result.merge(
                as_result(await call_user(self.sync, ctx, parent), self.name)
            )
        if self.finalize is not None:
            logger.debug(f"{self.name}: finalizing {ctx.parent_ref}")
            result = result.merge(
                as_result(await call_user(self.finalize, ctx, parent), self.name)
            )
        return result
