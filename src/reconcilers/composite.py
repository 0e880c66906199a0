"""
Composite Nodes - Sequencing, parent projection and context substitution.
"""

import copy
import logging
from typing import Any, Callable, Dict, Optional

from errors import ValidationError
from reconcilers.base import (
    ReconcileContext,
    ReconcileNode,
    ReconcileResult,
    Services,
    call_user,
)
from resources import freeze

logger = logging.getLogger(__name__)


class Sequence(ReconcileNode):
    """
    Run nodes one after another against the same parent.

    The first error stops the sequence and propagates unchanged. Requeue
    directives combine by urgency: immediate, then the shortest delay.
    """

    def __init__(self, *nodes: ReconcileNode, name: str = "Sequence"):
        self.nodes = list(nodes)
        self.name = name

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        aggregate = ReconcileResult()
        for node in self.nodes:
            ctx.raise_if_cancelled()
            logger.debug(f"{self.name}: running {node.name}")
            aggregate = aggregate.merge(await node.reconcile(ctx, parent))
        return aggregate


class CastParent(ReconcileNode):
    """
    Run a node against a projection of the parent.

    ``project(parent)`` receives a private copy of the parent and returns the
    projected value. Without ``reflect_back`` the nested node gets a deep
    read-only view: any mutation raises ValidationError. With
    ``reflect_back(parent, projection)`` the nested node gets a mutable
    projection, and after it succeeds the changes are written back onto the
    parent.
    """

    def __init__(
        self,
        project: Callable[[Dict[str, Any]], Any],
        node: ReconcileNode,
        reflect_back: Optional[Callable[[Dict[str, Any], Any], Any]] = None,
        name: str = "CastParent",
    ):
        self.project = project
        self.node = node
        self.reflect_back = reflect_back
        self.name = name

    @property
    def read_only(self) -> bool:
        return self.reflect_back is None

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        projection = await call_user(self.project, copy.deepcopy(parent))
        if not isinstance(projection, dict):
            raise ValidationError(
                f"{self.name}: projection must be an object, "
                f"got {type(projection).__name__}",
                ref=ctx.parent_ref,
            )

        if self.read_only:
            return await self.node.reconcile(ctx, freeze(projection))

        result = await self.node.reconcile(ctx, projection)
        await call_user(self.reflect_back, parent, projection)
        return result


class WithConfig(ReconcileNode):
    """
    Run a node with substituted external services.

    ``config(ctx)`` returns the Services for the nested node; it may be
    async and may fail. The substitution applies to the nested branch only.
    The controller's services stay reachable as ``ctx.original_services``,
    so a nested config can derive from them rather than from the services
    an outer WithConfig substituted.
    """

    def __init__(
        self,
        config: Callable[[ReconcileContext], Any],
        node: ReconcileNode,
        name: str = "WithConfig",
    ):
        self.config = config
        self.node = node
        self.name = name

    async def reconcile(
        self, ctx: ReconcileContext, parent: Dict[str, Any]
    ) -> ReconcileResult:
        services = await call_user(self.config, ctx)
        if not isinstance(services, Services):
            raise ValidationError(
                f"{self.name}: config returned {type(services).__name__}, "
                "expected Services",
                ref=ctx.parent_ref,
            )
        return await self.node.reconcile(ctx.with_services(services), parent)
