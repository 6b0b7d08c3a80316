"""Gateway executors for workflow branching.

Gateways are pure: they only evaluate the conditions of their outgoing edges and
report the chosen edges back to the scheduler.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_orchestration.activities.base import BaseActivityExecutor
from litestar_orchestration.core.models import Completed, Faulted
from litestar_orchestration.core.types import NodeType
from litestar_orchestration.exceptions import ExpressionError, NoMatchingEdgeError

if TYPE_CHECKING:
    from litestar_orchestration.core.context import ActivityContext
    from litestar_orchestration.core.models import ExecutionResult

__all__ = ["ExclusiveGatewayExecutor", "ParallelGatewayExecutor"]


class ExclusiveGatewayExecutor(BaseActivityExecutor):
    """XOR gateway - exactly one path.

    Outgoing edges are evaluated in ascending priority and the first whose
    condition holds is taken; the default edge is the fallback.

    Example:
        Given edges ``[{cond: false, prio: 1}, {cond: true, prio: 2}, {isDefault}]``
        only the priority 2 edge fires.
    """

    node_type = NodeType.EXCLUSIVE_GATEWAY

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        try:
            edge = context.graph.select_exclusive(self.node.id, context.variables, context.evaluator)
        except (NoMatchingEdgeError, ExpressionError) as exc:
            return Faulted(exc.code, str(exc))
        return Completed(next_edges=(edge,))


class ParallelGatewayExecutor(BaseActivityExecutor):
    """AND gateway - all matching paths execute concurrently.

    As a split, every outgoing edge whose condition holds (every edge when none is
    conditional) starts its own branch token. As a join, the scheduler only runs
    this executor once every branch that can still arrive has arrived.
    """

    node_type = NodeType.PARALLEL_GATEWAY

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        try:
            edges = context.graph.select_parallel(self.node.id, context.variables, context.evaluator)
        except (NoMatchingEdgeError, ExpressionError) as exc:
            return Faulted(exc.code, str(exc))
        return Completed(next_edges=edges)
