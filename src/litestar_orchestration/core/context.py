"""Activity execution context.

This module provides the :class:`ActivityContext` handed to activity executors. It
is a read-mostly view of the instance for the duration of one activity call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping
    from uuid import UUID

    from litestar_orchestration.core.definition import Node
    from litestar_orchestration.core.expressions import ExpressionEvaluator
    from litestar_orchestration.engine.graph import WorkflowGraph

__all__ = ["ActivityContext"]


@dataclass
class ActivityContext:
    """Context passed to an activity executor.

    Attributes:
        instance_id: The instance being advanced.
        workflow_id: Identifier of the instance's definition.
        node: The node being executed.
        token_id: The branch token executing the node.
        inputs: Values produced by the node's input mappings, or a copy of the
            variables when the node declares none.
        variables: Read-only view of the instance variables. The instance input is
            visible as ``input`` unless a variable shadows it.
        graph: The compiled graph, used by gateways to route.
        evaluator: Expression evaluator shared by the engine.
        attempt: Failed attempts of this activity so far.
        correlation_id: The instance's correlation id.
        cancellation: Set when the instance is cancelled or terminated while the
            activity runs. Long running executors should check it.

    Example:
        >>> async def notify(context: ActivityContext) -> dict[str, Any]:
        ...     if context.cancelled:
        ...         return {}
        ...     await send(context.get("patient_id"))
        ...     return {"notified": True}
    """

    instance_id: UUID
    workflow_id: str
    node: Node
    token_id: str
    inputs: dict[str, Any]
    variables: Mapping[str, Any]
    graph: WorkflowGraph
    evaluator: ExpressionEvaluator
    attempt: int = 0
    correlation_id: str | None = None
    cancellation: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.variables = MappingProxyType(dict(self.variables))

    def get(self, key: str, default: Any = None) -> Any:
        """Look up ``key`` in the inputs, falling back to the variables."""
        if key in self.inputs:
            return self.inputs[key]
        return self.variables.get(key, default)

    @property
    def config(self) -> dict[str, Any]:
        return self.node.config

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_set()
