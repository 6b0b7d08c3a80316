"""Resolution of nodes to activity executors."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, TypeAlias

from litestar_orchestration.activities.base import EndExecutor, StartExecutor
from litestar_orchestration.activities.event import EventExecutor
from litestar_orchestration.activities.gateway import ExclusiveGatewayExecutor, ParallelGatewayExecutor
from litestar_orchestration.activities.task import TaskExecutor, TaskHandlerRegistry
from litestar_orchestration.core.types import NodeType

if TYPE_CHECKING:
    from litestar_orchestration.core.definition import Node
    from litestar_orchestration.core.protocols import ActivityExecutor

__all__ = ["ExecutorFactory", "ExecutorRegistry"]

ExecutorFactory: TypeAlias = Callable[["Node"], "ActivityExecutor"]


class ExecutorRegistry:
    """Maps node types to executor factories.

    Every node type has a built-in factory; task nodes are bound to the handler
    named in their configuration. Factories may be replaced per node type to plug
    in custom executors.

    Attributes:
        tasks: Registry of task handlers used by the built-in task factory.
    """

    def __init__(self, tasks: TaskHandlerRegistry | None = None) -> None:
        self.tasks = tasks or TaskHandlerRegistry()
        self._factories: dict[NodeType, ExecutorFactory] = {
            NodeType.START: StartExecutor,
            NodeType.END: EndExecutor,
            NodeType.TASK: lambda node: TaskExecutor.from_registry(node, self.tasks),
            NodeType.EXCLUSIVE_GATEWAY: ExclusiveGatewayExecutor,
            NodeType.PARALLEL_GATEWAY: ParallelGatewayExecutor,
            NodeType.EVENT: EventExecutor,
        }

    def register(self, node_type: NodeType | str, factory: ExecutorFactory) -> None:
        """Replace the factory used for ``node_type``."""
        self._factories[NodeType.parse(node_type)] = factory

    def resolve(self, node: Node) -> ActivityExecutor:
        """Build the executor for ``node``.

        Raises:
            KeyError: If the node references a task handler that is not registered.
        """
        return self._factories[node.type](node)
