"""Base activity executor implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from litestar_orchestration.core.models import Completed
from litestar_orchestration.core.types import NodeType

if TYPE_CHECKING:
    from litestar_orchestration.core.context import ActivityContext
    from litestar_orchestration.core.definition import Node
    from litestar_orchestration.core.models import ExecutionResult

__all__ = ["BaseActivityExecutor", "EndExecutor", "StartExecutor"]


class BaseActivityExecutor:
    """Base implementation with defaults for every activity executor.

    An executor is bound to a single node when a definition is compiled. Subclass
    this and override :meth:`execute` to create a custom executor; register it for
    a node type on the :class:`~litestar_orchestration.activities.registry.ExecutorRegistry`.
    """

    node_type: ClassVar[NodeType]
    """Node type this executor handles."""

    def __init__(self, node: Node) -> None:
        """Initialize the executor.

        Args:
            node: The node this executor runs.
        """
        self.node = node

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        """Run the activity.

        Args:
            context: The activity execution context.

        Returns:
            ``Completed``, ``Suspended`` or ``Faulted``.

        Raises:
            NotImplementedError: Must be implemented by subclasses.
        """
        msg = f"Executor for node {self.node.id} must implement execute()"
        raise NotImplementedError(msg)

    async def compensate(self, context: ActivityContext) -> None:
        """Undo the activity's effects. Does nothing by default.

        Args:
            context: The activity execution context.
        """

    async def resume(self, context: ActivityContext, payload: dict[str, Any]) -> ExecutionResult:
        """Finish a suspended activity with the payload of the resuming signal.

        The default completes with the payload as output.

        Args:
            context: The activity execution context.
            payload: Payload delivered by the signal.

        Returns:
            The result of the activity.
        """
        return Completed(output=dict(payload))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(node={self.node.id!r})"


class StartExecutor(BaseActivityExecutor):
    """Entry point of a workflow. Completes immediately."""

    node_type = NodeType.START

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        return Completed()


class EndExecutor(BaseActivityExecutor):
    """Terminal node. Completes immediately; the scheduler retires the token."""

    node_type = NodeType.END

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        return Completed()
