"""Task executors that run externally supplied handlers.

Task handlers are plain callables registered by name on a
:class:`TaskHandlerRegistry`. A task node names its handler in
``config["handler"]``; the handler is resolved when the definition is published.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeAlias

from litestar_orchestration.activities.base import BaseActivityExecutor
from litestar_orchestration.core.models import Completed, Faulted, Suspended
from litestar_orchestration.core.types import NodeType

if TYPE_CHECKING:
    from litestar_orchestration.core.context import ActivityContext
    from litestar_orchestration.core.definition import Node
    from litestar_orchestration.core.models import ExecutionResult

__all__ = [
    "ASYNC_ACTIVITY_BOOKMARK",
    "CompensationHandler",
    "TaskExecutor",
    "TaskHandler",
    "TaskHandlerRegistry",
]

ASYNC_ACTIVITY_BOOKMARK = "__activity_async__"
"""Bookmark a handler suspends on to finish later through the signal path."""

TaskHandler: TypeAlias = Callable[["ActivityContext"], "Awaitable[Any] | Any"]
CompensationHandler: TypeAlias = Callable[["ActivityContext"], "Awaitable[None] | None"]


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class TaskHandlerRegistry:
    """Named task handlers and their optional compensation handlers.

    Example:
        >>> tasks = TaskHandlerRegistry()
        >>> @tasks.task("reserve_bed", compensate=release_bed)
        ... async def reserve_bed(context: ActivityContext) -> dict[str, Any]:
        ...     return {"bed": await beds.reserve(context.get("ward"))}
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[TaskHandler, CompensationHandler | None]] = {}

    def register(
        self,
        name: str,
        handler: TaskHandler,
        compensate: CompensationHandler | None = None,
    ) -> None:
        """Register ``handler`` under ``name``, replacing any previous one.

        Args:
            name: Name task nodes refer to through ``config["handler"]``.
            handler: Sync or async callable receiving the activity context. It may
                return a dict of output variables, an execution result, or None.
            compensate: Optional callable that undoes the handler's effects.
        """
        self._handlers[name] = (handler, compensate)

    def task(
        self,
        name: str | None = None,
        compensate: CompensationHandler | None = None,
    ) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`. Defaults the name to the function name."""

        def decorator(func: TaskHandler) -> TaskHandler:
            self.register(name or func.__name__, func, compensate)
            return func

        return decorator

    def get(self, name: str) -> tuple[TaskHandler, CompensationHandler | None]:
        """Look up a handler and its compensation handler.

        Raises:
            KeyError: If no handler is registered under ``name``.
        """
        if name not in self._handlers:
            msg = f"Task handler '{name}' is not registered"
            raise KeyError(msg)
        return self._handlers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class TaskExecutor(BaseActivityExecutor):
    """Runs a registered task handler.

    Node configuration:
        handler: Name of the task handler.
        compensation_handler: Optional name of a handler whose callable is used as
            compensation, instead of the one registered with ``handler``.
    """

    node_type = NodeType.TASK

    def __init__(
        self,
        node: Node,
        handler: TaskHandler,
        compensation: CompensationHandler | None = None,
    ) -> None:
        super().__init__(node)
        self.handler = handler
        self.compensation = compensation

    @classmethod
    def from_registry(cls, node: Node, tasks: TaskHandlerRegistry) -> TaskExecutor:
        """Resolve the node's handlers from ``tasks``.

        Raises:
            KeyError: If a referenced handler is not registered.
        """
        handler, compensation = tasks.get(node.config["handler"])
        if override := node.config.get("compensation_handler"):
            compensation = tasks.get(override)[0]
        return cls(node, handler, compensation)

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        result = await _call(self.handler, context)
        if isinstance(result, (Completed, Suspended, Faulted)):
            return result
        if result is None:
            return Completed()
        if isinstance(result, dict):
            return Completed(output=result)
        return Completed(output={"result": result})

    async def compensate(self, context: ActivityContext) -> None:
        if self.compensation is not None:
            await _call(self.compensation, context)
