"""Core protocols for litestar-orchestration.

This module defines the Protocol-based interfaces for the engine's pluggable
collaborators: instance stores, activity executors and event buses. Using Protocol
allows duck typing while keeping type safety.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from litestar_orchestration.core.context import ActivityContext
    from litestar_orchestration.core.models import ExecutionResult, HistoryEntry, Page, WorkflowInstance
    from litestar_orchestration.dto import InstanceQuery

__all__ = ["ActivityExecutor", "EventBus", "InstanceStore"]


@runtime_checkable
class InstanceStore(Protocol):
    """Durable record of instance state, bookmarks and history.

    ``save`` is optimistic: every instance carries a ``revision``. Saving an
    instance whose revision no longer matches the stored one fails with
    :class:`~litestar_orchestration.exceptions.ConcurrencyConflictError` and
    never overwrites. A successful save increments ``instance.revision`` in place.
    New instances are saved with revision ``0``.

    Loaded instances are independent snapshots; mutating one has no effect on the
    store until it is saved.
    """

    async def load(self, instance_id: UUID) -> WorkflowInstance:
        """Load an instance snapshot.

        Raises:
            WorkflowInstanceNotFoundError: If the instance does not exist.
        """
        ...

    async def save(self, instance: WorkflowInstance) -> None:
        """Persist an instance.

        Raises:
            ConcurrencyConflictError: If the stored revision moved since load.
        """
        ...

    async def find_by_bookmark(
        self,
        name: str,
        correlation_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[UUID]:
        """Ids of instances holding a bookmark called ``name``."""
        ...

    async def find_due(self, now: datetime) -> list[UUID]:
        """Ids of instances whose scheduled start, timer or retry is due."""
        ...

    async def query(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        """List instances matching a query, one page at a time."""
        ...

    async def get_history(self, instance_id: UUID) -> list[HistoryEntry]:
        """Ordered history of an instance."""
        ...

    async def delete(self, instance_id: UUID) -> None:
        """Purge an instance with its bookmarks and history."""
        ...


@runtime_checkable
class ActivityExecutor(Protocol):
    """Handler for one node type.

    Executors are resolved once per node when a definition is compiled.
    ``compensate`` is only invoked during the compensating walk and must be
    idempotent. ``resume`` is invoked when a bookmark the executor suspended on is
    resumed; the returned result is treated like the result of ``execute``.
    """

    async def execute(self, context: ActivityContext) -> ExecutionResult: ...

    async def compensate(self, context: ActivityContext) -> None: ...

    async def resume(self, context: ActivityContext, payload: dict[str, Any]) -> ExecutionResult: ...


@runtime_checkable
class EventBus(Protocol):
    """Receives engine lifecycle events, e.g. ``workflow.completed``."""

    async def emit(self, event_type: str, **data: Any) -> None: ...
