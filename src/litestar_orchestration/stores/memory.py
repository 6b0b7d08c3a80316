"""In-memory instance store.

Useful for tests and single-process deployments. Every load returns a deep copy
and every save stores one, so callers never share state with the store.
"""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING

from litestar_orchestration.core.models import Page
from litestar_orchestration.exceptions import ConcurrencyConflictError, WorkflowInstanceNotFoundError

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from litestar_orchestration.core.models import HistoryEntry, WorkflowInstance
    from litestar_orchestration.dto import InstanceQuery

__all__ = ["InMemoryInstanceStore"]


class InMemoryInstanceStore:
    """Instance store keeping snapshots in a dict guarded by an ``asyncio.Lock``.

    Example:
        >>> store = InMemoryInstanceStore()
        >>> await store.save(instance)
        >>> loaded = await store.load(instance.id)
    """

    def __init__(self) -> None:
        self._instances: dict[UUID, WorkflowInstance] = {}
        self._lock = asyncio.Lock()

    async def load(self, instance_id: UUID) -> WorkflowInstance:
        async with self._lock:
            try:
                return copy.deepcopy(self._instances[instance_id])
            except KeyError:
                raise WorkflowInstanceNotFoundError(instance_id) from None

    async def save(self, instance: WorkflowInstance) -> None:
        async with self._lock:
            stored = self._instances.get(instance.id)
            stored_revision = stored.revision if stored else 0
            if stored_revision != instance.revision:
                raise ConcurrencyConflictError(instance.id, instance.revision, stored_revision)
            instance.revision += 1
            self._instances[instance.id] = copy.deepcopy(instance)

    async def find_by_bookmark(
        self,
        name: str,
        correlation_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[UUID]:
        async with self._lock:
            return [
                instance.id
                for instance in self._instances.values()
                if instance.get_bookmark(name) is not None
                and (correlation_id is None or instance.correlation_id == correlation_id)
                and (workflow_id is None or instance.workflow_id == workflow_id)
            ]

    async def find_due(self, now: datetime) -> list[UUID]:
        async with self._lock:
            due = [i for i in self._instances.values() if i.wake_at is not None and i.wake_at <= now]
        due.sort(key=lambda i: (i.wake_at, -i.priority))
        return [i.id for i in due]

    async def query(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        query.validate()
        async with self._lock:
            matches = [i for i in self._instances.values() if _matches(i, query)]

        def sort_key(instance: WorkflowInstance) -> tuple[bool, object]:
            value = getattr(instance, query.sort_by)
            # Missing values sort last in either direction.
            return (value is None) != query.descending, value if value is not None else 0

        matches.sort(key=sort_key, reverse=query.descending)
        items = [copy.deepcopy(i) for i in matches[query.offset : query.offset + query.page_size]]
        return Page(items=items, total=len(matches), page_number=query.page_number, page_size=query.page_size)

    async def get_history(self, instance_id: UUID) -> list[HistoryEntry]:
        instance = await self.load(instance_id)
        return instance.history

    async def delete(self, instance_id: UUID) -> None:
        async with self._lock:
            self._instances.pop(instance_id, None)


def _matches(instance: WorkflowInstance, query: InstanceQuery) -> bool:
    if query.statuses and instance.status not in query.statuses:
        return False
    if query.workflow_id is not None and instance.workflow_id != query.workflow_id:
        return False
    if query.correlation_id is not None and instance.correlation_id != query.correlation_id:
        return False
    if query.created_after is not None and instance.created_at < query.created_after:
        return False
    return query.created_before is None or instance.created_at <= query.created_before
