"""SQLAlchemy backed instance store.

Every operation runs in its own session. Saves are conditional updates on the
instance's ``revision`` column, so a writer holding a stale snapshot never
overwrites newer state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from advanced_alchemy.filters import CollectionFilter, LimitOffset, OnBeforeAfter, OrderBy
from litestar.serialization import decode_json, encode_json
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from litestar_orchestration.core.models import (
    Bookmark,
    Fork,
    HistoryEntry,
    InstanceError,
    Page,
    Token,
    WorkflowInstance,
    utcnow,
)
from litestar_orchestration.db.models import WorkflowBookmarkModel, WorkflowHistoryModel, WorkflowInstanceModel
from litestar_orchestration.db.repositories import (
    WorkflowBookmarkRepository,
    WorkflowHistoryRepository,
    WorkflowInstanceRepository,
)
from litestar_orchestration.exceptions import ConcurrencyConflictError, WorkflowInstanceNotFoundError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from typing import Any
    from uuid import UUID

    from advanced_alchemy.filters import StatementFilter
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from litestar_orchestration.dto import InstanceQuery

__all__ = ["SQLAlchemyInstanceStore"]

logger = logging.getLogger(__name__)


class SQLAlchemyInstanceStore:
    """Instance store persisting to a relational database.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/clinic")
        >>> store = SQLAlchemyInstanceStore(async_sessionmaker(engine, expire_on_commit=False))
        >>> workflow_engine = WorkflowEngine(store=store)
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_maker: Factory for the sessions each operation runs in.
        """
        self.session_maker = session_maker

    async def load(self, instance_id: UUID) -> WorkflowInstance:
        async with self.session_maker() as session:
            model = await WorkflowInstanceRepository(session=session).get_one_or_none(id=instance_id)
            if model is None:
                raise WorkflowInstanceNotFoundError(instance_id)
            bookmarks = await WorkflowBookmarkRepository(session=session).find_by_instances([instance_id])
            history = await WorkflowHistoryRepository(session=session).find_by_instance(instance_id)
            return _to_instance(model, bookmarks, history)

    async def save(self, instance: WorkflowInstance) -> None:
        values = _instance_values(instance)
        try:
            async with self.session_maker() as session, session.begin():
                instances = WorkflowInstanceRepository(session=session)
                if instance.revision == 0:
                    if (actual := await instances.get_revision(instance.id)) is not None:
                        raise ConcurrencyConflictError(instance.id, instance.revision, actual)
                    model = WorkflowInstanceModel(id=instance.id, revision=1, created_at=instance.created_at, **values)
                    session.add(model)
                    await session.flush()
                else:
                    stmt = (
                        update(WorkflowInstanceModel)
                        .where(
                            WorkflowInstanceModel.id == instance.id,
                            WorkflowInstanceModel.revision == instance.revision,
                        )
                        .values(revision=instance.revision + 1, updated_at=utcnow(), **values)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        actual = await instances.get_revision(instance.id)
                        if actual is None:
                            raise WorkflowInstanceNotFoundError(instance.id)
                        raise ConcurrencyConflictError(instance.id, instance.revision, actual)

                await WorkflowBookmarkRepository(session=session).replace(
                    instance.id,
                    [_bookmark_model(instance.id, b) for b in instance.bookmarks],
                )
                history = WorkflowHistoryRepository(session=session)
                recorded = await history.last_sequence(instance.id)
                session.add_all(_history_model(instance.id, e) for e in instance.history if e.sequence > recorded)
        except IntegrityError as exc:
            # Two writers inserted the same new instance.
            raise ConcurrencyConflictError(instance.id, instance.revision) from exc
        instance.revision += 1

    async def find_by_bookmark(
        self,
        name: str,
        correlation_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[UUID]:
        async with self.session_maker() as session:
            repository = WorkflowInstanceRepository(session=session)
            return list(await repository.find_by_bookmark(name, correlation_id, workflow_id))

    async def find_due(self, now: datetime) -> list[UUID]:
        async with self.session_maker() as session:
            return list(await WorkflowInstanceRepository(session=session).find_due(now))

    async def query(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        """List instances. Snapshots in the page carry bookmarks but no history."""
        query.validate()
        filters: list[StatementFilter] = []
        if query.statuses:
            filters.append(CollectionFilter(field_name="status", values=list(query.statuses)))
        if query.created_after or query.created_before:
            filters.append(
                OnBeforeAfter(
                    field_name="created_at",
                    on_or_before=query.created_before,
                    on_or_after=query.created_after,
                )
            )
        filters.append(OrderBy(field_name=query.sort_by, sort_order="desc" if query.descending else "asc"))
        filters.append(LimitOffset(limit=query.page_size, offset=query.offset))
        conditions: dict[str, Any] = {}
        if query.workflow_id is not None:
            conditions["workflow_id"] = query.workflow_id
        if query.correlation_id is not None:
            conditions["correlation_id"] = query.correlation_id

        async with self.session_maker() as session:
            models, total = await WorkflowInstanceRepository(session=session).list_and_count(*filters, **conditions)
            bookmarks = await WorkflowBookmarkRepository(session=session).find_by_instances([m.id for m in models])
        items = [_to_instance(m, [b for b in bookmarks if b.instance_id == m.id], []) for m in models]
        return Page(items=items, total=total, page_number=query.page_number, page_size=query.page_size)

    async def get_history(self, instance_id: UUID) -> list[HistoryEntry]:
        async with self.session_maker() as session:
            if await WorkflowInstanceRepository(session=session).get_revision(instance_id) is None:
                raise WorkflowInstanceNotFoundError(instance_id)
            rows = await WorkflowHistoryRepository(session=session).find_by_instance(instance_id)
            return [_to_history_entry(row) for row in rows]

    async def delete(self, instance_id: UUID) -> None:
        async with self.session_maker() as session, session.begin():
            instances = WorkflowInstanceRepository(session=session)
            if await instances.get_revision(instance_id) is None:
                return
            await WorkflowBookmarkRepository(session=session).replace(instance_id, [])
            history = WorkflowHistoryRepository(session=session)
            for row in await history.find_by_instance(instance_id):
                await session.delete(row)
            await instances.delete(instance_id)
        logger.debug("Deleted instance %s", instance_id)


def _json_safe(value: Any) -> Any:
    """Reduce a value to plain JSON types. Datetimes become ISO 8601 strings and UUIDs strings."""
    return None if value is None else decode_json(encode_json(value))


def _instance_values(instance: WorkflowInstance) -> dict[str, Any]:
    return {
        "workflow_id": instance.workflow_id,
        "version": instance.version,
        "name": instance.name,
        "status": instance.status,
        "correlation_id": instance.correlation_id,
        "priority": instance.priority,
        "input": _json_safe(instance.input),
        "variables": _json_safe(instance.variables),
        "output": _json_safe(instance.output),
        "current_activity_id": instance.current_activity_id,
        "tokens": _json_safe([t.to_dict() for t in instance.tokens]),
        "forks": {fork_id: f.to_dict() for fork_id, f in instance.forks.items()},
        "compensation_log": list(instance.compensation_log),
        "error": instance.error.to_dict() if instance.error else None,
        "scheduled_start_time": instance.scheduled_start_time,
        "wake_at": instance.wake_at,
        "started_at": instance.started_at,
        "completed_at": instance.completed_at,
        "fault_count": instance.fault_count,
        "steps_since_input": instance.steps_since_input,
    }


def _bookmark_model(instance_id: UUID, bookmark: Bookmark) -> WorkflowBookmarkModel:
    return WorkflowBookmarkModel(
        instance_id=instance_id,
        name=bookmark.name,
        activity_id=bookmark.activity_id,
        token=bookmark.token,
        kind=bookmark.kind,
        recorded_at=bookmark.created_at,
        due_at=bookmark.due_at,
        boundary_index=bookmark.boundary_index,
    )


def _history_model(instance_id: UUID, entry: HistoryEntry) -> WorkflowHistoryModel:
    return WorkflowHistoryModel(
        instance_id=instance_id,
        sequence=entry.sequence,
        type=entry.type,
        timestamp=entry.timestamp,
        activity_id=entry.activity_id,
        activity_name=entry.activity_name,
        activity_type=entry.activity_type,
        duration_ms=entry.duration_ms,
        input=_json_safe(entry.input),
        output=_json_safe(entry.output),
        error=_json_safe(entry.error),
        terminated=entry.terminated,
        reason=entry.reason,
    )


def _to_history_entry(row: WorkflowHistoryModel) -> HistoryEntry:
    return HistoryEntry(
        sequence=row.sequence,
        type=row.type,
        timestamp=row.timestamp,
        activity_id=row.activity_id,
        activity_name=row.activity_name,
        activity_type=row.activity_type,
        duration_ms=row.duration_ms,
        input=row.input,
        output=row.output,
        error=row.error,
        terminated=row.terminated,
        reason=row.reason,
    )


def _to_instance(
    model: WorkflowInstanceModel,
    bookmarks: Sequence[WorkflowBookmarkModel],
    history: Sequence[WorkflowHistoryModel],
) -> WorkflowInstance:
    return WorkflowInstance(
        id=model.id,
        workflow_id=model.workflow_id,
        version=model.version,
        name=model.name,
        status=model.status,
        correlation_id=model.correlation_id,
        priority=model.priority,
        input=dict(model.input or {}),
        variables=dict(model.variables or {}),
        output=model.output,
        current_activity_id=model.current_activity_id,
        bookmarks=[
            Bookmark(
                name=b.name,
                activity_id=b.activity_id,
                token=b.token,
                created_at=b.recorded_at,
                kind=b.kind,
                due_at=b.due_at,
                boundary_index=b.boundary_index,
            )
            for b in bookmarks
        ],
        history=[_to_history_entry(row) for row in history],
        tokens=[Token.from_dict(t) for t in model.tokens or []],
        forks={fork_id: Fork.from_dict(f) for fork_id, f in (model.forks or {}).items()},
        compensation_log=list(model.compensation_log or []),
        error=InstanceError.from_dict(model.error) if model.error else None,
        scheduled_start_time=model.scheduled_start_time,
        wake_at=model.wake_at,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        fault_count=model.fault_count,
        steps_since_input=model.steps_since_input,
        revision=model.revision,
    )
