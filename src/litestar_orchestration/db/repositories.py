"""Repository implementations for instance persistence.

This module provides async repositories for the orchestration models using
advanced-alchemy's repository pattern.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, delete, func, select

from litestar_orchestration.db.models import WorkflowBookmarkModel, WorkflowHistoryModel, WorkflowInstanceModel

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

__all__ = [
    "WorkflowBookmarkRepository",
    "WorkflowHistoryRepository",
    "WorkflowInstanceRepository",
]


class WorkflowInstanceRepository(SQLAlchemyAsyncRepository[WorkflowInstanceModel]):
    """Repository for workflow instance rows.

    Provides the lookups the scheduler and router need: due instances and
    instances waiting on a bookmark.
    """

    model_type = WorkflowInstanceModel

    async def find_due(self, now: datetime) -> Sequence[UUID]:
        """Find instances whose wake time has passed.

        Args:
            now: The current time.

        Returns:
            Instance ids, earliest due first, higher priority first on ties.
        """
        stmt = (
            select(WorkflowInstanceModel.id)
            .where(WorkflowInstanceModel.wake_at <= now)
            .order_by(WorkflowInstanceModel.wake_at, WorkflowInstanceModel.priority.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_by_bookmark(
        self,
        name: str,
        correlation_id: str | None = None,
        workflow_id: str | None = None,
    ) -> Sequence[UUID]:
        """Find instances holding a bookmark.

        Args:
            name: The bookmark name.
            correlation_id: Optional correlation id filter.
            workflow_id: Optional workflow id filter.

        Returns:
            Ids of matching instances.
        """
        conditions = [WorkflowBookmarkModel.name == name]

        if correlation_id is not None:
            conditions.append(WorkflowInstanceModel.correlation_id == correlation_id)

        if workflow_id is not None:
            conditions.append(WorkflowInstanceModel.workflow_id == workflow_id)

        stmt = (
            select(WorkflowInstanceModel.id)
            .join(WorkflowBookmarkModel, WorkflowBookmarkModel.instance_id == WorkflowInstanceModel.id)
            .where(and_(*conditions))
            .order_by(WorkflowInstanceModel.priority.desc(), WorkflowInstanceModel.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_revision(self, instance_id: UUID) -> int | None:
        stmt = select(WorkflowInstanceModel.revision).where(WorkflowInstanceModel.id == instance_id)
        return await self.session.scalar(stmt)


class WorkflowBookmarkRepository(SQLAlchemyAsyncRepository[WorkflowBookmarkModel]):
    """Repository for pending bookmarks."""

    model_type = WorkflowBookmarkModel

    async def find_by_instances(self, instance_ids: Sequence[UUID]) -> Sequence[WorkflowBookmarkModel]:
        """Find the bookmarks of several instances, oldest first."""
        if not instance_ids:
            return []
        stmt = (
            select(WorkflowBookmarkModel)
            .where(WorkflowBookmarkModel.instance_id.in_(instance_ids))
            .order_by(WorkflowBookmarkModel.recorded_at, WorkflowBookmarkModel.name)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def replace(self, instance_id: UUID, bookmarks: Sequence[WorkflowBookmarkModel]) -> None:
        """Replace every bookmark of an instance with ``bookmarks``."""
        stmt = delete(WorkflowBookmarkModel).where(WorkflowBookmarkModel.instance_id == instance_id)
        await self.session.execute(stmt)
        self.session.add_all(bookmarks)
        await self.session.flush()


class WorkflowHistoryRepository(SQLAlchemyAsyncRepository[WorkflowHistoryModel]):
    """Repository for execution history entries."""

    model_type = WorkflowHistoryModel

    async def find_by_instance(self, instance_id: UUID) -> Sequence[WorkflowHistoryModel]:
        """Find the history of an instance ordered by sequence."""
        stmt = (
            select(WorkflowHistoryModel)
            .where(WorkflowHistoryModel.instance_id == instance_id)
            .order_by(WorkflowHistoryModel.sequence)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def last_sequence(self, instance_id: UUID) -> int:
        """Highest recorded sequence of an instance, or 0 without history."""
        stmt = select(func.max(WorkflowHistoryModel.sequence)).where(WorkflowHistoryModel.instance_id == instance_id)
        return await self.session.scalar(stmt) or 0
