"""Database persistence layer for litestar-orchestration.

This module provides SQLAlchemy models, repositories and the
:class:`SQLAlchemyInstanceStore` for persisting instances, their bookmarks and
their history.
"""

from __future__ import annotations

from litestar_orchestration.db.models import WorkflowBookmarkModel, WorkflowHistoryModel, WorkflowInstanceModel
from litestar_orchestration.db.repositories import (
    WorkflowBookmarkRepository,
    WorkflowHistoryRepository,
    WorkflowInstanceRepository,
)
from litestar_orchestration.db.store import SQLAlchemyInstanceStore

__all__ = [
    "SQLAlchemyInstanceStore",
    "WorkflowBookmarkModel",
    "WorkflowBookmarkRepository",
    "WorkflowHistoryModel",
    "WorkflowHistoryRepository",
    "WorkflowInstanceModel",
    "WorkflowInstanceRepository",
]
