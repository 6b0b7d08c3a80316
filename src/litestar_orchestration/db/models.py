"""SQLAlchemy models for instance persistence.

This module defines the database models backing :class:`SQLAlchemyInstanceStore`:
- WorkflowInstanceModel: Instance state, including tokens and forks as JSON
- WorkflowBookmarkModel: Pending bookmarks, indexed for signal lookup
- WorkflowHistoryModel: Append-only execution history
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase, UUIDBase
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import JSON, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from litestar_orchestration.core.types import BookmarkKind, HistoryEntryType, InstanceStatus

__all__ = [
    "WorkflowBookmarkModel",
    "WorkflowHistoryModel",
    "WorkflowInstanceModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class WorkflowInstanceModel(UUIDAuditBase):
    """Persisted state of a workflow instance.

    Attributes:
        workflow_id: Identifier of the definition.
        version: Version of the definition the instance runs.
        name: Display name.
        status: Current status.
        correlation_id: Caller supplied key used to target signals.
        priority: Scheduling priority.
        revision: Optimistic concurrency counter; every save bumps it.
        input: Input the instance was started with.
        variables: Current variables.
        output: Output projected on completion.
        current_activity_id: Node of the most recently scheduled token.
        tokens: Serialized branch tokens.
        forks: Serialized fork bookkeeping keyed by fork id.
        compensation_log: Completed node ids in execution order.
        error: Serialized last error.
        scheduled_start_time: The instance stays pending until this time.
        wake_at: Earliest due time, polled by the scheduler.
        started_at: When the instance started running.
        completed_at: When the instance reached a final or faulted status.
        fault_count: Times the instance was retried after faulting.
        steps_since_input: Activities run since the last external input.
    """

    __tablename__ = "orchestration_instances"
    __table_args__ = (
        Index("ix_orchestration_instances_status", "status"),
        Index("ix_orchestration_instances_workflow", "workflow_id", "version"),
        Index("ix_orchestration_instances_correlation_id", "correlation_id"),
        Index("ix_orchestration_instances_wake_at", "wake_at"),
    )

    workflow_id: Mapped[str] = mapped_column(String(100))
    version: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[InstanceStatus] = mapped_column(
        Enum(InstanceStatus, native_enum=False, length=50),
        default=InstanceStatus.PENDING,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=50)
    revision: Mapped[int] = mapped_column(Integer, default=1)
    input: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    variables: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    current_activity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tokens: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    forks: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    compensation_log: Mapped[list[str]] = mapped_column(JSONType, default=list)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    scheduled_start_time: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    wake_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    fault_count: Mapped[int] = mapped_column(Integer, default=0)
    steps_since_input: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    bookmarks: Mapped[list[WorkflowBookmarkModel]] = relationship(
        back_populates="instance",
        lazy="noload",
        passive_deletes=True,
    )
    history: Mapped[list[WorkflowHistoryModel]] = relationship(
        back_populates="instance",
        lazy="noload",
        passive_deletes=True,
        order_by="WorkflowHistoryModel.sequence",
    )


class WorkflowBookmarkModel(UUIDBase):
    """A pending bookmark of an instance.

    Attributes:
        instance_id: Foreign key to the instance.
        name: Bookmark name, unique per instance.
        activity_id: The node that is waiting.
        token: The waiting branch token.
        kind: What the bookmark waits for.
        recorded_at: When the bookmark was recorded.
        due_at: When set, the bookmark fires itself at this time.
        boundary_index: Index of the boundary event the bookmark belongs to.
    """

    __tablename__ = "orchestration_bookmarks"
    __table_args__ = (
        Index("ix_orchestration_bookmarks_instance_name", "instance_id", "name", unique=True),
        Index("ix_orchestration_bookmarks_name", "name"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("orchestration_instances.id", ondelete="CASCADE"),
    )
    name: Mapped[str] = mapped_column(String(200))
    activity_id: Mapped[str] = mapped_column(String(255))
    token: Mapped[str] = mapped_column(String(64))
    kind: Mapped[BookmarkKind] = mapped_column(
        Enum(BookmarkKind, native_enum=False, length=50),
        default=BookmarkKind.ACTIVITY,
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    due_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    boundary_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="bookmarks")


class WorkflowHistoryModel(UUIDBase):
    """One entry of an instance's execution history.

    Attributes:
        instance_id: Foreign key to the instance.
        sequence: Position in the instance's history, starting at 1.
        type: Kind of entry.
        timestamp: When the entry was recorded.
        activity_id: The node the entry is about, if any.
        activity_name: Display name of the node.
        activity_type: Type of the node.
        duration_ms: Execution time of the activity.
        input: Inputs or signal payload.
        output: Activity output.
        error: Serialized error.
        terminated: Set on entries written by a terminate.
        reason: Reason given for a cancel or terminate.
    """

    __tablename__ = "orchestration_history"
    __table_args__ = (Index("ix_orchestration_history_instance_sequence", "instance_id", "sequence", unique=True),)

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("orchestration_instances.id", ondelete="CASCADE"),
    )
    sequence: Mapped[int] = mapped_column(Integer)
    type: Mapped[HistoryEntryType] = mapped_column(Enum(HistoryEntryType, native_enum=False, length=50))
    timestamp: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    activity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    input: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    terminated: Mapped[bool] = mapped_column(default=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="history")
