"""Runtime data models for litestar-orchestration.

This module provides the mutable workflow instance record together with its
bookmarks, branch tokens, fork bookkeeping and history entries, plus the value
objects returned by activity executors and exposed to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeAlias, TypeVar
from uuid import UUID, uuid4

from litestar_orchestration.core.types import (
    BookmarkKind,
    HistoryEntryType,
    InstanceStatus,
    TokenStatus,
)

__all__ = [
    "Bookmark",
    "BroadcastResult",
    "Completed",
    "ExecutionResult",
    "Faulted",
    "Fork",
    "HistoryEntry",
    "InstanceError",
    "Page",
    "Suspended",
    "Token",
    "WorkflowExecutionResult",
    "WorkflowInstance",
    "utcnow",
]

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# Executor results


@dataclass(frozen=True)
class Completed:
    """The activity finished.

    Attributes:
        output: Output variables, applied through the node's output mappings.
        next_edges: Indexes of the outgoing edges to follow, chosen by gateways.
            ``None`` lets the scheduler route exclusively.
    """

    output: dict[str, Any] = field(default_factory=dict)
    next_edges: tuple[int, ...] | None = None


@dataclass(frozen=True)
class Suspended:
    """The activity waits on a bookmark.

    Attributes:
        bookmark: Bookmark name, unique within the instance.
        due_at: When set, the bookmark resumes itself at this time.
        kind: What the bookmark is waiting for.
    """

    bookmark: str
    due_at: datetime | None = None
    kind: BookmarkKind = BookmarkKind.ACTIVITY


@dataclass(frozen=True)
class Faulted:
    """The activity failed with a code that error handlers can match."""

    error_code: str
    message: str = ""


ExecutionResult: TypeAlias = Completed | Suspended | Faulted
"""Outcome of a single activity execution."""


# Instance state


@dataclass
class InstanceError:
    """Error recorded on a faulted instance."""

    code: str
    message: str
    activity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "activity_id": self.activity_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstanceError:
        return cls(code=data["code"], message=data["message"], activity_id=data.get("activity_id"))


@dataclass
class Bookmark:
    """A suspension point awaiting external input.

    Attributes:
        name: Unique per instance; signals address bookmarks by name.
        activity_id: The node that is waiting.
        token: The branch token that is waiting.
        created_at: When the bookmark was recorded.
        kind: What the bookmark waits for.
        due_at: When set, the scheduler fires the bookmark at this time.
        boundary_index: Index into the node's boundary events, for boundary bookmarks.
    """

    name: str
    activity_id: str
    token: str
    created_at: datetime = field(default_factory=utcnow)
    kind: BookmarkKind = BookmarkKind.ACTIVITY
    due_at: datetime | None = None
    boundary_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "activity_id": self.activity_id,
            "token": self.token,
            "created_at": _iso(self.created_at),
            "kind": str(self.kind),
            "due_at": _iso(self.due_at),
            "boundary_index": self.boundary_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Bookmark:
        return cls(
            name=data["name"],
            activity_id=data["activity_id"],
            token=data["token"],
            created_at=_from_iso(data.get("created_at")) or utcnow(),
            kind=BookmarkKind(data.get("kind", BookmarkKind.ACTIVITY)),
            due_at=_from_iso(data.get("due_at")),
            boundary_index=data.get("boundary_index"),
        )


@dataclass
class Token:
    """A unit of in-flight control flow.

    Attributes:
        id: Token identifier, referenced by bookmarks.
        node_id: The node this token is at.
        status: Whether the token can run, waits on a bookmark, waits for a retry,
            or has faulted.
        fork_stack: Ids of the enclosing forks, innermost last.
        attempt: Failed attempts of the current activity so far.
        retry_at: When a ``retrying`` token becomes ready again.
        resuming: The token re-enters its node with ``resume_payload``.
        resume_payload: Payload delivered by the signal that resumed the token.
        joined: The token was released by its join and runs the join node itself.
    """

    node_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    status: TokenStatus = TokenStatus.READY
    fork_stack: list[str] = field(default_factory=list)
    attempt: int = 0
    retry_at: datetime | None = None
    resuming: bool = False
    resume_payload: dict[str, Any] | None = None
    joined: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "status": str(self.status),
            "fork_stack": list(self.fork_stack),
            "attempt": self.attempt,
            "retry_at": _iso(self.retry_at),
            "resuming": self.resuming,
            "resume_payload": self.resume_payload,
            "joined": self.joined,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Token:
        return cls(
            id=data["id"],
            node_id=data["node_id"],
            status=TokenStatus(data["status"]),
            fork_stack=list(data.get("fork_stack", [])),
            attempt=data.get("attempt", 0),
            retry_at=_from_iso(data.get("retry_at")),
            resuming=data.get("resuming", False),
            resume_payload=data.get("resume_payload"),
            joined=data.get("joined", False),
        )


@dataclass
class Fork:
    """Bookkeeping for a parallel split, used to decide when its join may proceed.

    Attributes:
        id: Fork identifier, pushed on each branch token's fork stack.
        gateway_id: The parallel gateway that forked.
        branch_count: Branch tokens that can still arrive at the join.
        arrived: Branch tokens that have arrived at the join.
        join_node_id: The join node, once the first branch reaches it.
    """

    gateway_id: str
    branch_count: int
    id: str = field(default_factory=lambda: uuid4().hex)
    arrived: int = 0
    join_node_id: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.join_node_id is not None and self.arrived >= self.branch_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "gateway_id": self.gateway_id,
            "branch_count": self.branch_count,
            "arrived": self.arrived,
            "join_node_id": self.join_node_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Fork:
        return cls(**data)


@dataclass
class HistoryEntry:
    """Entry of an instance's append-only history log."""

    sequence: int
    type: HistoryEntryType
    timestamp: datetime = field(default_factory=utcnow)
    activity_id: str | None = None
    activity_name: str | None = None
    activity_type: str | None = None
    duration_ms: float | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    terminated: bool = False
    reason: str | None = None


@dataclass
class WorkflowInstance:
    """Mutable state of a single workflow execution.

    Only the scheduler mutates an instance, while holding its execution lock; the
    lifecycle manager creates instances and performs status-only transitions.

    Attributes:
        id: Instance identifier.
        workflow_id: Identifier of the definition.
        version: Version of the definition the instance runs.
        name: Display name.
        status: Current status.
        correlation_id: Caller supplied key used to target signals.
        priority: Scheduling priority, 0 (lowest) to 100.
        input: Input the instance was started with.
        variables: Current variable snapshot.
        output: Output projected on completion.
        current_activity_id: Node of the most recently scheduled token.
        bookmarks: Pending bookmarks.
        history: Append-only execution log.
        tokens: In-flight branch tokens.
        forks: Open parallel forks keyed by fork id.
        compensation_log: Completed node ids, in execution order.
        error: Last recorded error.
        scheduled_start_time: The instance stays pending until this time.
        wake_at: Earliest due time of a timer, retry or scheduled start.
        fault_count: Times the instance has been retried after faulting.
        steps_since_input: Activities run since the last external input.
        revision: Optimistic concurrency version, maintained by the store.
    """

    workflow_id: str
    version: int
    id: UUID = field(default_factory=uuid4)
    name: str = ""
    status: InstanceStatus = InstanceStatus.PENDING
    correlation_id: str | None = None
    priority: int = 50
    input: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    current_activity_id: str | None = None
    bookmarks: list[Bookmark] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    tokens: list[Token] = field(default_factory=list)
    forks: dict[str, Fork] = field(default_factory=dict)
    compensation_log: list[str] = field(default_factory=list)
    error: InstanceError | None = None
    scheduled_start_time: datetime | None = None
    wake_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    fault_count: int = 0
    steps_since_input: int = 0
    revision: int = 0

    def get_bookmark(self, name: str) -> Bookmark | None:
        return next((b for b in self.bookmarks if b.name == name), None)

    def get_token(self, token_id: str) -> Token | None:
        return next((t for t in self.tokens if t.id == token_id), None)

    def next_ready_token(self) -> Token | None:
        return next((t for t in self.tokens if t.status == TokenStatus.READY), None)

    def tokens_with(self, status: TokenStatus) -> list[Token]:
        return [t for t in self.tokens if t.status == status]

    def record(self, entry_type: HistoryEntryType, **fields: Any) -> HistoryEntry:
        """Append a history entry with the next sequence number."""
        sequence = self.history[-1].sequence + 1 if self.history else 1
        entry = HistoryEntry(sequence=sequence, type=entry_type, **fields)
        self.history.append(entry)
        return entry

    def recompute_wake_at(self) -> None:
        """Recompute when the scheduler next has work for this instance.

        Work that can run right away (an unscheduled start, a ready token, pending
        compensation) is due now, so the due-time poll recovers it after a restart.
        Otherwise this is the earliest of the scheduled start, timers and retries.
        """
        candidates: list[datetime] = []
        if self.status == InstanceStatus.PENDING:
            candidates.append(self.scheduled_start_time or utcnow())
        elif self.status == InstanceStatus.COMPENSATING:
            candidates.append(utcnow())
        elif self.status in (InstanceStatus.RUNNING, InstanceStatus.SUSPENDED):
            if self.next_ready_token() is not None:
                candidates.append(utcnow())
            candidates.extend(b.due_at for b in self.bookmarks if b.due_at)
            candidates.extend(t.retry_at for t in self.tokens if t.status == TokenStatus.RETRYING and t.retry_at)
        self.wake_at = min(candidates) if candidates else None

    @property
    def activities_executed(self) -> int:
        return sum(1 for e in self.history if e.type == HistoryEntryType.ACTIVITY_COMPLETED)


# Results exposed to callers


@dataclass
class WorkflowExecutionResult:
    """Summary of an instance, returned by lifecycle and router operations."""

    instance_id: UUID
    status: InstanceStatus
    output: dict[str, Any] | None = None
    error: InstanceError | None = None
    bookmarks: list[str] = field(default_factory=list)
    duration_ms: float | None = None
    activities_executed: int = 0

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> WorkflowExecutionResult:
        duration = None
        if instance.started_at:
            end = instance.completed_at or utcnow()
            duration = (end - instance.started_at).total_seconds() * 1000
        return cls(
            instance_id=instance.id,
            status=instance.status,
            output=instance.output,
            error=instance.error,
            bookmarks=[b.name for b in instance.bookmarks],
            duration_ms=duration,
            activities_executed=instance.activities_executed,
        )


@dataclass
class BroadcastResult:
    """Outcome of a broadcast: instances signalled and per-instance failures."""

    signal_name: str
    signalled: list[UUID] = field(default_factory=list)
    errors: dict[UUID, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.errors


@dataclass
class Page(Generic[T]):
    """One page of a paginated listing."""

    items: list[T]
    total: int
    page_number: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0
