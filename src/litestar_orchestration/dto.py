"""Request objects consumed by the engine.

Callers normally validate requests before they reach the engine; the lifecycle
manager and router still call :meth:`validate` on every request, and every
``validate`` raises :class:`~litestar_orchestration.exceptions.RequestValidationError`
listing all failing fields at once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from litestar_orchestration.core.types import InstanceStatus
from litestar_orchestration.exceptions import RequestValidationError

__all__ = [
    "EVENT_NAME_PATTERN",
    "INSTANCE_SORT_FIELDS",
    "SIGNAL_NAME_PATTERN",
    "BroadcastSignalRequest",
    "CancelWorkflowRequest",
    "DefinitionQuery",
    "InstanceQuery",
    "ResumeWorkflowRequest",
    "SendSignalRequest",
    "StartWorkflowRequest",
    "TriggerEventRequest",
]

SIGNAL_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
EVENT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.]*$")
INSTANCE_SORT_FIELDS = frozenset({"created_at", "started_at", "completed_at", "status", "priority"})
MAX_PAGE_SIZE = 100
SCHEDULE_GRACE = timedelta(minutes=1)


class _Errors:
    __slots__ = ("errors",)

    def __init__(self) -> None:
        self.errors: dict[str, list[str]] = {}

    def add(self, name: str, message: str) -> None:
        self.errors.setdefault(name, []).append(message)

    def max_length(self, name: str, value: str | None, limit: int, *, required: bool = False) -> None:
        if not value:
            if required:
                self.add(name, "is required")
            return
        if len(value) > limit:
            self.add(name, f"must not exceed {limit} characters")

    def pattern(self, name: str, value: str | None, pattern: re.Pattern[str], description: str) -> None:
        if not value:
            self.add(name, "is required")
        elif not pattern.match(value):
            self.add(name, description)

    def raise_if_any(self) -> None:
        if self.errors:
            raise RequestValidationError(self.errors)


def _page(errors: _Errors, page_number: int, page_size: int) -> None:
    if page_number < 1:
        errors.add("page_number", "must be at least 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        errors.add("page_size", f"must be between 1 and {MAX_PAGE_SIZE}")


@dataclass
class StartWorkflowRequest:
    """Request to start a new workflow instance.

    Attributes:
        workflow_id: Identifier of the published workflow.
        input: Input validated against the workflow's input parameters.
        version: Specific version to start; the latest when omitted.
        name: Display name of the instance.
        correlation_id: Key used to target signals and broadcasts.
        priority: Scheduling priority, 0 to 100.
        scheduled_start_time: Keep the instance pending until this time.
    """

    workflow_id: str
    input: dict[str, Any] = field(default_factory=dict)
    version: int | None = None
    name: str | None = None
    correlation_id: str | None = None
    priority: int | None = None
    scheduled_start_time: datetime | None = None

    def validate(self, now: datetime | None = None) -> None:
        errors = _Errors()
        errors.max_length("workflow_id", self.workflow_id, 100, required=True)
        errors.max_length("name", self.name, 200)
        errors.max_length("correlation_id", self.correlation_id, 100)
        if self.priority is not None and not 0 <= self.priority <= 100:
            errors.add("priority", "must be between 0 and 100")
        if self.version is not None and self.version <= 0:
            errors.add("version", "must be greater than 0")
        if self.scheduled_start_time is not None:
            scheduled = self.scheduled_start_time
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            if scheduled < (now or datetime.now(timezone.utc)) - SCHEDULE_GRACE:
                errors.add("scheduled_start_time", "cannot be in the past")
        if not isinstance(self.input, dict):
            errors.add("input", "must be an object")
        errors.raise_if_any()


@dataclass
class ResumeWorkflowRequest:
    """Request to resume a suspended instance at a bookmark."""

    bookmark_name: str
    input: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        errors = _Errors()
        errors.max_length("bookmark_name", self.bookmark_name, 200, required=True)
        errors.raise_if_any()


@dataclass
class CancelWorkflowRequest:
    """Request to cancel an instance. The reason is optional."""

    reason: str | None = None

    def validate(self) -> None:
        errors = _Errors()
        errors.max_length("reason", self.reason, 500)
        errors.raise_if_any()


@dataclass
class SendSignalRequest:
    """Request to deliver a signal to one instance."""

    signal_name: str
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        errors = _Errors()
        errors.pattern(
            "signal_name",
            self.signal_name,
            SIGNAL_NAME_PATTERN,
            "must start with a letter and contain only letters, numbers and underscores",
        )
        errors.raise_if_any()


@dataclass
class BroadcastSignalRequest:
    """Request to deliver a signal to every instance waiting on it."""

    signal_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    workflow_id: str | None = None
    correlation_id: str | None = None

    def validate(self) -> None:
        errors = _Errors()
        errors.pattern(
            "signal_name",
            self.signal_name,
            SIGNAL_NAME_PATTERN,
            "must start with a letter and contain only letters, numbers and underscores",
        )
        errors.max_length("workflow_id", self.workflow_id, 100)
        errors.max_length("correlation_id", self.correlation_id, 100)
        errors.raise_if_any()


@dataclass
class TriggerEventRequest:
    """Request to raise a named event."""

    event_name: str
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        errors = _Errors()
        errors.pattern(
            "event_name",
            self.event_name,
            EVENT_NAME_PATTERN,
            "must start with a letter and contain only letters, numbers, underscores and dots",
        )
        errors.raise_if_any()


@dataclass
class InstanceQuery:
    """Filter, sort and pagination options for listing instances.

    Attributes:
        page_number: One based page number.
        page_size: Items per page, 1 to 100.
        statuses: Only instances in one of these statuses.
        workflow_id: Only instances of this workflow.
        correlation_id: Only instances with this correlation id.
        created_after: Only instances created at or after this time.
        created_before: Only instances created at or before this time.
        sort_by: One of ``created_at``, ``started_at``, ``completed_at``,
            ``status`` or ``priority``.
        descending: Sort direction.
    """

    page_number: int = 1
    page_size: int = 20
    statuses: list[InstanceStatus | str] | None = None
    workflow_id: str | None = None
    correlation_id: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort_by: str = "created_at"
    descending: bool = True

    def validate(self) -> None:
        """Validate the query and normalize ``statuses`` to :class:`InstanceStatus`."""
        errors = _Errors()
        _page(errors, self.page_number, self.page_size)
        normalized: list[InstanceStatus] = []
        for status in self.statuses or []:
            try:
                normalized.append(InstanceStatus.parse(status))
            except ValueError:
                errors.add("statuses", f"'{status}' is not a valid status")
        if self.created_after and self.created_before and self.created_after > self.created_before:
            errors.add("created_after", "must be before or equal to created_before")
        if self.sort_by not in INSTANCE_SORT_FIELDS:
            errors.add("sort_by", f"must be one of {', '.join(sorted(INSTANCE_SORT_FIELDS))}")
        errors.raise_if_any()
        if self.statuses is not None:
            self.statuses = list(normalized)

    @property
    def offset(self) -> int:
        return (self.page_number - 1) * self.page_size


@dataclass
class DefinitionQuery:
    """Filter and pagination options for listing published definitions.

    Attributes:
        page_number: One based page number.
        page_size: Items per page, 1 to 100.
        search: Case insensitive substring of the workflow id or name.
        latest_only: Only the latest version of each workflow.
    """

    page_number: int = 1
    page_size: int = 20
    search: str | None = None
    latest_only: bool = True

    def validate(self) -> None:
        errors = _Errors()
        _page(errors, self.page_number, self.page_size)
        errors.max_length("search", self.search, 200)
        errors.raise_if_any()

    @property
    def offset(self) -> int:
        return (self.page_number - 1) * self.page_size
