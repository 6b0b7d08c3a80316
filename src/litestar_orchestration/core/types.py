"""Core type definitions for litestar-orchestration.

This module defines the enums and type aliases shared across the engine. Node and
trigger types form closed sets; designer-style camelCase spellings
(``exclusiveGateway``) are accepted through :meth:`_ParsableEnum.parse`.
"""

from __future__ import annotations

import re
from enum import StrEnum, auto
from typing import Any, TypeAlias

__all__ = [
    "BookmarkKind",
    "BoundaryEventType",
    "HistoryEntryType",
    "InstanceStatus",
    "NodeType",
    "ParameterType",
    "Severity",
    "TokenStatus",
    "TriggerType",
    "VariableScope",
    "Variables",
]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class _ParsableEnum(StrEnum):
    """StrEnum that tolerates camelCase, PascalCase and snake_case spellings."""

    @classmethod
    def parse(cls, value: Any) -> Any:
        """Coerce ``value`` into a member of this enum.

        Raises:
            ValueError: If the value does not name a member.
        """
        if isinstance(value, cls):
            return value
        raw = str(value)
        for candidate in (raw.lower(), _CAMEL_BOUNDARY.sub("_", raw).lower().replace("-", "_")):
            if candidate in cls._value2member_map_:
                return cls(candidate)
        msg = f"'{value}' is not a valid {cls.__name__}"
        raise ValueError(msg)


class NodeType(_ParsableEnum):
    """Classification of nodes within a workflow graph.

    Attributes:
        START: Entry point of the workflow; exactly one per definition.
        END: Terminal node; reaching it ends the token that arrived.
        TASK: Runs an externally supplied task handler.
        EXCLUSIVE_GATEWAY: Routes to exactly one outgoing edge.
        PARALLEL_GATEWAY: Forks into concurrent branches, or joins them.
        EVENT: Waits for a timer, a signal or a named event.
    """

    START = auto()
    END = auto()
    TASK = auto()
    EXCLUSIVE_GATEWAY = auto()
    PARALLEL_GATEWAY = auto()
    EVENT = auto()


class TriggerType(_ParsableEnum):
    """How new instances of a workflow may be started."""

    MANUAL = auto()
    SCHEDULED = auto()
    EVENT = auto()
    WEBHOOK = auto()
    MESSAGE = auto()


class InstanceStatus(_ParsableEnum):
    """Overall status of a workflow instance.

    Attributes:
        PENDING: Created but not yet started, or waiting for its scheduled start.
        RUNNING: Actively advancing through its graph.
        SUSPENDED: Waiting on one or more bookmarks.
        COMPLETED: Every token reached an end node.
        FAULTED: An error exhausted its retries and no handler caught it.
        CANCELLED: Cancelled or terminated explicitly.
        COMPENSATING: Running compensation handlers in reverse execution order.
        COMPENSATED: Compensation finished successfully.
    """

    PENDING = auto()
    RUNNING = auto()
    SUSPENDED = auto()
    COMPLETED = auto()
    FAULTED = auto()
    CANCELLED = auto()
    COMPENSATING = auto()
    COMPENSATED = auto()

    @property
    def is_final(self) -> bool:
        """Whether no further transition can happen without an explicit retry."""
        return self in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED, InstanceStatus.COMPENSATED)


class TokenStatus(StrEnum):
    """State of a single branch token."""

    READY = auto()
    WAITING = auto()
    RETRYING = auto()
    FAULTED = auto()


class BookmarkKind(StrEnum):
    """What a bookmark is waiting for."""

    ACTIVITY = auto()
    SIGNAL = auto()
    EVENT = auto()
    TIMER = auto()


class BoundaryEventType(_ParsableEnum):
    """Kinds of events that can be attached to a node."""

    ERROR = auto()
    TIMER = auto()
    SIGNAL = auto()
    EVENT = auto()


class HistoryEntryType(StrEnum):
    """Type of an entry in an instance's append-only history log."""

    WORKFLOW_STARTED = auto()
    ACTIVITY_COMPLETED = auto()
    ACTIVITY_SUSPENDED = auto()
    ACTIVITY_RESUMED = auto()
    ACTIVITY_FAULTED = auto()
    ACTIVITY_RETRY_SCHEDULED = auto()
    ACTIVITY_COMPENSATED = auto()
    BOUNDARY_EVENT_TRIGGERED = auto()
    WORKFLOW_SUSPENDED = auto()
    WORKFLOW_COMPLETED = auto()
    WORKFLOW_FAULTED = auto()
    WORKFLOW_RETRIED = auto()
    WORKFLOW_CANCELLED = auto()
    WORKFLOW_TERMINATED = auto()
    WORKFLOW_COMPENSATED = auto()


class ParameterType(_ParsableEnum):
    """Types accepted for workflow input and output parameters."""

    STRING = auto()
    NUMBER = auto()
    INTEGER = auto()
    BOOLEAN = auto()
    DATE = auto()
    DATETIME = auto()
    OBJECT = auto()
    ARRAY = auto()
    ANY = auto()


class VariableScope(_ParsableEnum):
    """Visibility of a declared workflow variable."""

    INSTANCE = auto()
    NODE = auto()


class Severity(StrEnum):
    """Severity of a validation finding."""

    WARNING = auto()
    ERROR = auto()
    CRITICAL = auto()


Variables: TypeAlias = dict[str, Any]
"""Type alias for an instance's variable snapshot."""
