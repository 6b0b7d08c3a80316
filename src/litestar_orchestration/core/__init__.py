"""Core building blocks: types, definitions, runtime models and protocols."""

from __future__ import annotations

from litestar_orchestration.core.context import ActivityContext
from litestar_orchestration.core.definition import (
    BoundaryEvent,
    Edge,
    ErrorHandler,
    Node,
    Parameter,
    RetryPolicy,
    Trigger,
    Variable,
    WorkflowDefinition,
)
from litestar_orchestration.core.expressions import ExpressionEvaluator
from litestar_orchestration.core.models import (
    Bookmark,
    BroadcastResult,
    Completed,
    ExecutionResult,
    Faulted,
    HistoryEntry,
    InstanceError,
    Page,
    Suspended,
    WorkflowExecutionResult,
    WorkflowInstance,
)
from litestar_orchestration.core.protocols import ActivityExecutor, EventBus, InstanceStore
from litestar_orchestration.core.types import (
    BookmarkKind,
    BoundaryEventType,
    HistoryEntryType,
    InstanceStatus,
    NodeType,
    ParameterType,
    Severity,
    TriggerType,
    VariableScope,
)

__all__ = [
    "ActivityContext",
    "ActivityExecutor",
    "Bookmark",
    "BookmarkKind",
    "BoundaryEvent",
    "BoundaryEventType",
    "BroadcastResult",
    "Completed",
    "Edge",
    "ErrorHandler",
    "EventBus",
    "ExecutionResult",
    "ExpressionEvaluator",
    "Faulted",
    "HistoryEntry",
    "HistoryEntryType",
    "InstanceError",
    "InstanceStatus",
    "InstanceStore",
    "Node",
    "NodeType",
    "Page",
    "Parameter",
    "ParameterType",
    "RetryPolicy",
    "Severity",
    "Suspended",
    "Trigger",
    "TriggerType",
    "Variable",
    "VariableScope",
    "WorkflowDefinition",
    "WorkflowExecutionResult",
    "WorkflowInstance",
]
