"""Litestar Orchestration - Durable workflow orchestration for Litestar.

This package runs long-lived business processes described as graphs of nodes
and edges. Instances survive restarts, wait for signals, timers and named events,
retry failed activities with backoff and compensate completed work.

Key Features:
    - Designer JSON definitions validated and versioned at publish time
    - Exclusive and parallel gateways with a sandboxed expression language
    - Timers, signals, named events and boundary events
    - Retry policies, error handlers and reverse-order compensation
    - Optimistic concurrency over in-memory or SQLAlchemy instance stores
    - Litestar plugin for dependency injection and scheduler lifecycle

Example:
    >>> from litestar_orchestration import TaskHandlerRegistry, WorkflowEngine
    >>>
    >>> tasks = TaskHandlerRegistry()
    >>> tasks.register("admit", admit_patient)
    >>> async with WorkflowEngine(tasks=tasks) as engine:
    ...     engine.publish(admission_json)
    ...     started = await engine.start_workflow("admission", input={"patient_id": "p-1"})
"""

from __future__ import annotations

from litestar_orchestration.__metadata__ import __project__, __version__
from litestar_orchestration.activities import ASYNC_ACTIVITY_BOOKMARK, BaseActivityExecutor, TaskHandlerRegistry
from litestar_orchestration.config import EngineConfig
from litestar_orchestration.core import (
    ActivityContext,
    BoundaryEvent,
    Completed,
    Edge,
    ErrorHandler,
    Faulted,
    InstanceStatus,
    Node,
    NodeType,
    Parameter,
    RetryPolicy,
    Suspended,
    Trigger,
    Variable,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowInstance,
)
from litestar_orchestration.engine import WorkflowEngine, WorkflowRegistry
from litestar_orchestration.exceptions import (
    ActivityExecutionError,
    CompensationError,
    ConcurrencyConflictError,
    ExpressionError,
    InvalidTransitionError,
    NoMatchingEdgeError,
    NoSuchBookmarkError,
    OrchestrationError,
    RequestValidationError,
    SchedulingError,
    WorkflowInstanceNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from litestar_orchestration.plugin import OrchestrationPlugin, OrchestrationPluginConfig
from litestar_orchestration.stores import InMemoryInstanceStore

__all__ = (
    "ASYNC_ACTIVITY_BOOKMARK",
    "ActivityContext",
    "ActivityExecutionError",
    "BaseActivityExecutor",
    "BoundaryEvent",
    "CompensationError",
    "Completed",
    "ConcurrencyConflictError",
    "Edge",
    "EngineConfig",
    "ErrorHandler",
    "ExpressionError",
    "Faulted",
    "InMemoryInstanceStore",
    "InstanceStatus",
    "InvalidTransitionError",
    "NoMatchingEdgeError",
    "NoSuchBookmarkError",
    "Node",
    "NodeType",
    "OrchestrationError",
    "OrchestrationPlugin",
    "OrchestrationPluginConfig",
    "Parameter",
    "RequestValidationError",
    "RetryPolicy",
    "SchedulingError",
    "Suspended",
    "TaskHandlerRegistry",
    "Trigger",
    "Variable",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecutionResult",
    "WorkflowInstance",
    "WorkflowInstanceNotFoundError",
    "WorkflowNotFoundError",
    "WorkflowRegistry",
    "WorkflowValidationError",
    "__project__",
    "__version__",
)
