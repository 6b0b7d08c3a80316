"""Workflow definition structures.

This module provides the declarative data structures for workflow graphs: nodes,
edges, parameters, triggers and error handlers. A :class:`WorkflowDefinition` is
authored (in code or as designer JSON through :meth:`WorkflowDefinition.from_dict`)
and then published through the registry, which validates it and compiles it into
an immutable graph.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from litestar_orchestration.core.types import (
    BoundaryEventType,
    NodeType,
    ParameterType,
    TriggerType,
    VariableScope,
)

__all__ = [
    "BoundaryEvent",
    "Edge",
    "ErrorHandler",
    "Node",
    "Parameter",
    "RetryPolicy",
    "Trigger",
    "Variable",
    "WorkflowDefinition",
]


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class RetryPolicy:
    """Exponential backoff policy applied per activity attempt.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay.
        backoff_multiplier: Factor applied to the delay after each retry.
    """

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0

    def delay_ms(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (zero based)."""
        return min(self.initial_delay_ms * self.backoff_multiplier**attempt, self.max_delay_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(
            max_retries=int(_pick(data, "max_retries", "maxRetries", default=3)),
            initial_delay_ms=int(_pick(data, "initial_delay_ms", "initialDelayMs", default=1000)),
            max_delay_ms=int(_pick(data, "max_delay_ms", "maxDelayMs", default=60_000)),
            backoff_multiplier=float(_pick(data, "backoff_multiplier", "backoffMultiplier", default=2.0)),
        )


@dataclass
class ErrorHandler:
    """Reaction to activity faults whose code matches ``error_codes``.

    Handlers are consulted in order: node level handlers (including error boundary
    events) first, then definition level handlers.

    Attributes:
        error_codes: Codes this handler catches. Empty means every code.
        retry_policy: Retry the failed activity with backoff before anything else.
        handler_node_id: Redirect the failing token to this node.
        compensate: Compensate executed activities once retries are exhausted.
        terminate: Fault the instance immediately.
    """

    error_codes: list[str] = field(default_factory=list)
    retry_policy: RetryPolicy | None = None
    handler_node_id: str | None = None
    compensate: bool = False
    terminate: bool = False

    def matches(self, error_code: str) -> bool:
        return not self.error_codes or error_code in self.error_codes

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorHandler:
        policy = _pick(data, "retry_policy", "retryPolicy")
        return cls(
            error_codes=list(_pick(data, "error_codes", "errorCodes", default=[])),
            retry_policy=RetryPolicy.from_dict(policy) if policy else None,
            handler_node_id=_pick(data, "handler_node_id", "handlerNodeId", "handlerActivityId"),
            compensate=bool(data.get("compensate", False)),
            terminate=bool(data.get("terminate", False)),
        )


@dataclass
class BoundaryEvent:
    """An event attached to a node that can interrupt it or run alongside it.

    Attributes:
        type: ``error``, ``timer``, ``signal`` or ``event``.
        target: Node the flow continues at when the event fires.
        cancel_activity: Interrupt the node (True) or spawn a parallel token (False).
        name: Signal or event name for ``signal``/``event`` boundaries.
        duration_ms: Delay after which a ``timer`` boundary fires.
        error_codes: Codes an ``error`` boundary catches. Empty means every code.
    """

    type: BoundaryEventType
    target: str
    cancel_activity: bool = True
    name: str | None = None
    duration_ms: int | None = None
    error_codes: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.type = BoundaryEventType.parse(self.type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BoundaryEvent:
        return cls(
            type=data["type"],
            target=_pick(data, "target", "targetNodeId", "handlerNodeId"),
            cancel_activity=bool(_pick(data, "cancel_activity", "cancelActivity", default=True)),
            name=_pick(data, "name", "signal_name", "signalName", "event_name", "eventName"),
            duration_ms=_pick(data, "duration_ms", "durationMs"),
            error_codes=list(_pick(data, "error_codes", "errorCodes", default=[])),
        )


@dataclass
class Node:
    """A single activity in a workflow graph.

    Attributes:
        id: Unique identifier within the definition.
        type: Node type; resolves to an activity executor at publish time.
        name: Display name recorded in history. Defaults to ``id``.
        config: Executor specific configuration.
        boundary_events: Events attached to this node.
        input_mappings: Executor input name to expression.
        output_mappings: Variable path to expression over ``output`` and the variables.
        error_handlers: Node level error handlers.
    """

    id: str
    type: NodeType
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    boundary_events: list[BoundaryEvent] = field(default_factory=list)
    input_mappings: dict[str, str] = field(default_factory=dict)
    output_mappings: dict[str, str] = field(default_factory=dict)
    error_handlers: list[ErrorHandler] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.type = NodeType.parse(self.type)
        if not self.name:
            self.name = self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        return cls(
            id=data["id"],
            type=data["type"],
            name=_pick(data, "name", "label", default=""),
            config=dict(_pick(data, "config", "properties", default={})),
            boundary_events=[
                BoundaryEvent.from_dict(b) for b in _pick(data, "boundary_events", "boundaryEvents", default=[])
            ],
            input_mappings=dict(_pick(data, "input_mappings", "inputMappings", default={})),
            output_mappings=dict(_pick(data, "output_mappings", "outputMappings", default={})),
            error_handlers=[
                ErrorHandler.from_dict(h) for h in _pick(data, "error_handlers", "errorHandlers", default=[])
            ],
        )


@dataclass
class Edge:
    """A directed transition between two nodes.

    Attributes:
        source: Id of the source node.
        target: Id of the target node.
        condition: Boolean expression; ``None`` means always true.
        is_default: Taken when no conditional sibling matches.
        priority: Evaluation order among siblings, lower first.

    Example:
        >>> Edge(source="triage", target="urgent", condition="severity >= 4", priority=1)
    """

    source: str
    target: str
    condition: str | None = None
    is_default: bool = False
    priority: int = 0

    @property
    def is_conditional(self) -> bool:
        return bool(self.condition and self.condition.strip())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        return cls(
            source=_pick(data, "source", "sourceId", "from"),
            target=_pick(data, "target", "targetId", "to"),
            condition=_pick(data, "condition"),
            is_default=bool(_pick(data, "is_default", "isDefault", default=False)),
            priority=int(_pick(data, "priority", default=0)),
        )


@dataclass
class Parameter:
    """A declared workflow input or output parameter."""

    name: str
    type: ParameterType = ParameterType.ANY
    required: bool = False
    default: Any = None
    description: str = ""

    def __post_init__(self) -> None:
        self.type = ParameterType.parse(self.type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Parameter:
        return cls(
            name=data["name"],
            type=_pick(data, "type", default=ParameterType.ANY),
            required=bool(_pick(data, "required", "isRequired", default=False)),
            default=_pick(data, "default", "defaultValue"),
            description=_pick(data, "description", default=""),
        )


@dataclass
class Variable:
    """A declared workflow variable with its initial value."""

    name: str
    type: ParameterType = ParameterType.ANY
    default: Any = None
    scope: VariableScope = VariableScope.INSTANCE

    def __post_init__(self) -> None:
        self.type = ParameterType.parse(self.type)
        self.scope = VariableScope.parse(self.scope)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Variable:
        return cls(
            name=data["name"],
            type=_pick(data, "type", default=ParameterType.ANY),
            default=_pick(data, "default", "defaultValue"),
            scope=_pick(data, "scope", default=VariableScope.INSTANCE),
        )


@dataclass
class Trigger:
    """How instances of a workflow get started.

    Attributes:
        type: Trigger type.
        event_name: Event that starts the workflow, for ``event`` triggers.
        cron: Cron expression, for ``scheduled`` triggers.
        path: Callback path, for ``webhook`` triggers.
        config: Additional trigger configuration.
    """

    type: TriggerType
    event_name: str | None = None
    cron: str | None = None
    path: str | None = None
    config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = TriggerType.parse(self.type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Trigger:
        config = dict(_pick(data, "config", default={}))
        return cls(
            type=data["type"],
            event_name=_pick(data, "event_name", "eventName", default=config.get("eventName")),
            cron=_pick(data, "cron", "cronExpression", default=config.get("cron")),
            path=_pick(data, "path", "webhookPath", default=config.get("webhookPath")),
            config=config,
        )


@dataclass
class WorkflowDefinition:
    """Declarative workflow graph.

    Attributes:
        workflow_id: Stable identifier shared by every version.
        nodes: Nodes of the graph, in authoring order.
        edges: Transitions between nodes.
        version: Assigned at publish time when omitted.
        name: Human readable name.
        description: Human readable description.
        input_parameters: Parameters validated when an instance starts.
        output_parameters: Variables projected into the instance output on completion.
        variables: Declared variables and their defaults.
        triggers: How instances get started.
        error_handlers: Definition level error handlers.

    Example:
        >>> definition = WorkflowDefinition(
        ...     workflow_id="discharge",
        ...     nodes=[
        ...         Node("start", NodeType.START),
        ...         Node("bill", NodeType.TASK, config={"handler": "issue_invoice"}),
        ...         Node("end", NodeType.END),
        ...     ],
        ...     edges=[Edge("start", "bill"), Edge("bill", "end")],
        ... )
    """

    workflow_id: str
    nodes: list[Node]
    edges: list[Edge]
    version: int | None = None
    name: str = ""
    description: str = ""
    input_parameters: list[Parameter] = field(default_factory=list)
    output_parameters: list[Parameter] = field(default_factory=list)
    variables: list[Variable] = field(default_factory=list)
    triggers: list[Trigger] = field(default_factory=list)
    error_handlers: list[ErrorHandler] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.workflow_id

    def get_node(self, node_id: str) -> Node | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def has_event_trigger(self, event_name: str) -> bool:
        """Whether an ``event`` trigger of this workflow listens for ``event_name``."""
        return any(t.type == TriggerType.EVENT and t.event_name == event_name for t in self.triggers)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        """Build a definition from designer JSON.

        Both ``snake_case`` and the designer's ``camelCase`` keys are accepted.

        Args:
            data: The decoded JSON document.

        Returns:
            A new, unpublished definition.
        """
        version = _pick(data, "version")
        return cls(
            workflow_id=_pick(data, "workflow_id", "workflowId", "id"),
            nodes=[Node.from_dict(n) for n in _pick(data, "nodes", "activities", default=[])],
            edges=[Edge.from_dict(e) for e in _pick(data, "edges", "transitions", default=[])],
            version=int(version) if version is not None else None,
            name=_pick(data, "name", default=""),
            description=_pick(data, "description", default=""),
            input_parameters=[
                Parameter.from_dict(p) for p in _pick(data, "input_parameters", "inputParameters", default=[])
            ],
            output_parameters=[
                Parameter.from_dict(p) for p in _pick(data, "output_parameters", "outputParameters", default=[])
            ],
            variables=[Variable.from_dict(v) for v in _pick(data, "variables", default=[])],
            triggers=[Trigger.from_dict(t) for t in _pick(data, "triggers", default=[])],
            error_handlers=[
                ErrorHandler.from_dict(h) for h in _pick(data, "error_handlers", "errorHandlers", default=[])
            ],
        )
