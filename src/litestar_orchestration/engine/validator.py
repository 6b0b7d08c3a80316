"""Structural validation of workflow definitions.

The validator runs before a definition is published. It returns every finding it
can make instead of stopping at the first one, so authors see all problems at
once. Findings with ``error`` or ``critical`` severity block publishing; warnings
are surfaced but allowed.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar_orchestration.core.expressions import ExpressionEvaluator
from litestar_orchestration.core.types import BoundaryEventType, NodeType, Severity, TriggerType
from litestar_orchestration.exceptions import ExpressionSyntaxError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from litestar_orchestration.core.definition import Node, WorkflowDefinition

__all__ = ["DefinitionValidator", "ValidationFinding"]

PARAMETER_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
"""Valid parameter and variable names."""

_EVENT_WAIT_KEYS = frozenset({"duration_ms", "due_at", "signal", "event"})


@dataclass(frozen=True)
class ValidationFinding:
    """A single problem found in a definition.

    Attributes:
        code: Stable finding code, e.g. ``UnreachableNode``.
        message: Human readable description.
        severity: ``warning``, ``error`` or ``critical``.
        node_id: Offending node, when the finding is about one.
        edge_index: Offending edge position, when the finding is about one.
    """

    code: str
    message: str
    severity: Severity = Severity.ERROR
    node_id: str | None = None
    edge_index: int | None = None

    @property
    def is_blocking(self) -> bool:
        return self.severity != Severity.WARNING


class DefinitionValidator:
    """Checks a workflow graph for structural correctness.

    Checks run in this order: start and end nodes, edge references, reachability
    from start, reachability of an end node, default edges, cycles. Configuration
    checks for parameters, triggers, boundary events, error handlers and
    expressions follow.

    Example:
        >>> findings = DefinitionValidator().validate(definition)
        >>> DefinitionValidator.is_active(findings)
        True
    """

    def __init__(self, evaluator: ExpressionEvaluator | None = None) -> None:
        self.evaluator = evaluator or ExpressionEvaluator()

    @staticmethod
    def is_active(findings: Iterable[ValidationFinding]) -> bool:
        """Whether a definition with these findings may be published."""
        return not any(f.is_blocking for f in findings)

    def validate(self, definition: WorkflowDefinition) -> list[ValidationFinding]:
        """Validate ``definition``.

        Args:
            definition: The definition to check.

        Returns:
            All findings, errors and warnings, in check order.
        """
        findings: list[ValidationFinding] = []
        node_ids = self._check_nodes(definition, findings)
        valid_edges = self._check_edges(definition, node_ids, findings)

        successors: dict[str, list[str]] = defaultdict(list)
        for edge_index in valid_edges:
            edge = definition.edges[edge_index]
            successors[edge.source].append(edge.target)
        exits = self._exit_targets(definition, node_ids)

        starts = [n.id for n in definition.nodes if n.type == NodeType.START]
        if len(starts) == 1:
            handlers = [h.handler_node_id for h in definition.error_handlers if h.handler_node_id in node_ids]
            roots = [starts[0], *handlers]
            reachable = self._walk(roots, successors, exits)
            findings.extend(
                ValidationFinding(
                    "UnreachableNode",
                    f"Node '{n.id}' is not reachable from the start node",
                    node_id=n.id,
                )
                for n in definition.nodes
                if n.id not in reachable
            )

        self._check_dead_ends(definition, successors, exits, findings)
        self._check_defaults(definition, findings)
        self._check_cycles(definition, valid_edges, findings)
        self._check_configuration(definition, node_ids, findings)
        return findings

    def _check_nodes(self, definition: WorkflowDefinition, findings: list[ValidationFinding]) -> set[str]:
        starts = [n for n in definition.nodes if n.type == NodeType.START]
        ends = [n for n in definition.nodes if n.type == NodeType.END]
        if not starts:
            findings.append(ValidationFinding("MissingStartNode", "Workflow must have a start node", Severity.CRITICAL))
        elif len(starts) > 1:
            findings.append(
                ValidationFinding(
                    "MultipleStartNodes",
                    f"Workflow must have exactly one start node, found {len(starts)}",
                    Severity.CRITICAL,
                )
            )
        if not ends:
            findings.append(ValidationFinding("MissingEndNode", "Workflow must have at least one end node"))

        seen: set[str] = set()
        for node in definition.nodes:
            if node.id in seen:
                findings.append(
                    ValidationFinding("DuplicateNodeId", f"Duplicate node id '{node.id}'", node_id=node.id)
                )
            seen.add(node.id)
        return seen

    def _check_edges(
        self,
        definition: WorkflowDefinition,
        node_ids: set[str],
        findings: list[ValidationFinding],
    ) -> list[int]:
        valid: list[int] = []
        start_ids = {n.id for n in definition.nodes if n.type == NodeType.START}
        for index, edge in enumerate(definition.edges):
            ok = True
            if edge.source not in node_ids:
                findings.append(
                    ValidationFinding(
                        "InvalidEdgeSource", f"Edge source '{edge.source}' does not exist", edge_index=index
                    )
                )
                ok = False
            if edge.target not in node_ids:
                findings.append(
                    ValidationFinding(
                        "InvalidEdgeTarget", f"Edge target '{edge.target}' does not exist", edge_index=index
                    )
                )
                ok = False
            if edge.target in start_ids:
                findings.append(
                    ValidationFinding(
                        "StartNodeHasIncomingEdges",
                        f"Start node '{edge.target}' cannot have incoming edges",
                        node_id=edge.target,
                        edge_index=index,
                    )
                )
            if ok and edge.source == edge.target:
                findings.append(
                    ValidationFinding(
                        "SelfLoop",
                        f"Node '{edge.source}' has an edge to itself",
                        Severity.WARNING,
                        node_id=edge.source,
                        edge_index=index,
                    )
                )
            if ok:
                valid.append(index)
        return valid

    @staticmethod
    def _exit_targets(definition: WorkflowDefinition, node_ids: set[str]) -> dict[str, list[str]]:
        """Boundary event and error handler exits per node."""
        exits: dict[str, list[str]] = defaultdict(list)
        for node in definition.nodes:
            exits[node.id].extend(b.target for b in node.boundary_events if b.target in node_ids)
            exits[node.id].extend(
                h.handler_node_id for h in node.error_handlers if h.handler_node_id in node_ids
            )
        return exits

    @staticmethod
    def _walk(
        roots: Sequence[str | None],
        successors: dict[str, list[str]],
        exits: dict[str, list[str]],
    ) -> set[str]:
        seen: set[str] = set()
        stack = [r for r in roots if r is not None]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            stack.extend(successors.get(node_id, ()))
            stack.extend(exits.get(node_id, ()))
        return seen

    def _check_dead_ends(
        self,
        definition: WorkflowDefinition,
        successors: dict[str, list[str]],
        exits: dict[str, list[str]],
        findings: list[ValidationFinding],
    ) -> None:
        predecessors: dict[str, list[str]] = defaultdict(list)
        for source, targets in successors.items():
            for target in targets:
                predecessors[target].append(source)
        for source, targets in exits.items():
            for target in targets:
                predecessors[target].append(source)

        ends = [n.id for n in definition.nodes if n.type == NodeType.END]
        can_finish = self._walk(ends, predecessors, {})
        findings.extend(
            ValidationFinding(
                "DeadEndNode",
                f"Node '{n.id}' has no path to an end node",
                Severity.WARNING,
                node_id=n.id,
            )
            for n in definition.nodes
            if n.type != NodeType.END and n.id not in can_finish
        )

    @staticmethod
    def _check_defaults(definition: WorkflowDefinition, findings: list[ValidationFinding]) -> None:
        defaults: dict[str, int] = defaultdict(int)
        conditional: dict[str, int] = defaultdict(int)
        outgoing: dict[str, int] = defaultdict(int)
        for edge in definition.edges:
            outgoing[edge.source] += 1
            if edge.is_default:
                defaults[edge.source] += 1
            if edge.is_conditional:
                conditional[edge.source] += 1
        for node_id, count in defaults.items():
            if count > 1:
                findings.append(
                    ValidationFinding(
                        "MultipleDefaultEdges",
                        f"Node '{node_id}' has {count} default edges; at most one is allowed",
                        node_id=node_id,
                    )
                )
        for node in definition.nodes:
            if node.type == NodeType.EXCLUSIVE_GATEWAY and outgoing[node.id] > 1 and not conditional[node.id]:
                findings.append(
                    ValidationFinding(
                        "GatewayWithoutConditions",
                        f"Exclusive gateway '{node.id}' has several outgoing edges but no conditions",
                        Severity.WARNING,
                        node_id=node.id,
                    )
                )

    def _check_cycles(
        self,
        definition: WorkflowDefinition,
        valid_edges: list[int],
        findings: list[ValidationFinding],
    ) -> None:
        nodes = {n.id: n for n in definition.nodes}
        graph: dict[str, list[str]] = {node_id: [] for node_id in nodes}
        has_exit: dict[str, bool] = {
            n.id: bool(n.boundary_events) or (n.type == NodeType.EVENT and bool(_EVENT_WAIT_KEYS & n.config.keys()))
            for n in definition.nodes
        }
        for edge_index in valid_edges:
            edge = definition.edges[edge_index]
            graph[edge.source].append(edge.target)
            if edge.is_conditional:
                has_exit[edge.source] = True

        for component in _strongly_connected(graph):
            if len(component) == 1 and component[0] not in graph[component[0]]:
                continue
            members = sorted(component)
            guarded = [node_id for node_id in members if has_exit[node_id]]
            if not guarded:
                findings.append(
                    ValidationFinding(
                        "UnconditionalCycle",
                        f"Nodes {members} form a cycle with no conditional or boundary exit",
                        node_id=members[0],
                    )
                )
            else:
                unguarded = sorted(set(members) - set(guarded))
                detail = f"; {unguarded} have no conditional or boundary exit" if unguarded else ""
                findings.append(
                    ValidationFinding(
                        "PotentialInfiniteLoop",
                        f"Nodes {members} form a cycle that only ends when a condition or event fires{detail}",
                        Severity.WARNING,
                        node_id=members[0],
                    )
                )

    def _check_configuration(
        self,
        definition: WorkflowDefinition,
        node_ids: set[str],
        findings: list[ValidationFinding],
    ) -> None:
        names: set[str] = set()
        for parameter in definition.input_parameters:
            if parameter.name in names:
                findings.append(
                    ValidationFinding("DuplicateParameterName", f"Duplicate input parameter '{parameter.name}'")
                )
            names.add(parameter.name)
            if not PARAMETER_NAME_PATTERN.match(parameter.name):
                findings.append(
                    ValidationFinding(
                        "InvalidParameterName",
                        f"Parameter name '{parameter.name}' must start with a letter and contain only "
                        "letters, numbers and underscores",
                    )
                )

        for trigger in definition.triggers:
            if trigger.type == TriggerType.SCHEDULED and not trigger.cron:
                findings.append(ValidationFinding("MissingCron", "Scheduled trigger requires a cron expression"))
            elif trigger.type == TriggerType.EVENT and not trigger.event_name:
                findings.append(ValidationFinding("MissingEventName", "Event trigger requires an event name"))
            elif trigger.type == TriggerType.WEBHOOK and not trigger.path:
                findings.append(ValidationFinding("MissingWebhookPath", "Webhook trigger requires a path"))

        for handler in definition.error_handlers:
            if handler.handler_node_id and handler.handler_node_id not in node_ids:
                findings.append(
                    ValidationFinding(
                        "InvalidHandlerTarget", f"Error handler targets unknown node '{handler.handler_node_id}'"
                    )
                )

        for node in definition.nodes:
            self._check_node_configuration(node, node_ids, findings)

        for index, edge in enumerate(definition.edges):
            if edge.is_conditional:
                self._check_expression(edge.condition, findings, node_id=edge.source, edge_index=index)

    def _check_node_configuration(self, node: Node, node_ids: set[str], findings: list[ValidationFinding]) -> None:
        if node.type == NodeType.TASK and not node.config.get("handler"):
            findings.append(
                ValidationFinding("MissingTaskHandler", f"Task node '{node.id}' names no handler", node_id=node.id)
            )
        if node.type == NodeType.EVENT and not _EVENT_WAIT_KEYS & node.config.keys():
            findings.append(
                ValidationFinding(
                    "MissingSignalName",
                    f"Event node '{node.id}' waits for no timer, signal or event and passes straight through",
                    Severity.WARNING,
                    node_id=node.id,
                )
            )
        for boundary in node.boundary_events:
            if boundary.target not in node_ids:
                findings.append(
                    ValidationFinding(
                        "InvalidBoundaryTarget",
                        f"Boundary event on '{node.id}' targets unknown node '{boundary.target}'",
                        node_id=node.id,
                    )
                )
            if boundary.type in (BoundaryEventType.SIGNAL, BoundaryEventType.EVENT) and not boundary.name:
                findings.append(
                    ValidationFinding(
                        "MissingSignalName",
                        f"{boundary.type} boundary event on '{node.id}' requires a name",
                        node_id=node.id,
                    )
                )
            if boundary.type == BoundaryEventType.TIMER and boundary.duration_ms is None:
                findings.append(
                    ValidationFinding(
                        "MissingTimerDuration",
                        f"Timer boundary event on '{node.id}' requires duration_ms",
                        node_id=node.id,
                    )
                )
        for handler in node.error_handlers:
            if handler.handler_node_id and handler.handler_node_id not in node_ids:
                findings.append(
                    ValidationFinding(
                        "InvalidHandlerTarget",
                        f"Error handler on '{node.id}' targets unknown node '{handler.handler_node_id}'",
                        node_id=node.id,
                    )
                )
        for expression in (*node.input_mappings.values(), *node.output_mappings.values()):
            self._check_expression(expression, findings, node_id=node.id)

    def _check_expression(
        self,
        expression: str | None,
        findings: list[ValidationFinding],
        node_id: str | None = None,
        edge_index: int | None = None,
    ) -> None:
        try:
            self.evaluator.compile(expression or "")
        except ExpressionSyntaxError as exc:
            findings.append(ValidationFinding("InvalidExpression", str(exc), node_id=node_id, edge_index=edge_index))


def _strongly_connected(graph: dict[str, list[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative so deep graphs do not hit the recursion limit."""
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in graph:
        if root in index:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_pos = work[-1]
            if child_pos == 0:
                index[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = graph[node]
            if child_pos < len(children):
                work[-1] = (node, child_pos + 1)
                child = children[child_pos]
                if child not in index:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlink[node] = min(lowlink[node], index[child])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components
