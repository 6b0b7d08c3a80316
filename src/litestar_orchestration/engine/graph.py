"""Compiled workflow graph and edge routing.

A published definition is compiled into a :class:`WorkflowGraph`: nodes and edges
live in flat lists and refer to each other by integer index, so cyclic graphs need
no pointer juggling. Each node's executor is resolved once, at compile time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from litestar_orchestration.core.types import NodeType
from litestar_orchestration.exceptions import NoMatchingEdgeError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_orchestration.activities.registry import ExecutorRegistry
    from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
    from litestar_orchestration.core.expressions import ExpressionEvaluator
    from litestar_orchestration.core.protocols import ActivityExecutor

__all__ = ["CompiledNode", "WorkflowGraph"]


@dataclass(frozen=True)
class CompiledNode:
    """A node together with its resolved executor and adjacency.

    Attributes:
        index: Position of the node in the arena.
        node: The authored node.
        executor: Executor resolved for the node's type.
        outgoing: Indexes of outgoing edges, in evaluation order.
        incoming: Indexes of incoming edges.
    """

    index: int
    node: Node
    executor: ActivityExecutor
    outgoing: tuple[int, ...]
    incoming: tuple[int, ...]

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def is_join(self) -> bool:
        """Whether tokens arriving here wait for their sibling branches."""
        return self.node.type == NodeType.PARALLEL_GATEWAY and len(self.incoming) > 1


class WorkflowGraph:
    """Immutable, compiled form of a published workflow definition.

    Attributes:
        definition: The published definition. Treat as read-only.
        nodes: Compiled nodes, indexed by arena position.
        edges: Edges, indexed by arena position.
    """

    def __init__(self, definition: WorkflowDefinition, executors: ExecutorRegistry) -> None:
        """Compile ``definition``.

        The definition must already have passed validation.

        Args:
            definition: The definition to compile.
            executors: Registry used to resolve each node's executor.
        """
        self.definition = definition
        self.edges: list[Edge] = list(definition.edges)
        self._index: dict[str, int] = {node.id: i for i, node in enumerate(definition.nodes)}

        outgoing: list[list[int]] = [[] for _ in definition.nodes]
        incoming: list[list[int]] = [[] for _ in definition.nodes]
        for edge_index, edge in enumerate(self.edges):
            outgoing[self._index[edge.source]].append(edge_index)
            incoming[self._index[edge.target]].append(edge_index)

        self.nodes: list[CompiledNode] = [
            CompiledNode(
                index=i,
                node=node,
                executor=executors.resolve(node),
                outgoing=tuple(sorted(outgoing[i], key=lambda e: (self.edges[e].priority, e))),
                incoming=tuple(incoming[i]),
            )
            for i, node in enumerate(definition.nodes)
        ]
        self.start = next(n for n in self.nodes if n.node.type == NodeType.START)

    @property
    def workflow_id(self) -> str:
        return self.definition.workflow_id

    @property
    def version(self) -> int:
        return self.definition.version or 0

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def node(self, node_id: str) -> CompiledNode:
        """Look up a compiled node by id.

        Raises:
            KeyError: If the graph has no such node.
        """
        return self.nodes[self._index[node_id]]

    def target_of(self, edge_index: int) -> CompiledNode:
        return self.node(self.edges[edge_index].target)

    def select_exclusive(
        self,
        node_id: str,
        variables: Mapping[str, Any],
        evaluator: ExpressionEvaluator,
    ) -> int:
        """Pick exactly one outgoing edge.

        Edges are evaluated in ascending priority; the first whose condition holds
        wins. The default edge is taken only when nothing else matches.

        Returns:
            Index of the selected edge.

        Raises:
            NoMatchingEdgeError: If nothing matches and there is no default edge.
            ExpressionError: If a condition cannot be evaluated.
        """
        default: int | None = None
        for edge_index in self.node(node_id).outgoing:
            edge = self.edges[edge_index]
            if edge.is_default:
                default = edge_index
            elif evaluator.evaluate_condition(edge.condition, variables):
                return edge_index
        if default is None:
            raise NoMatchingEdgeError(node_id)
        return default

    def select_parallel(
        self,
        node_id: str,
        variables: Mapping[str, Any],
        evaluator: ExpressionEvaluator,
    ) -> tuple[int, ...]:
        """Pick every outgoing edge whose condition holds.

        When no outgoing edge carries a condition, every non-default edge is taken.

        Raises:
            NoMatchingEdgeError: If nothing matches and there is no default edge.
        """
        candidates = [e for e in self.node(node_id).outgoing if not self.edges[e].is_default]
        defaults = [e for e in self.node(node_id).outgoing if self.edges[e].is_default]
        selected = tuple(e for e in candidates if evaluator.evaluate_condition(self.edges[e].condition, variables))
        if selected:
            return selected
        if defaults:
            return (defaults[0],)
        raise NoMatchingEdgeError(node_id)
