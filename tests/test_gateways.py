"""Tests for exclusive and parallel gateway execution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.engine.runtime import WorkflowEngine


def triage_definition() -> WorkflowDefinition:
    from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
    from litestar_orchestration.core.types import NodeType

    return WorkflowDefinition(
        workflow_id="triage",
        nodes=[
            Node("start", NodeType.START),
            Node("gw", NodeType.EXCLUSIVE_GATEWAY),
            Node("critical", NodeType.TASK, config={"handler": "mark"}, input_mappings={"route": "'critical'"}),
            Node("urgent", NodeType.TASK, config={"handler": "mark"}, input_mappings={"route": "'urgent'"}),
            Node("routine", NodeType.TASK, config={"handler": "mark"}, input_mappings={"route": "'routine'"}),
            Node("end", NodeType.END),
        ],
        edges=[
            Edge("start", "gw"),
            Edge("gw", "critical", condition="severity > 8", priority=1),
            Edge("gw", "urgent", condition="severity > 4", priority=2),
            Edge("gw", "routine", is_default=True),
            Edge("critical", "end"),
            Edge("urgent", "end"),
            Edge("routine", "end"),
        ],
    )


def fan_out_definition(branches: list[str]) -> WorkflowDefinition:
    from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
    from litestar_orchestration.core.types import NodeType

    nodes = [Node("start", NodeType.START), Node("split", NodeType.PARALLEL_GATEWAY)]
    nodes += [Node(b, NodeType.TASK, config={"handler": "branch"}, input_mappings={"name": f"'{b}'"}) for b in branches]
    nodes += [
        Node("join", NodeType.PARALLEL_GATEWAY),
        Node("after", NodeType.TASK, config={"handler": "after_join"}),
        Node("end", NodeType.END),
    ]
    edges = [Edge("start", "split")]
    edges += [Edge("split", b) for b in branches]
    edges += [Edge(b, "join") for b in branches]
    edges += [Edge("join", "after"), Edge("after", "end")]
    return WorkflowDefinition(workflow_id="fanout", nodes=nodes, edges=edges)


@pytest.mark.integration
@pytest.mark.asyncio
class TestExclusiveGateway:
    """Tests for exclusive gateway routing."""

    @pytest.mark.parametrize(
        ("severity", "route"),
        [(9, "critical"), (6, "urgent"), (1, "routine")],
    )
    async def test_first_matching_edge_by_priority(self, engine: WorkflowEngine, severity: int, route: str) -> None:
        from litestar_orchestration.core.types import InstanceStatus

        engine.tasks.register("mark", lambda context: {"route": context.inputs["route"]})
        engine.publish(triage_definition())

        started = await engine.start_workflow("triage", input={"severity": severity})
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.COMPLETED
        assert result.output is not None
        assert result.output["route"] == route

    async def test_no_matching_edge_faults(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import InstanceStatus, NodeType

        engine.publish(
            WorkflowDefinition(
                workflow_id="strict",
                nodes=[
                    Node("start", NodeType.START),
                    Node("gw", NodeType.EXCLUSIVE_GATEWAY),
                    Node("high", NodeType.END),
                    Node("low", NodeType.END),
                ],
                edges=[
                    Edge("start", "gw"),
                    Edge("gw", "high", condition="level == 'high'"),
                    Edge("gw", "low", condition="level == 'low'"),
                ],
            )
        )

        started = await engine.start_workflow("strict", input={"level": "medium"})
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.FAULTED
        assert result.error is not None
        assert result.error.code == "NoMatchingEdge"
        assert result.error.activity_id == "gw"

    async def test_unknown_variable_in_condition_faults(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.types import InstanceStatus

        engine.tasks.register("mark", lambda context: None)
        engine.publish(triage_definition())

        started = await engine.start_workflow("triage", input={"priority": 3})
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.FAULTED
        assert result.error is not None
        assert result.error.code == "UnknownVariable"


@pytest.mark.integration
@pytest.mark.asyncio
class TestParallelGateway:
    """Tests for parallel fork and join."""

    async def test_join_runs_once_after_every_branch(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus

        arrivals: list[str] = []
        joins: list[dict[str, Any]] = []

        def branch(context: Any) -> dict[str, Any]:
            arrivals.append(context.inputs["name"])
            return {context.inputs["name"]: True}

        def after_join(context: Any) -> None:
            joins.append(dict(context.variables))

        engine.tasks.register("branch", branch)
        engine.tasks.register("after_join", after_join)
        engine.publish(fan_out_definition(["a", "b", "c"]))

        started = await engine.start_workflow("fanout")
        result = await engine.wait(started.instance_id, timeout=5)
        history = await engine.get_history(started.instance_id)
        instance = await engine.get_instance(started.instance_id)

        completed_joins = [
            e for e in history if e.type == HistoryEntryType.ACTIVITY_COMPLETED and e.activity_id == "join"
        ]
        assert result.status == InstanceStatus.COMPLETED
        assert sorted(arrivals) == ["a", "b", "c"]
        assert len(joins) == 1
        assert {"a", "b", "c"} <= joins[0].keys()
        assert len(completed_joins) == 1
        assert instance.tokens == []
        assert instance.forks == {}

    async def test_join_waits_for_branches_resumed_in_reverse_order(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus, NodeType

        branches = ["a", "b", "c"]
        joins: list[dict[str, Any]] = []
        engine.tasks.register("after_join", lambda context: joins.append(dict(context.variables)))
        engine.publish(
            WorkflowDefinition(
                workflow_id="approvals",
                nodes=[
                    Node("start", NodeType.START),
                    Node("split", NodeType.PARALLEL_GATEWAY),
                    *[Node(b, NodeType.EVENT, config={"signal": f"approved_{b}"}) for b in branches],
                    Node("join", NodeType.PARALLEL_GATEWAY),
                    Node("after", NodeType.TASK, config={"handler": "after_join"}),
                    Node("end", NodeType.END),
                ],
                edges=[
                    Edge("start", "split"),
                    *[Edge("split", b) for b in branches],
                    *[Edge(b, "join") for b in branches],
                    Edge("join", "after"),
                    Edge("after", "end"),
                ],
            )
        )

        started = await engine.start_workflow("approvals")
        statuses = [(await engine.wait(started.instance_id, timeout=5)).status]
        for name in reversed(branches):
            await engine.signal(started.instance_id, f"approved_{name}", {f"{name}_approved": True})
            statuses.append((await engine.wait(started.instance_id, timeout=5)).status)
        history = await engine.get_history(started.instance_id)
        instance = await engine.get_instance(started.instance_id)

        completed_joins = [
            e for e in history if e.type == HistoryEntryType.ACTIVITY_COMPLETED and e.activity_id == "join"
        ]
        assert statuses == [InstanceStatus.SUSPENDED] * 3 + [InstanceStatus.COMPLETED]
        assert len(joins) == 1
        assert {"a_approved", "b_approved", "c_approved"} <= joins[0].keys()
        assert len(completed_joins) == 1
        assert instance.tokens == []
        assert instance.forks == {}

    async def test_conditional_split_only_starts_matching_branches(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import InstanceStatus, NodeType

        ran: list[str] = []
        engine.tasks.register("record", lambda context: ran.append(context.node.id))
        engine.publish(
            WorkflowDefinition(
                workflow_id="notify",
                nodes=[
                    Node("start", NodeType.START),
                    Node("split", NodeType.PARALLEL_GATEWAY),
                    Node("email", NodeType.TASK, config={"handler": "record"}),
                    Node("sms", NodeType.TASK, config={"handler": "record"}),
                    Node("join", NodeType.PARALLEL_GATEWAY),
                    Node("end", NodeType.END),
                ],
                edges=[
                    Edge("start", "split"),
                    Edge("split", "email", condition="channels.email"),
                    Edge("split", "sms", condition="channels.sms"),
                    Edge("email", "join"),
                    Edge("sms", "join"),
                    Edge("join", "end"),
                ],
            )
        )

        started = await engine.start_workflow("notify", input={"channels": {"email": True, "sms": False}})
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.COMPLETED
        assert ran == ["email"]

    async def test_branch_ending_early_releases_join(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus, NodeType

        engine.publish(
            WorkflowDefinition(
                workflow_id="partial",
                nodes=[
                    Node("start", NodeType.START),
                    Node("split", NodeType.PARALLEL_GATEWAY),
                    Node("audit", NodeType.TASK, config={"handler": "noop"}),
                    Node("audit_end", NodeType.END),
                    Node("a", NodeType.TASK, config={"handler": "noop"}),
                    Node("b", NodeType.TASK, config={"handler": "noop"}),
                    Node("join", NodeType.PARALLEL_GATEWAY),
                    Node("end", NodeType.END),
                ],
                edges=[
                    Edge("start", "split"),
                    Edge("split", "audit"),
                    Edge("split", "a"),
                    Edge("split", "b"),
                    Edge("audit", "audit_end"),
                    Edge("a", "join"),
                    Edge("b", "join"),
                    Edge("join", "end"),
                ],
            )
        )

        started = await engine.start_workflow("partial")
        result = await engine.wait(started.instance_id, timeout=5)
        history = await engine.get_history(started.instance_id)

        assert result.status == InstanceStatus.COMPLETED
        completed = [e.activity_id for e in history if e.type == HistoryEntryType.ACTIVITY_COMPLETED]
        assert completed.count("join") == 1
        assert completed.count("end") == 1
        assert completed.count("audit_end") == 1
