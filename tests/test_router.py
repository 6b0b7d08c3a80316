"""Tests for signal, broadcast and event routing."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_orchestration.engine.runtime import WorkflowEngine

    from .conftest import MockEventBus


async def start_suspended(engine: WorkflowEngine, **kwargs: Any) -> UUID:
    started = await engine.start_workflow("approval", input={"amount": 250}, **kwargs)
    await engine.wait(started.instance_id, timeout=5)
    return started.instance_id


@pytest.mark.integration
@pytest.mark.asyncio
class TestSignal:
    """Tests for directed signals."""

    async def test_signal_resumes_waiting_instance(
        self,
        engine: WorkflowEngine,
        approval_json: dict[str, Any],
        mock_event_bus: MockEventBus,
    ) -> None:
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus

        engine.publish(approval_json)
        instance_id = await start_suspended(engine)
        suspended = await engine.get_instance(instance_id)

        await engine.signal(instance_id, "approved", {"approver": "kim"})
        result = await engine.wait(instance_id, timeout=5)
        history = await engine.get_history(instance_id)

        assert suspended.status == InstanceStatus.SUSPENDED
        assert [b.name for b in suspended.bookmarks] == ["approved"]
        assert result.status == InstanceStatus.COMPLETED
        assert result.output == {"amount": 250, "approver": "kim"}
        assert HistoryEntryType.ACTIVITY_RESUMED in [e.type for e in history]
        assert "workflow.resumed" in mock_event_bus.types()

    async def test_wrong_signal_leaves_instance_unchanged(
        self,
        engine: WorkflowEngine,
        approval_json: dict[str, Any],
    ) -> None:
        from litestar_orchestration.exceptions import NoSuchBookmarkError

        engine.publish(approval_json)
        instance_id = await start_suspended(engine)
        before = await engine.get_instance(instance_id)

        with pytest.raises(NoSuchBookmarkError) as exc_info:
            await engine.signal(instance_id, "rejected")

        after = await engine.get_instance(instance_id)
        assert exc_info.value.bookmark_name == "rejected"
        assert after.revision == before.revision
        assert after.status == before.status
        assert [b.name for b in after.bookmarks] == ["approved"]

    async def test_concurrent_signals_consume_bookmark_once(
        self,
        engine: WorkflowEngine,
        approval_json: dict[str, Any],
    ) -> None:
        from litestar_orchestration.core.models import WorkflowExecutionResult
        from litestar_orchestration.exceptions import NoSuchBookmarkError

        engine.publish(approval_json)
        instance_id = await start_suspended(engine)

        outcomes = await asyncio.gather(
            engine.signal(instance_id, "approved", {"approver": "kim"}),
            engine.signal(instance_id, "approved", {"approver": "lee"}),
            return_exceptions=True,
        )

        assert sum(isinstance(o, WorkflowExecutionResult) for o in outcomes) == 1
        assert sum(isinstance(o, NoSuchBookmarkError) for o in outcomes) == 1

    async def test_signal_before_bookmark_is_not_queued(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import InstanceStatus, NodeType
        from litestar_orchestration.exceptions import NoSuchBookmarkError

        engine.publish(
            WorkflowDefinition(
                workflow_id="two_step",
                nodes=[
                    Node("start", NodeType.START),
                    Node("first", NodeType.EVENT, config={"signal": "first"}),
                    Node("second", NodeType.EVENT, config={"signal": "second"}),
                    Node("end", NodeType.END),
                ],
                edges=[Edge("start", "first"), Edge("first", "second"), Edge("second", "end")],
            )
        )
        started = await engine.start_workflow("two_step")
        await engine.wait(started.instance_id, timeout=5)

        with pytest.raises(NoSuchBookmarkError):
            await engine.signal(started.instance_id, "second")
        await engine.signal(started.instance_id, "first")
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.SUSPENDED
        assert result.bookmarks == ["second"]

    async def test_correlation_mismatch(self, engine: WorkflowEngine, approval_json: dict[str, Any]) -> None:
        from litestar_orchestration.exceptions import NoSuchBookmarkError

        engine.publish(approval_json)
        instance_id = await start_suspended(engine, correlation_id="order-1")

        with pytest.raises(NoSuchBookmarkError):
            await engine.signal(instance_id, "approved", correlation_id="order-2")

        await engine.signal(instance_id, "approved", correlation_id="order-1")

    async def test_malformed_signal_name(self, engine: WorkflowEngine, approval_json: dict[str, Any]) -> None:
        from litestar_orchestration.exceptions import RequestValidationError

        engine.publish(approval_json)
        instance_id = await start_suspended(engine)

        with pytest.raises(RequestValidationError) as exc_info:
            await engine.signal(instance_id, "9 lives")

        assert "signal_name" in exc_info.value.errors

    async def test_signal_pending_instance(self, engine: WorkflowEngine, approval_json: dict[str, Any]) -> None:
        from datetime import timedelta

        from litestar_orchestration.core.models import utcnow
        from litestar_orchestration.exceptions import InvalidTransitionError

        engine.publish(approval_json)
        started = await engine.start_workflow(
            "approval",
            input={"amount": 1},
            scheduled_start_time=utcnow() + timedelta(hours=1),
        )

        with pytest.raises(InvalidTransitionError):
            await engine.signal(started.instance_id, "approved")


@pytest.mark.integration
@pytest.mark.asyncio
class TestBroadcast:
    """Tests for broadcast signals."""

    async def test_broadcast_reaches_every_waiting_instance(
        self,
        engine: WorkflowEngine,
        approval_json: dict[str, Any],
    ) -> None:
        from litestar_orchestration.core.types import InstanceStatus

        engine.publish(approval_json)
        waiting = [await start_suspended(engine, correlation_id=f"order-{n}") for n in range(3)]

        result = await engine.broadcast("approved", {"approver": "ops"})
        finals = [await engine.wait(i, timeout=5) for i in waiting]

        assert result.succeeded
        assert sorted(result.signalled) == sorted(waiting)
        assert [f.status for f in finals] == [InstanceStatus.COMPLETED] * 3

    async def test_broadcast_filters(self, engine: WorkflowEngine, approval_json: dict[str, Any]) -> None:
        engine.publish(approval_json)
        first = await start_suspended(engine, correlation_id="order-1")
        await start_suspended(engine, correlation_id="order-2")

        by_correlation = await engine.broadcast("approved", correlation_id="order-1")
        by_workflow = await engine.broadcast("approved", workflow_id="other")

        assert by_correlation.signalled == [first]
        assert by_workflow.signalled == []

    async def test_broadcast_without_waiters(self, engine: WorkflowEngine) -> None:
        result = await engine.broadcast("nobody_listens")

        assert result.signalled == []
        assert result.succeeded


@pytest.mark.integration
@pytest.mark.asyncio
class TestTriggerEvent:
    """Tests for named events."""

    async def test_event_starts_subscribed_workflows(
        self,
        engine: WorkflowEngine,
        linear_definition: Any,
    ) -> None:
        from litestar_orchestration.core.definition import Trigger
        from litestar_orchestration.core.types import InstanceStatus, TriggerType

        linear_definition.triggers = [Trigger(TriggerType.EVENT, event_name="patient.arrived")]
        engine.publish(linear_definition)

        results = await engine.trigger_event("patient.arrived", {"count": 10})
        final = await engine.wait(results[0].instance_id, timeout=5)

        assert len(results) == 1
        assert final.status == InstanceStatus.COMPLETED
        assert final.output == {"count": 11}

    async def test_event_resumes_waiting_instances(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import InstanceStatus, NodeType

        engine.publish(
            WorkflowDefinition(
                workflow_id="discharge",
                nodes=[
                    Node("start", NodeType.START),
                    Node("await_bed", NodeType.EVENT, config={"event": "bed.released"}),
                    Node("end", NodeType.END),
                ],
                edges=[Edge("start", "await_bed"), Edge("await_bed", "end")],
            )
        )
        started = await engine.start_workflow("discharge")
        suspended = await engine.wait(started.instance_id, timeout=5)

        results = await engine.trigger_event("bed.released", {"bed": 12})
        final = await engine.wait(started.instance_id, timeout=5)

        assert suspended.bookmarks == ["event:bed.released"]
        assert [r.instance_id for r in results] == [started.instance_id]
        assert final.status == InstanceStatus.COMPLETED
        assert final.output == {"bed": 12}

    async def test_event_boundary_interrupts_activity(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import BoundaryEvent, Edge, Node, WorkflowDefinition
        from litestar_orchestration.core.types import BoundaryEventType, InstanceStatus, NodeType

        engine.publish(
            WorkflowDefinition(
                workflow_id="escalation",
                nodes=[
                    Node("start", NodeType.START),
                    Node(
                        "review",
                        NodeType.EVENT,
                        config={"signal": "reviewed"},
                        boundary_events=[
                            BoundaryEvent(BoundaryEventType.EVENT, target="escalated", name="code.red"),
                        ],
                    ),
                    Node("done", NodeType.END),
                    Node("escalated", NodeType.END),
                ],
                edges=[Edge("start", "review"), Edge("review", "done")],
            )
        )
        started = await engine.start_workflow("escalation")
        await engine.wait(started.instance_id, timeout=5)

        await engine.trigger_event("code.red", {"ward": "icu"})
        final = await engine.wait(started.instance_id, timeout=5)
        history = await engine.get_history(started.instance_id)

        assert final.status == InstanceStatus.COMPLETED
        assert final.output == {"ward": "icu"}
        assert "escalated" in [e.activity_id for e in history]
        assert "done" not in [e.activity_id for e in history]

    async def test_malformed_event_name(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.exceptions import RequestValidationError

        with pytest.raises(RequestValidationError):
            await engine.trigger_event(".starts.with.dot")
