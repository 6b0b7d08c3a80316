"""Tests for retry policies, error handlers and boundary error events."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from litestar_orchestration.core.definition import ErrorHandler, WorkflowDefinition
    from litestar_orchestration.engine.runtime import WorkflowEngine


def flaky_definition(*handlers: ErrorHandler, recover: bool = False, **node_options: Any) -> WorkflowDefinition:
    from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
    from litestar_orchestration.core.types import NodeType

    nodes = [
        Node("start", NodeType.START),
        Node("call", NodeType.TASK, config={"handler": "call"}, error_handlers=list(handlers), **node_options),
        Node("end", NodeType.END),
    ]
    edges = [Edge("start", "call"), Edge("call", "end")]
    if recover:
        nodes.append(Node("recover", NodeType.TASK, config={"handler": "recover"}))
        edges.append(Edge("recover", "end"))
    return WorkflowDefinition(workflow_id="flaky", nodes=nodes, edges=edges)


class FlakyService:
    """Fails until ``failures`` calls have been made."""

    def __init__(self, failures: int, error_code: str = "Unavailable") -> None:
        self.failures = failures
        self.error_code = error_code
        self.calls: list[float] = []

    def __call__(self, context: Any) -> dict[str, Any]:
        from litestar_orchestration.exceptions import ActivityExecutionError

        self.calls.append(time.monotonic())
        if len(self.calls) <= self.failures:
            msg = f"call {len(self.calls)} failed"
            raise ActivityExecutionError(msg, error_code=self.error_code)
        return {"attempt": context.attempt}


@pytest.mark.integration
@pytest.mark.asyncio
class TestRetryPolicy:
    """Tests for retries with exponential backoff."""

    async def test_retries_with_backoff_then_faults(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import ErrorHandler, RetryPolicy
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus

        service = FlakyService(failures=10)
        engine.tasks.register("call", service)
        policy = RetryPolicy(max_retries=2, initial_delay_ms=100)
        handler = ErrorHandler(error_codes=["Unavailable"], retry_policy=policy)
        engine.publish(flaky_definition(handler))

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)
        history = await engine.get_history(started.instance_id)

        assert result.status == InstanceStatus.FAULTED
        assert result.error is not None
        assert result.error.code == "Unavailable"
        assert len(service.calls) == 3
        assert service.calls[1] - service.calls[0] >= 0.09
        assert service.calls[2] - service.calls[1] >= 0.19
        retries = [e for e in history if e.type == HistoryEntryType.ACTIVITY_RETRY_SCHEDULED]
        assert [e.output for e in retries] == [
            {"attempt": 1, "delay_ms": 100},
            {"attempt": 2, "delay_ms": 200},
        ]

    async def test_recovers_within_retry_budget(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import ErrorHandler, RetryPolicy
        from litestar_orchestration.core.types import InstanceStatus

        service = FlakyService(failures=1)
        engine.tasks.register("call", service)
        engine.publish(flaky_definition(ErrorHandler(retry_policy=RetryPolicy(max_retries=3, initial_delay_ms=10))))

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.COMPLETED
        assert result.output == {"attempt": 1}
        assert len(service.calls) == 2

    async def test_non_matching_codes_are_not_retried(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import ErrorHandler, RetryPolicy
        from litestar_orchestration.core.types import InstanceStatus

        service = FlakyService(failures=1, error_code="CardDeclined")
        engine.tasks.register("call", service)
        policy = RetryPolicy(max_retries=3, initial_delay_ms=10)
        handler = ErrorHandler(error_codes=["Unavailable"], retry_policy=policy)
        engine.publish(flaky_definition(handler))

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.FAULTED
        assert len(service.calls) == 1

    async def test_workflow_level_handler_applies(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import ErrorHandler, RetryPolicy
        from litestar_orchestration.core.types import InstanceStatus

        service = FlakyService(failures=2)
        engine.tasks.register("call", service)
        definition = flaky_definition()
        definition.error_handlers = [ErrorHandler(retry_policy=RetryPolicy(max_retries=2, initial_delay_ms=10))]
        engine.publish(definition)

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.COMPLETED
        assert len(service.calls) == 3


@pytest.mark.integration
@pytest.mark.asyncio
class TestErrorRouting:
    """Tests for handler nodes and boundary error events."""

    async def test_handler_node_takes_over(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import ErrorHandler
        from litestar_orchestration.core.types import InstanceStatus

        engine.tasks.register("call", FlakyService(failures=1))
        engine.tasks.register("recover", lambda context: {"recovered": True})
        handler = ErrorHandler(error_codes=["Unavailable"], handler_node_id="recover")
        engine.publish(flaky_definition(handler, recover=True))

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)

        assert result.status == InstanceStatus.COMPLETED
        assert result.output == {"recovered": True}

    async def test_boundary_error_event_wins_over_handlers(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.definition import BoundaryEvent, ErrorHandler, RetryPolicy
        from litestar_orchestration.core.types import BoundaryEventType, HistoryEntryType, InstanceStatus

        service = FlakyService(failures=5)
        engine.tasks.register("call", service)
        engine.tasks.register("recover", lambda context: {"recovered": True})
        engine.publish(
            flaky_definition(
                ErrorHandler(retry_policy=RetryPolicy(max_retries=3, initial_delay_ms=10)),
                boundary_events=[
                    BoundaryEvent(BoundaryEventType.ERROR, target="recover", error_codes=["Unavailable"]),
                ],
                recover=True,
            )
        )

        started = await engine.start_workflow("flaky")
        result = await engine.wait(started.instance_id, timeout=5)
        history = await engine.get_history(started.instance_id)

        assert result.status == InstanceStatus.COMPLETED
        assert len(service.calls) == 1
        assert any(e.type == HistoryEntryType.BOUNDARY_EVENT_TRIGGERED for e in history)


@pytest.mark.integration
@pytest.mark.asyncio
class TestRetryFaultedInstance:
    """Tests for re-running a faulted instance."""

    async def test_retry_reruns_failed_activity(self, engine: WorkflowEngine) -> None:
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus

        service = FlakyService(failures=1)
        engine.tasks.register("call", service)
        engine.publish(flaky_definition())

        started = await engine.start_workflow("flaky")
        faulted = await engine.wait(started.instance_id, timeout=5)
        retried = await engine.retry(started.instance_id)
        result = await engine.wait(started.instance_id, timeout=5)
        instance = await engine.get_instance(started.instance_id)

        assert faulted.status == InstanceStatus.FAULTED
        assert retried.status == InstanceStatus.RUNNING
        assert result.status == InstanceStatus.COMPLETED
        assert result.error is None
        assert instance.fault_count == 1
        assert HistoryEntryType.WORKFLOW_RETRIED in [e.type for e in instance.history]

    async def test_retry_requires_faulted_status(
        self,
        engine: WorkflowEngine,
        linear_definition: WorkflowDefinition,
    ) -> None:
        from litestar_orchestration.exceptions import InvalidTransitionError

        engine.publish(linear_definition)
        started = await engine.start_workflow("linear")
        await engine.wait(started.instance_id, timeout=5)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await engine.retry(started.instance_id)

        assert exc_info.value.operation == "retry"
