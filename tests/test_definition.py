"""Tests for workflow definition structures."""

from __future__ import annotations

from typing import Any

import pytest


@pytest.mark.unit
class TestDefinitionFromDict:
    """Tests for building definitions from designer JSON."""

    def test_camel_case_document(self, approval_json: dict[str, Any]) -> None:
        from litestar_orchestration.core.definition import WorkflowDefinition
        from litestar_orchestration.core.types import NodeType, ParameterType

        definition = WorkflowDefinition.from_dict(approval_json)

        assert definition.workflow_id == "approval"
        assert definition.version is None
        assert [n.type for n in definition.nodes] == [NodeType.START, NodeType.EVENT, NodeType.END]
        assert definition.input_parameters[0].type == ParameterType.NUMBER
        assert definition.input_parameters[0].required is True

    def test_node_details(self) -> None:
        from litestar_orchestration.core.definition import Node
        from litestar_orchestration.core.types import BoundaryEventType, NodeType

        node = Node.from_dict(
            {
                "id": "charge",
                "type": "task",
                "label": "Charge card",
                "properties": {"handler": "charge"},
                "outputMappings": {"receipt.id": "output.id"},
                "boundaryEvents": [{"type": "Timer", "durationMs": 500, "targetNodeId": "escalate"}],
                "errorHandlers": [
                    {
                        "errorCodes": ["CardDeclined"],
                        "retryPolicy": {"maxRetries": 2, "initialDelayMs": 10},
                    }
                ],
            }
        )

        assert node.type == NodeType.TASK
        assert node.name == "Charge card"
        assert node.config == {"handler": "charge"}
        assert node.output_mappings == {"receipt.id": "output.id"}
        assert node.boundary_events[0].type == BoundaryEventType.TIMER
        assert node.boundary_events[0].cancel_activity is True
        assert node.error_handlers[0].retry_policy is not None
        assert node.error_handlers[0].retry_policy.max_retries == 2

    def test_node_type_spellings(self) -> None:
        from litestar_orchestration.core.definition import Node
        from litestar_orchestration.core.types import NodeType

        assert Node("g", "exclusiveGateway").type == NodeType.EXCLUSIVE_GATEWAY
        assert Node("g", "ParallelGateway").type == NodeType.PARALLEL_GATEWAY
        assert Node("g", "parallel_gateway").type == NodeType.PARALLEL_GATEWAY

    def test_unknown_node_type(self) -> None:
        from litestar_orchestration.core.definition import Node

        with pytest.raises(ValueError, match="not a valid NodeType"):
            Node("x", "subprocess")

    def test_event_trigger(self) -> None:
        from litestar_orchestration.core.definition import WorkflowDefinition

        definition = WorkflowDefinition.from_dict(
            {
                "workflowId": "intake",
                "nodes": [],
                "edges": [],
                "triggers": [{"type": "event", "config": {"eventName": "patient.arrived"}}],
            }
        )

        assert definition.has_event_trigger("patient.arrived")
        assert not definition.has_event_trigger("patient.left")


@pytest.mark.unit
class TestRetryPolicy:
    """Tests for RetryPolicy backoff."""

    def test_exponential_delays(self) -> None:
        from litestar_orchestration.core.definition import RetryPolicy

        policy = RetryPolicy(max_retries=5, initial_delay_ms=100, backoff_multiplier=2.0, max_delay_ms=500)

        assert [policy.delay_ms(attempt) for attempt in range(5)] == [100, 200, 400, 500, 500]


@pytest.mark.unit
class TestErrorHandler:
    """Tests for ErrorHandler matching."""

    def test_empty_codes_match_everything(self) -> None:
        from litestar_orchestration.core.definition import ErrorHandler

        assert ErrorHandler().matches("Anything")
        assert ErrorHandler(error_codes=["Timeout"]).matches("Timeout")
        assert not ErrorHandler(error_codes=["Timeout"]).matches("Declined")
