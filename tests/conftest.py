"""Shared test fixtures for litestar-orchestration test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar_orchestration.activities.task import TaskHandlerRegistry
    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.engine.runtime import WorkflowEngine
    from litestar_orchestration.stores.memory import InMemoryInstanceStore


class MockEventBus:
    """Mock event bus for testing."""

    def __init__(self) -> None:
        """Initialize mock event bus."""
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def emit(self, event_type: str, **kwargs: Any) -> None:
        """Emit an event."""
        self.events.append((event_type, kwargs))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def mock_event_bus() -> MockEventBus:
    """Create mock event bus."""
    return MockEventBus()


@pytest.fixture
def tasks() -> TaskHandlerRegistry:
    """Task handler registry with a few general purpose handlers.

    Returns:
        TaskHandlerRegistry with ``noop``, ``echo`` and ``increment`` registered.
    """
    from litestar_orchestration.activities.task import TaskHandlerRegistry

    registry = TaskHandlerRegistry()
    registry.register("noop", lambda context: None)
    registry.register("echo", lambda context: dict(context.inputs))

    async def increment(context: Any) -> dict[str, Any]:
        return {"count": context.get("count", 0) + 1}

    registry.register("increment", increment)
    return registry


@pytest.fixture
def memory_store() -> InMemoryInstanceStore:
    """Create an empty in-memory instance store."""
    from litestar_orchestration.stores.memory import InMemoryInstanceStore

    return InMemoryInstanceStore()


@pytest.fixture
async def engine(
    tasks: TaskHandlerRegistry,
    memory_store: InMemoryInstanceStore,
    mock_event_bus: MockEventBus,
) -> AsyncIterator[WorkflowEngine]:
    """Create a running engine with fast polling.

    Args:
        tasks: Task handler registry fixture
        memory_store: Instance store fixture
        mock_event_bus: Mock event bus fixture

    Yields:
        Started WorkflowEngine, stopped after the test
    """
    from litestar_orchestration.config import EngineConfig
    from litestar_orchestration.engine.runtime import WorkflowEngine

    workflow_engine = WorkflowEngine(
        store=memory_store,
        tasks=tasks,
        config=EngineConfig(worker_count=2, due_poll_interval=0.05),
        event_bus=mock_event_bus,
    )
    async with workflow_engine:
        yield workflow_engine


@pytest.fixture
def linear_definition() -> WorkflowDefinition:
    """start -> work -> end, where ``work`` runs the ``increment`` handler."""
    from litestar_orchestration.core.definition import Edge, Node, WorkflowDefinition
    from litestar_orchestration.core.types import NodeType

    return WorkflowDefinition(
        workflow_id="linear",
        nodes=[
            Node("start", NodeType.START),
            Node("work", NodeType.TASK, config={"handler": "increment"}),
            Node("end", NodeType.END),
        ],
        edges=[Edge("start", "work"), Edge("work", "end")],
    )


@pytest.fixture
def approval_json() -> dict[str, Any]:
    """Designer JSON of a workflow that waits for an ``approved`` signal."""
    return {
        "workflowId": "approval",
        "name": "Approval",
        "inputParameters": [{"name": "amount", "type": "Number", "isRequired": True}],
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "wait", "type": "event", "config": {"signal": "approved"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"source": "start", "target": "wait"},
            {"source": "wait", "target": "end"},
        ],
    }


def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers.

    Args:
        config: Pytest config object
    """
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
