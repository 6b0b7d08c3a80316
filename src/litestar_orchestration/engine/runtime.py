"""Workflow engine facade.

:class:`WorkflowEngine` wires the registry, instance store, scheduler, router and
lifecycle manager together and exposes their operations in one place.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from litestar_orchestration.activities.registry import ExecutorRegistry
from litestar_orchestration.activities.task import ASYNC_ACTIVITY_BOOKMARK, TaskHandlerRegistry
from litestar_orchestration.config import EngineConfig
from litestar_orchestration.core.expressions import ExpressionEvaluator
from litestar_orchestration.engine.lifecycle import LifecycleManager
from litestar_orchestration.engine.registry import WorkflowRegistry
from litestar_orchestration.engine.router import SignalRouter
from litestar_orchestration.engine.scheduler import ExecutionScheduler
from litestar_orchestration.engine.validator import DefinitionValidator
from litestar_orchestration.stores.memory import InMemoryInstanceStore

if TYPE_CHECKING:
    from datetime import datetime
    from types import TracebackType
    from uuid import UUID

    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.core.models import (
        BroadcastResult,
        HistoryEntry,
        Page,
        WorkflowExecutionResult,
        WorkflowInstance,
    )
    from litestar_orchestration.core.protocols import EventBus, InstanceStore
    from litestar_orchestration.dto import InstanceQuery
    from litestar_orchestration.engine.graph import WorkflowGraph

__all__ = ["WorkflowEngine"]

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Durable workflow engine.

    Attributes:
        config: Engine tuning options.
        tasks: Task handlers available to task nodes.
        registry: Published workflows.
        store: Instance store.
        scheduler: Runs instances.
        lifecycle: Creates instances and applies status transitions.
        router: Delivers signals and events.

    Example:
        >>> tasks = TaskHandlerRegistry()
        >>> tasks.register("admit", admit_patient)
        >>> async with WorkflowEngine(tasks=tasks) as engine:
        ...     engine.publish(WorkflowDefinition.from_dict(payload))
        ...     started = await engine.start_workflow("admission", input={"patient_id": "p-1"})
        ...     result = await engine.wait(started.instance_id, timeout=5)
    """

    def __init__(
        self,
        store: InstanceStore | None = None,
        tasks: TaskHandlerRegistry | None = None,
        registry: WorkflowRegistry | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        evaluator: ExpressionEvaluator | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Instance store. Defaults to an :class:`InMemoryInstanceStore`.
            tasks: Task handlers. Ignored when ``registry`` is given.
            registry: Workflow registry. Defaults to one resolving ``tasks``.
            config: Engine tuning options.
            event_bus: Optional receiver of lifecycle events.
            evaluator: Expression evaluator shared by validation and execution.
        """
        self.config = config or EngineConfig()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.registry = registry or WorkflowRegistry(
            executors=ExecutorRegistry(tasks),
            validator=DefinitionValidator(self.evaluator),
        )
        self.tasks = self.registry.executors.tasks
        self.store: InstanceStore = store or InMemoryInstanceStore()
        self.event_bus = event_bus
        self.scheduler = ExecutionScheduler(self.registry, self.store, self.evaluator, self.config, event_bus)
        self.lifecycle = LifecycleManager(self.registry, self.store, self.scheduler, event_bus)
        self.router = SignalRouter(self.registry, self.store, self.scheduler, self.lifecycle, event_bus)
        self.lifecycle.router = self.router

    async def start(self) -> None:
        """Start the scheduler's workers."""
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler's workers. Persisted instances are left as they are."""
        await self.scheduler.stop()

    async def __aenter__(self) -> WorkflowEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def publish(self, definition: WorkflowDefinition | dict[str, Any]) -> WorkflowGraph:
        """Publish a definition, given as a model or as designer JSON."""
        if isinstance(definition, dict):
            from litestar_orchestration.core.definition import WorkflowDefinition

            definition = WorkflowDefinition.from_dict(definition)
        return self.registry.publish(definition)

    async def start_workflow(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,  # noqa: A002
        version: int | None = None,
        name: str | None = None,
        correlation_id: str | None = None,
        priority: int | None = None,
        scheduled_start_time: datetime | None = None,
    ) -> WorkflowExecutionResult:
        return await self.lifecycle.start(
            workflow_id,
            input=input,
            version=version,
            name=name,
            correlation_id=correlation_id,
            priority=priority,
            scheduled_start_time=scheduled_start_time,
        )

    async def resume(
        self,
        instance_id: UUID,
        bookmark_name: str,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowExecutionResult:
        return await self.lifecycle.resume(instance_id, bookmark_name, payload)

    async def complete_activity(
        self,
        instance_id: UUID,
        output: dict[str, Any] | None = None,
    ) -> WorkflowExecutionResult:
        """Finish an activity whose handler handed off to an external system.

        The handler must have returned ``Suspended(ASYNC_ACTIVITY_BOOKMARK)``.
        """
        return await self.lifecycle.resume(instance_id, ASYNC_ACTIVITY_BOOKMARK, output)

    async def cancel(self, instance_id: UUID, reason: str | None = None) -> WorkflowExecutionResult:
        return await self.lifecycle.cancel(instance_id, reason)

    async def terminate(self, instance_id: UUID, reason: str | None = None) -> WorkflowExecutionResult:
        return await self.lifecycle.terminate(instance_id, reason)

    async def retry(self, instance_id: UUID) -> WorkflowExecutionResult:
        return await self.lifecycle.retry(instance_id)

    async def signal(
        self,
        instance_id: UUID,
        signal_name: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> WorkflowExecutionResult:
        return await self.router.signal(instance_id, signal_name, payload, correlation_id)

    async def broadcast(
        self,
        signal_name: str,
        payload: dict[str, Any] | None = None,
        workflow_id: str | None = None,
        correlation_id: str | None = None,
    ) -> BroadcastResult:
        return await self.router.broadcast(signal_name, payload, workflow_id, correlation_id)

    async def trigger_event(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
    ) -> list[WorkflowExecutionResult]:
        return await self.router.trigger_event(event_name, payload)

    async def get_instance(self, instance_id: UUID) -> WorkflowInstance:
        return await self.lifecycle.get_instance(instance_id)

    async def get_history(self, instance_id: UUID) -> list[HistoryEntry]:
        return await self.lifecycle.get_history(instance_id)

    async def list_instances(self, query: InstanceQuery | None = None) -> Page[WorkflowInstance]:
        return await self.lifecycle.list_instances(query)

    async def wait(self, instance_id: UUID, timeout: float | None = None) -> WorkflowExecutionResult:
        return await self.lifecycle.wait(instance_id, timeout)
