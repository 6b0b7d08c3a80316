"""Litestar plugin for workflow orchestration.

This module provides the OrchestrationPlugin, which wires a
:class:`~litestar_orchestration.engine.runtime.WorkflowEngine` into a Litestar
application and runs its scheduler for the lifetime of the application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_orchestration.engine.registry import WorkflowRegistry
from litestar_orchestration.engine.runtime import WorkflowEngine

if TYPE_CHECKING:
    from litestar.config.app import AppConfig

    from litestar_orchestration.activities.task import TaskHandlerRegistry
    from litestar_orchestration.config import EngineConfig
    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.core.protocols import EventBus, InstanceStore

__all__ = ["OrchestrationPlugin", "OrchestrationPluginConfig"]


@dataclass
class OrchestrationPluginConfig:
    """Configuration for the OrchestrationPlugin.

    Attributes:
        engine: Optional pre-configured WorkflowEngine. If not provided, one is
            created from the remaining options.
        registry: Optional pre-configured WorkflowRegistry for a created engine.
        store: Optional instance store for a created engine. Defaults to the
            in-memory store.
        tasks: Task handlers for a created engine.
        engine_config: Tuning options for a created engine.
        event_bus: Optional receiver of lifecycle events for a created engine.
        definitions: Definitions, as models or designer JSON, published when the
            application initializes.
        dependency_key_engine: The key used for dependency injection of the
            WorkflowEngine. Defaults to "workflow_engine".
        dependency_key_registry: The key used for dependency injection of the
            WorkflowRegistry. Defaults to "workflow_registry".
        start_engine: Whether to start the scheduler on application startup and
            stop it on shutdown. Defaults to True.
    """

    engine: WorkflowEngine | None = None
    registry: WorkflowRegistry | None = None
    store: InstanceStore | None = None
    tasks: TaskHandlerRegistry | None = None
    engine_config: EngineConfig | None = None
    event_bus: EventBus | None = None
    definitions: list[WorkflowDefinition | dict[str, Any]] = field(default_factory=list)
    dependency_key_engine: str = "workflow_engine"
    dependency_key_registry: str = "workflow_registry"
    start_engine: bool = True


class OrchestrationPlugin(InitPluginProtocol):
    """Litestar plugin for workflow orchestration.

    Example:
        Publishing a definition and starting instances from a route handler::

            from litestar import Litestar, post
            from litestar_orchestration import OrchestrationPlugin, OrchestrationPluginConfig, WorkflowEngine


            @post("/admissions")
            async def admit(data: dict, workflow_engine: WorkflowEngine) -> dict:
                result = await workflow_engine.start_workflow("admission", input=data)
                return {"instance_id": str(result.instance_id), "status": result.status}


            app = Litestar(
                route_handlers=[admit],
                plugins=[
                    OrchestrationPlugin(
                        config=OrchestrationPluginConfig(tasks=tasks, definitions=[admission_json]),
                    )
                ],
            )
    """

    __slots__ = ("_config", "_engine")

    def __init__(self, config: OrchestrationPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or OrchestrationPluginConfig()
        self._engine: WorkflowEngine | None = None

    @property
    def engine(self) -> WorkflowEngine:
        """Get the workflow engine.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._engine is None:
            msg = "OrchestrationPlugin has not been initialized. Access engine after app initialization."
            raise RuntimeError(msg)
        return self._engine

    @property
    def registry(self) -> WorkflowRegistry:
        """Get the workflow registry.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        return self.engine.registry

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Wire the engine into the application.

        This method:
        1. Creates or uses the provided WorkflowEngine
        2. Publishes the configured definitions
        3. Adds dependency providers for the engine and its registry
        4. Optionally starts and stops the scheduler with the application

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.

        Raises:
            WorkflowValidationError: If a configured definition is invalid.
        """
        config = self._config
        engine = config.engine or WorkflowEngine(
            store=config.store,
            tasks=config.tasks,
            registry=config.registry,
            config=config.engine_config,
            event_bus=config.event_bus,
        )
        self._engine = engine

        for definition in config.definitions:
            engine.publish(definition)

        def provide_engine() -> WorkflowEngine:
            return engine

        def provide_registry() -> WorkflowRegistry:
            return engine.registry

        app_config.dependencies[config.dependency_key_engine] = Provide(
            provide_engine,
            sync_to_thread=False,
        )
        app_config.dependencies[config.dependency_key_registry] = Provide(
            provide_registry,
            sync_to_thread=False,
        )

        if config.start_engine:
            app_config.on_startup.append(engine.start)
            app_config.on_shutdown.append(engine.stop)

        return app_config
