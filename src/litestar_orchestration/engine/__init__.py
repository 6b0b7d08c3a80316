"""Workflow execution engine.

This module provides the registry of published workflows, the definition
validator, the scheduler that advances instances, the signal router, the
lifecycle manager and the :class:`WorkflowEngine` facade tying them together.
"""

from __future__ import annotations

from litestar_orchestration.engine.graph import CompiledNode, WorkflowGraph
from litestar_orchestration.engine.lifecycle import LifecycleManager
from litestar_orchestration.engine.registry import WorkflowRegistry
from litestar_orchestration.engine.router import SignalRouter
from litestar_orchestration.engine.runtime import WorkflowEngine
from litestar_orchestration.engine.scheduler import ExecutionScheduler
from litestar_orchestration.engine.validator import DefinitionValidator, ValidationFinding

__all__ = [
    "CompiledNode",
    "DefinitionValidator",
    "ExecutionScheduler",
    "LifecycleManager",
    "SignalRouter",
    "ValidationFinding",
    "WorkflowEngine",
    "WorkflowGraph",
    "WorkflowRegistry",
]
