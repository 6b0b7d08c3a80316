"""Activity executors, one per node type."""

from __future__ import annotations

from litestar_orchestration.activities.base import BaseActivityExecutor, EndExecutor, StartExecutor
from litestar_orchestration.activities.event import EventExecutor, event_bookmark_name, timer_bookmark_name
from litestar_orchestration.activities.gateway import ExclusiveGatewayExecutor, ParallelGatewayExecutor
from litestar_orchestration.activities.registry import ExecutorFactory, ExecutorRegistry
from litestar_orchestration.activities.task import (
    ASYNC_ACTIVITY_BOOKMARK,
    CompensationHandler,
    TaskExecutor,
    TaskHandler,
    TaskHandlerRegistry,
)

__all__ = [
    "ASYNC_ACTIVITY_BOOKMARK",
    "BaseActivityExecutor",
    "CompensationHandler",
    "EndExecutor",
    "EventExecutor",
    "ExclusiveGatewayExecutor",
    "ExecutorFactory",
    "ExecutorRegistry",
    "ParallelGatewayExecutor",
    "StartExecutor",
    "TaskExecutor",
    "TaskHandler",
    "TaskHandlerRegistry",
    "event_bookmark_name",
    "timer_bookmark_name",
]
