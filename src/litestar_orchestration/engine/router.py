"""Signal and event routing.

Signals are delivered to bookmarks that already exist; nothing is queued for
bookmarks that may appear later. Delivery takes the instance's execution lock, so
two signals racing for the same bookmark are serialized and only the first one
finds it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from litestar_orchestration.activities.event import event_bookmark_name
from litestar_orchestration.core.models import BroadcastResult, WorkflowExecutionResult
from litestar_orchestration.core.types import InstanceStatus
from litestar_orchestration.dto import BroadcastSignalRequest, SendSignalRequest, TriggerEventRequest
from litestar_orchestration.exceptions import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NoSuchBookmarkError,
    OrchestrationError,
    SchedulingError,
)

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_orchestration.core.models import WorkflowInstance
    from litestar_orchestration.core.protocols import EventBus, InstanceStore
    from litestar_orchestration.engine.lifecycle import LifecycleManager
    from litestar_orchestration.engine.registry import WorkflowRegistry
    from litestar_orchestration.engine.scheduler import ExecutionScheduler

__all__ = ["SignalRouter"]

logger = logging.getLogger(__name__)

_RESUMABLE = (InstanceStatus.RUNNING, InstanceStatus.SUSPENDED)


class SignalRouter:
    """Delivers signals and named events to waiting instances.

    Attributes:
        registry: Source of compiled graphs.
        store: Instance store used to find and update waiting instances.
        scheduler: Scheduler that owns execution locks and runs resumed instances.
        lifecycle: Starts instances for workflows with matching event triggers.
        event_bus: Optional receiver of ``workflow.resumed`` events.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: InstanceStore,
        scheduler: ExecutionScheduler,
        lifecycle: LifecycleManager,
        event_bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.lifecycle = lifecycle
        self.event_bus = event_bus

    async def deliver(
        self,
        instance_id: UUID,
        bookmark_name: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> WorkflowInstance:
        """Consume a bookmark of one instance and queue the instance.

        Args:
            instance_id: The instance holding the bookmark.
            bookmark_name: The bookmark to resume.
            payload: Data handed to the resumed activity.
            correlation_id: When given, the instance must carry this correlation id.

        Returns:
            The saved instance.

        Raises:
            WorkflowInstanceNotFoundError: If the instance does not exist.
            InvalidTransitionError: If the instance has not started yet, or holds the
                bookmark while neither running nor suspended.
            NoSuchBookmarkError: If the bookmark is not pending, including when a
                concurrent signal consumed it first.
            SchedulingError: If saving kept conflicting with concurrent writers.
        """
        payload = dict(payload or {})
        retries = self.scheduler.config.max_conflict_retries
        async with self.scheduler.lock(instance_id):
            for _ in range(retries + 1):
                instance = await self.store.load(instance_id)
                if correlation_id is not None and instance.correlation_id != correlation_id:
                    raise NoSuchBookmarkError(instance_id, bookmark_name)
                bookmark = instance.get_bookmark(bookmark_name)
                if bookmark is None:
                    # A signal that lost a race may find the instance already finished.
                    if instance.status == InstanceStatus.PENDING:
                        raise InvalidTransitionError(instance_id, instance.status, "resume")
                    raise NoSuchBookmarkError(instance_id, bookmark_name)
                if instance.status not in _RESUMABLE:
                    raise InvalidTransitionError(instance_id, instance.status, "resume")

                graph = self.registry.get(instance.workflow_id, instance.version)
                self.scheduler.resume_bookmark(instance, graph, bookmark, payload)
                try:
                    await self.store.save(instance)
                except ConcurrencyConflictError:
                    logger.debug("Signal %s for instance %s conflicted, reloading", bookmark_name, instance_id)
                    continue
                break
            else:
                raise SchedulingError(instance_id, f"could not deliver '{bookmark_name}'", bookmark=bookmark_name)

        logger.info("Instance %s resumed at bookmark %s", instance_id, bookmark_name)
        self.scheduler.schedule(instance)
        if self.event_bus is not None:
            await self.event_bus.emit("workflow.resumed", instance_id=instance_id, bookmark=bookmark_name)
        return instance

    async def signal(
        self,
        instance_id: UUID,
        signal_name: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> WorkflowExecutionResult:
        """Send a signal to one instance.

        Raises:
            RequestValidationError: If the signal name is malformed.
            NoSuchBookmarkError: If the instance is not waiting for the signal.
        """
        SendSignalRequest(signal_name=signal_name, payload=payload or {}).validate()
        instance = await self.deliver(instance_id, signal_name, payload, correlation_id)
        return WorkflowExecutionResult.from_instance(instance)

    async def broadcast(
        self,
        signal_name: str,
        payload: dict[str, Any] | None = None,
        workflow_id: str | None = None,
        correlation_id: str | None = None,
    ) -> BroadcastResult:
        """Send a signal to every instance waiting for it.

        A failure for one instance is recorded in the result and never stops
        delivery to the others.

        Args:
            signal_name: The signal, i.e. the bookmark name instances wait on.
            payload: Data handed to each resumed activity.
            workflow_id: Only instances of this workflow.
            correlation_id: Only instances with this correlation id.

        Returns:
            The instances signalled and the errors per instance.
        """
        BroadcastSignalRequest(
            signal_name=signal_name,
            payload=payload or {},
            workflow_id=workflow_id,
            correlation_id=correlation_id,
        ).validate()
        result = BroadcastResult(signal_name=signal_name)
        for instance_id in await self.store.find_by_bookmark(signal_name, correlation_id, workflow_id):
            try:
                await self.deliver(instance_id, signal_name, payload)
            except OrchestrationError as exc:
                result.errors[instance_id] = str(exc)
            else:
                result.signalled.append(instance_id)
        logger.info("Broadcast %s reached %d instances", signal_name, len(result.signalled))
        return result

    async def trigger_event(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
    ) -> list[WorkflowExecutionResult]:
        """Raise a named event.

        Starts the latest version of every workflow with a matching event trigger,
        using ``payload`` as input, and resumes every instance waiting on the event.

        Returns:
            One result per started or resumed instance.
        """
        TriggerEventRequest(event_name=event_name, payload=payload or {}).validate()
        payload = dict(payload or {})
        results: list[WorkflowExecutionResult] = []

        for graph in self.registry.find_event_subscribers(event_name):
            try:
                started = await self.lifecycle.start(graph.workflow_id, input=payload, version=graph.version)
            except OrchestrationError:
                logger.exception("Event %s could not start workflow %s", event_name, graph.workflow_id)
            else:
                results.append(started)

        bookmark = event_bookmark_name(event_name)
        for instance_id in await self.store.find_by_bookmark(bookmark):
            try:
                instance = await self.deliver(instance_id, bookmark, payload)
            except OrchestrationError as exc:
                logger.warning("Event %s could not resume instance %s: %s", event_name, instance_id, exc)
            else:
                results.append(WorkflowExecutionResult.from_instance(instance))
        return results
