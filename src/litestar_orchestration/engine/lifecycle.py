"""Instance lifecycle management.

The lifecycle manager creates instances and performs the status transitions that
callers request: resume, cancel, terminate and retry. Everything else about an
instance is advanced by the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

from litestar_orchestration.core.models import InstanceError, WorkflowExecutionResult, WorkflowInstance, utcnow
from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus, ParameterType, TokenStatus
from litestar_orchestration.dto import CancelWorkflowRequest, InstanceQuery, ResumeWorkflowRequest, StartWorkflowRequest
from litestar_orchestration.exceptions import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    RequestValidationError,
    SchedulingError,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from litestar_orchestration.core.definition import Parameter, WorkflowDefinition
    from litestar_orchestration.core.models import HistoryEntry, Page
    from litestar_orchestration.core.protocols import EventBus, InstanceStore
    from litestar_orchestration.engine.registry import WorkflowRegistry
    from litestar_orchestration.engine.router import SignalRouter
    from litestar_orchestration.engine.scheduler import ExecutionScheduler

__all__ = ["LifecycleManager"]

logger = logging.getLogger(__name__)

CANCELLED_ERROR_CODE = "Cancelled"
_CANCELLABLE = (InstanceStatus.PENDING, InstanceStatus.RUNNING, InstanceStatus.SUSPENDED)
_UNSETTLED = (InstanceStatus.PENDING, InstanceStatus.RUNNING, InstanceStatus.COMPENSATING)

_TYPE_CHECKS: dict[ParameterType, Callable[[Any], bool]] = {
    ParameterType.STRING: lambda v: isinstance(v, str),
    ParameterType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    ParameterType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    ParameterType.BOOLEAN: lambda v: isinstance(v, bool),
    ParameterType.DATE: lambda v: isinstance(v, date) or _is_iso(v, date.fromisoformat),
    ParameterType.DATETIME: lambda v: isinstance(v, datetime) or _is_iso(v, datetime.fromisoformat),
    ParameterType.OBJECT: lambda v: isinstance(v, dict),
    ParameterType.ARRAY: lambda v: isinstance(v, (list, tuple)),
    ParameterType.ANY: lambda v: True,
}


def _is_iso(value: Any, parse: Callable[[str], Any]) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parse(value)
    except ValueError:
        return False
    return True


def validate_input(parameters: list[Parameter], data: dict[str, Any]) -> dict[str, Any]:
    """Check ``data`` against input parameters and apply parameter defaults.

    Returns:
        The input with defaults filled in.

    Raises:
        RequestValidationError: If a required parameter is missing or a value has
            the wrong type.
    """
    errors: dict[str, list[str]] = {}
    resolved = dict(data)
    for parameter in parameters:
        if parameter.name not in resolved or resolved[parameter.name] is None:
            if parameter.required and parameter.default is None:
                errors.setdefault(f"input.{parameter.name}", []).append("is required")
            elif parameter.default is not None:
                resolved[parameter.name] = parameter.default
            continue
        if not _TYPE_CHECKS[parameter.type](resolved[parameter.name]):
            errors.setdefault(f"input.{parameter.name}", []).append(f"must be of type {parameter.type}")
    if errors:
        raise RequestValidationError(errors)
    return resolved


class LifecycleManager:
    """Creates instances and applies caller-requested transitions.

    Status-only transitions (cancel, terminate, retry) use optimistic saves and
    reload on conflict; they never wait for a running slice. Resuming goes
    through the :class:`~litestar_orchestration.engine.router.SignalRouter`.

    Attributes:
        registry: Source of published definitions.
        store: Instance store.
        scheduler: Scheduler that runs created and retried instances.
        event_bus: Optional receiver of lifecycle events.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: InstanceStore,
        scheduler: ExecutionScheduler,
        event_bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.router: SignalRouter | None = None

    async def _emit(self, event_type: str, **data: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, **data)

    async def start(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,  # noqa: A002
        version: int | None = None,
        name: str | None = None,
        correlation_id: str | None = None,
        priority: int | None = None,
        scheduled_start_time: datetime | None = None,
    ) -> WorkflowExecutionResult:
        """Create a pending instance and hand it to the scheduler.

        Args:
            workflow_id: The published workflow to run.
            input: Input, validated against the workflow's input parameters.
            version: Version to run; the latest when omitted.
            name: Display name; defaults to the workflow name.
            correlation_id: Key for targeting signals at this instance.
            priority: Scheduling priority, 0 to 100. Defaults to 50.
            scheduled_start_time: Keep the instance pending until this time.

        Returns:
            The result for the new, still pending, instance.

        Raises:
            RequestValidationError: If the request or the input is invalid.
            WorkflowNotFoundError: If the workflow or version is not published.

        Example:
            >>> result = await lifecycle.start("admission", input={"patient_id": "p-1"})
            >>> result.status
            <InstanceStatus.PENDING: 'pending'>
        """
        request = StartWorkflowRequest(
            workflow_id=workflow_id,
            input=dict(input or {}),
            version=version,
            name=name,
            correlation_id=correlation_id,
            priority=priority,
            scheduled_start_time=scheduled_start_time,
        )
        request.validate()
        if scheduled_start_time is not None and scheduled_start_time.tzinfo is None:
            scheduled_start_time = scheduled_start_time.replace(tzinfo=timezone.utc)
        definition = self.registry.get_definition(workflow_id, version)
        resolved_input = validate_input(definition.input_parameters, request.input)

        instance = WorkflowInstance(
            workflow_id=definition.workflow_id,
            version=definition.version or 1,
            name=name or definition.name or definition.workflow_id,
            correlation_id=correlation_id,
            priority=50 if priority is None else priority,
            input=resolved_input,
            variables=self._initial_variables(definition, resolved_input),
            scheduled_start_time=scheduled_start_time,
        )
        instance.recompute_wake_at()
        await self.store.save(instance)
        logger.info("Created instance %s of %s v%d", instance.id, instance.workflow_id, instance.version)
        self.scheduler.schedule(instance)
        return WorkflowExecutionResult.from_instance(instance)

    @staticmethod
    def _initial_variables(definition: WorkflowDefinition, data: dict[str, Any]) -> dict[str, Any]:
        variables = {v.name: v.default for v in definition.variables}
        variables.update(data)
        return variables

    async def start_request(self, request: StartWorkflowRequest) -> WorkflowExecutionResult:
        """Start an instance from a :class:`~litestar_orchestration.dto.StartWorkflowRequest`."""
        return await self.start(
            request.workflow_id,
            input=request.input,
            version=request.version,
            name=request.name,
            correlation_id=request.correlation_id,
            priority=request.priority,
            scheduled_start_time=request.scheduled_start_time,
        )

    async def resume(
        self,
        instance_id: UUID,
        bookmark_name: str,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowExecutionResult:
        """Resume a waiting instance at a bookmark. Equivalent to a directed signal.

        Raises:
            NoSuchBookmarkError: If the instance holds no such bookmark. The instance
                is left unchanged.
            InvalidTransitionError: If the instance has not started yet.
        """
        ResumeWorkflowRequest(bookmark_name=bookmark_name, input=payload or {}).validate()
        if self.router is None:
            msg = "LifecycleManager.router must be set before resuming instances"
            raise RuntimeError(msg)
        instance = await self.router.deliver(instance_id, bookmark_name, payload)
        return WorkflowExecutionResult.from_instance(instance)

    async def _transition(
        self,
        instance_id: UUID,
        operation: str,
        apply: Callable[[WorkflowInstance], bool],
    ) -> WorkflowInstance:
        """Load, apply and save with conflict retries. ``apply`` returns False for a no-op."""
        for _ in range(self.scheduler.config.max_conflict_retries + 1):
            instance = await self.store.load(instance_id)
            if not apply(instance):
                return instance
            instance.recompute_wake_at()
            try:
                await self.store.save(instance)
            except ConcurrencyConflictError:
                logger.debug("%s of instance %s conflicted, reloading", operation, instance_id)
                continue
            return instance
        raise SchedulingError(instance_id, f"could not {operation} the instance")

    async def cancel(self, instance_id: UUID, reason: str | None = None) -> WorkflowExecutionResult:
        """Cancel a pending, running or suspended instance.

        Pending bookmarks and timers are dropped. When a workflow level error handler
        matching ``Cancelled`` asks for compensation, the instance compensates
        instead of stopping immediately.

        Raises:
            InvalidTransitionError: If the instance is in any other status.
        """
        CancelWorkflowRequest(reason=reason).validate()
        compensating = False

        def apply(instance: WorkflowInstance) -> bool:
            nonlocal compensating
            if instance.status not in _CANCELLABLE:
                raise InvalidTransitionError(instance_id, instance.status, "cancel")
            definition = self.registry.get_definition(instance.workflow_id, instance.version)
            handler = next((h for h in definition.error_handlers if h.matches(CANCELLED_ERROR_CODE)), None)
            instance.record(HistoryEntryType.WORKFLOW_CANCELLED, reason=reason)
            compensating = bool(handler and handler.compensate)
            if compensating:
                instance.error = InstanceError(
                    CANCELLED_ERROR_CODE,
                    reason or "Cancelled",
                    instance.current_activity_id,
                )
                self.scheduler.begin_compensation(instance)
                return True
            instance.status = InstanceStatus.CANCELLED
            instance.completed_at = utcnow()
            instance.bookmarks.clear()
            instance.tokens.clear()
            instance.forks.clear()
            return True

        instance = await self._transition(instance_id, "cancel", apply)
        self.scheduler.cancel(instance_id)
        if compensating:
            self.scheduler.enqueue(instance_id, instance.priority)
        logger.info("Instance %s cancelled: %s", instance_id, reason)
        await self._emit("workflow.cancelled", instance_id=instance_id, reason=reason, compensating=compensating)
        return WorkflowExecutionResult.from_instance(instance)

    async def terminate(self, instance_id: UUID, reason: str | None = None) -> WorkflowExecutionResult:
        """Stop an instance immediately, skipping compensation.

        Terminating an instance that already reached a final status is a no-op.
        """
        CancelWorkflowRequest(reason=reason).validate()
        terminated = False

        def apply(instance: WorkflowInstance) -> bool:
            nonlocal terminated
            if instance.status.is_final:
                return False
            instance.status = InstanceStatus.CANCELLED
            instance.completed_at = utcnow()
            instance.bookmarks.clear()
            instance.tokens.clear()
            instance.forks.clear()
            instance.record(HistoryEntryType.WORKFLOW_TERMINATED, terminated=True, reason=reason)
            terminated = True
            return True

        instance = await self._transition(instance_id, "terminate", apply)
        if terminated:
            self.scheduler.cancel(instance_id)
            logger.info("Instance %s terminated: %s", instance_id, reason)
            await self._emit("workflow.cancelled", instance_id=instance_id, reason=reason, terminated=True)
        return WorkflowExecutionResult.from_instance(instance)

    async def retry(self, instance_id: UUID) -> WorkflowExecutionResult:
        """Re-run a faulted instance from the activity that failed.

        The failed activity starts over with a fresh retry budget.

        Raises:
            InvalidTransitionError: If the instance is not faulted, or the fault
                left nothing to re-run, e.g. a failed compensation.
        """

        def apply(instance: WorkflowInstance) -> bool:
            if instance.status != InstanceStatus.FAULTED:
                raise InvalidTransitionError(instance_id, instance.status, "retry")
            failed = instance.tokens_with(TokenStatus.FAULTED)
            if not failed:
                raise InvalidTransitionError(instance_id, instance.status, "retry", "no failed activity to re-run")
            for token in failed:
                token.status = TokenStatus.READY
                token.attempt = 0
                token.retry_at = None
            instance.status = InstanceStatus.RUNNING
            instance.error = None
            instance.completed_at = None
            instance.fault_count += 1
            instance.steps_since_input = 0
            instance.record(
                HistoryEntryType.WORKFLOW_RETRIED,
                activity_id=failed[0].node_id,
                output={"fault_count": instance.fault_count},
            )
            return True

        instance = await self._transition(instance_id, "retry", apply)
        logger.info("Instance %s retried (fault %d)", instance_id, instance.fault_count)
        self.scheduler.enqueue(instance_id, instance.priority)
        return WorkflowExecutionResult.from_instance(instance)

    async def get_instance(self, instance_id: UUID) -> WorkflowInstance:
        """Load a snapshot of an instance.

        Raises:
            WorkflowInstanceNotFoundError: If the instance does not exist.
        """
        return await self.store.load(instance_id)

    async def get_result(self, instance_id: UUID) -> WorkflowExecutionResult:
        return WorkflowExecutionResult.from_instance(await self.store.load(instance_id))

    async def get_history(self, instance_id: UUID) -> list[HistoryEntry]:
        return await self.store.get_history(instance_id)

    async def list_instances(self, query: InstanceQuery | None = None) -> Page[WorkflowInstance]:
        """List instances.

        Raises:
            RequestValidationError: If the query is invalid.
        """
        query = query or InstanceQuery()
        query.validate()
        return await self.store.query(query)

    async def delete(self, instance_id: UUID) -> None:
        """Purge an instance in a final status.

        Raises:
            InvalidTransitionError: If the instance may still make progress.
        """
        instance = await self.store.load(instance_id)
        if not instance.status.is_final and instance.status != InstanceStatus.FAULTED:
            raise InvalidTransitionError(instance_id, instance.status, "delete")
        await self.store.delete(instance_id)

    async def wait(
        self,
        instance_id: UUID,
        timeout: float | None = None,
        poll_interval: float = 0.01,
    ) -> WorkflowExecutionResult:
        """Wait until an instance is suspended or reaches a final status.

        Args:
            instance_id: The instance to wait for.
            timeout: Give up after this many seconds.
            poll_interval: Seconds between store polls.

        Raises:
            TimeoutError: If the instance did not settle in time.
        """

        async def settled() -> WorkflowExecutionResult:
            while True:
                instance = await self.store.load(instance_id)
                if instance.status not in _UNSETTLED and not self._has_runnable_tokens(instance):
                    return WorkflowExecutionResult.from_instance(instance)
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(settled(), timeout)

    @staticmethod
    def _has_runnable_tokens(instance: WorkflowInstance) -> bool:
        return any(t.status in (TokenStatus.READY, TokenStatus.RETRYING) for t in instance.tokens)
