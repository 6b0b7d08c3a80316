"""Execution scheduler.

The scheduler owns a pool of asyncio workers that pull instance ids from a priority
queue. A worker holds the instance's execution lock for one slice of at most
``max_steps_per_slice`` steps. Each step loads the instance, runs one activity for
one ready token, and saves the result, so every transition is durable before the
next one starts.

Due times (scheduled starts, timers and retry delays) are tracked through the
instance's ``wake_at``: armed in process with ``loop.call_later`` and recovered by a
background poll of :meth:`InstanceStore.find_due`. Work that can run right away is
due immediately, so instances dropped from the queue by a stop or a crash are found
again by the poll.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import weakref
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from litestar_orchestration.activities.event import event_bookmark_name, timer_bookmark_name
from litestar_orchestration.core.context import ActivityContext
from litestar_orchestration.core.expressions import set_path
from litestar_orchestration.core.models import (
    Bookmark,
    Completed,
    Faulted,
    Fork,
    InstanceError,
    Suspended,
    Token,
    utcnow,
)
from litestar_orchestration.core.types import (
    BookmarkKind,
    BoundaryEventType,
    HistoryEntryType,
    InstanceStatus,
    NodeType,
    TokenStatus,
)
from litestar_orchestration.exceptions import (
    ActivityExecutionError,
    CompensationError,
    ConcurrencyConflictError,
    OrchestrationError,
    SchedulingError,
    WorkflowInstanceNotFoundError,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from litestar_orchestration.config import EngineConfig
    from litestar_orchestration.core.definition import BoundaryEvent, ErrorHandler
    from litestar_orchestration.core.expressions import ExpressionEvaluator
    from litestar_orchestration.core.models import ExecutionResult, WorkflowInstance
    from litestar_orchestration.core.protocols import EventBus, InstanceStore
    from litestar_orchestration.engine.graph import CompiledNode, WorkflowGraph
    from litestar_orchestration.engine.registry import WorkflowRegistry

__all__ = ["ExecutionScheduler"]

logger = logging.getLogger(__name__)

_UNDOABLE = frozenset({NodeType.TASK, NodeType.EVENT})
_Events = list[tuple[str, dict[str, Any]]]


class _Outcome(Enum):
    NOOP = "noop"
    """Nothing changed; the instance is not saved."""
    CONTINUE = "continue"
    """Saved, and more work is ready."""
    SETTLED = "settled"
    """Saved, and the instance waits for a signal, a due time or nothing at all."""


def scope_of(instance: WorkflowInstance) -> dict[str, Any]:
    """Names visible to expressions evaluated against ``instance``."""
    return {"input": instance.input, **instance.variables}


class ExecutionScheduler:
    """Advances workflow instances one durable step at a time.

    Attributes:
        registry: Source of compiled graphs.
        store: Instance store every step loads from and saves to.
        evaluator: Expression evaluator for mappings and edge conditions.
        config: Engine tuning options.
        event_bus: Optional receiver of lifecycle events.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: InstanceStore,
        evaluator: ExpressionEvaluator,
        config: EngineConfig,
        event_bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.evaluator = evaluator
        self.config = config
        self.event_bus = event_bus
        self._queue: asyncio.PriorityQueue[tuple[int, int, UUID]] = asyncio.PriorityQueue()
        self._queued: set[UUID] = set()
        self._sequence = itertools.count()
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()
        self._cancellations: dict[UUID, asyncio.Event] = {}
        self._timers: dict[UUID, asyncio.TimerHandle] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._poller: asyncio.Task[None] | None = None

    # Worker pool

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Start the worker pool and the due-time poll. Idempotent."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"orchestration-worker-{n}")
            for n in range(self.config.worker_count)
        ]
        self._poller = asyncio.create_task(self._poll_due(), name="orchestration-due-poll")
        logger.info("Scheduler started with %d workers", self.config.worker_count)

    async def stop(self) -> None:
        """Stop workers, the poll and every armed timer.

        Queued ids are dropped; persisted state is untouched, so due work is found
        again by the poll after a restart.
        """
        tasks = [*self._workers, *([self._poller] if self._poller else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._poller = None
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        logger.info("Scheduler stopped")

    def enqueue(self, instance_id: UUID, priority: int = 50) -> None:
        """Queue an instance for processing. Ids already queued are ignored."""
        if instance_id in self._queued:
            return
        self._queued.add(instance_id)
        self._queue.put_nowait((-priority, next(self._sequence), instance_id))

    def schedule(self, instance: WorkflowInstance) -> None:
        """Queue ``instance`` now, or arm a timer if it is waiting for a due time."""
        if instance.wake_at is not None and instance.wake_at > utcnow():
            self._arm(instance)
        else:
            self.enqueue(instance.id, instance.priority)

    def lock(self, instance_id: UUID) -> asyncio.Lock:
        """Execution lock of an instance. Holders may mutate and save it.

        Locks are only kept while a caller holds or awaits them.
        """
        return self._locks.setdefault(instance_id, asyncio.Lock())

    def cancellation_for(self, instance_id: UUID) -> asyncio.Event:
        return self._cancellations.setdefault(instance_id, asyncio.Event())

    def cancel(self, instance_id: UUID) -> None:
        """Signal running activities of an instance and disarm its timer."""
        self.cancellation_for(instance_id).set()
        if handle := self._timers.pop(instance_id, None):
            handle.cancel()

    async def _worker(self, number: int) -> None:
        while True:
            _, _, instance_id = await self._queue.get()
            self._queued.discard(instance_id)
            try:
                await self.process(instance_id)
            except WorkflowInstanceNotFoundError:
                logger.debug("Instance %s disappeared before worker %d picked it up", instance_id, number)
            except Exception:
                logger.exception("Worker %d failed to process instance %s", number, instance_id)
            finally:
                self._queue.task_done()

    async def _poll_due(self) -> None:
        while True:
            await asyncio.sleep(self.config.due_poll_interval)
            try:
                for instance_id in await self.store.find_due(utcnow()):
                    # A worker holding the lock requeues the instance itself if needed.
                    if (held := self._locks.get(instance_id)) is not None and held.locked():
                        continue
                    self.enqueue(instance_id)
            except Exception:
                logger.exception("Polling for due instances failed")

    def _arm(self, instance: WorkflowInstance) -> None:
        if handle := self._timers.pop(instance.id, None):
            handle.cancel()
        if instance.wake_at is None or instance.status.is_final:
            return
        delay = max(0.0, (instance.wake_at - utcnow()).total_seconds())
        loop = asyncio.get_running_loop()
        self._timers[instance.id] = loop.call_later(delay, self.enqueue, instance.id, instance.priority)

    # Slices and steps

    async def process(self, instance_id: UUID) -> None:
        """Run one slice for an instance.

        Raises:
            SchedulingError: If a step kept conflicting with concurrent saves.
        """
        async with self.lock(instance_id):
            instance: WorkflowInstance | None = None
            for _ in range(self.config.max_steps_per_slice):
                outcome, instance = await self._step(instance_id)
                if outcome is not _Outcome.CONTINUE:
                    break
            else:
                # Yield to other instances, then pick up where the slice stopped.
                logger.debug("Instance %s used its slice, requeueing", instance_id)
                self.enqueue(instance_id, instance.priority if instance else 50)
            if instance is not None:
                self._arm(instance)
                if instance.status.is_final or instance.status == InstanceStatus.FAULTED:
                    self._cancellations.pop(instance_id, None)

    async def _step(self, instance_id: UUID) -> tuple[_Outcome, WorkflowInstance]:
        for attempt in range(self.config.max_conflict_retries + 1):
            instance = await self.store.load(instance_id)
            graph = self.registry.get(instance.workflow_id, instance.version)
            events: _Events = []
            outcome = await self._advance(instance, graph, events)
            if outcome is _Outcome.NOOP:
                return outcome, instance
            instance.recompute_wake_at()
            try:
                await self.store.save(instance)
            except ConcurrencyConflictError:
                logger.debug("Step of instance %s conflicted (attempt %d), retrying", instance_id, attempt + 1)
                continue
            await self._emit(events)
            return outcome, instance
        raise SchedulingError(
            instance_id,
            "concurrent modifications kept conflicting",
            attempts=self.config.max_conflict_retries + 1,
        )

    async def _emit(self, events: _Events) -> None:
        if self.event_bus is None:
            return
        for event_type, data in events:
            try:
                await self.event_bus.emit(event_type, **data)
            except Exception:
                logger.exception("Event bus failed to deliver %s", event_type)

    async def _advance(self, instance: WorkflowInstance, graph: WorkflowGraph, events: _Events) -> _Outcome:
        """Apply one step to ``instance`` in place."""
        now = utcnow()
        if instance.status == InstanceStatus.PENDING:
            if instance.scheduled_start_time is not None and instance.scheduled_start_time > now:
                return _Outcome.NOOP
            instance.status = InstanceStatus.RUNNING
            instance.started_at = now
            instance.tokens = [Token(node_id=graph.start.id)]
            instance.current_activity_id = graph.start.id
            instance.record(HistoryEntryType.WORKFLOW_STARTED, input=dict(instance.input))
            events.append(("workflow.started", {"instance_id": instance.id, "workflow_id": instance.workflow_id}))
            logger.info("Instance %s of %s v%d started", instance.id, instance.workflow_id, instance.version)
            instance.recompute_wake_at()
            return _Outcome.CONTINUE

        if instance.status == InstanceStatus.COMPENSATING:
            return await self._compensate_next(instance, graph, events)

        if instance.status not in (InstanceStatus.RUNNING, InstanceStatus.SUSPENDED):
            return _Outcome.NOOP

        changed = self._release_due(instance, graph, now)
        token = instance.next_ready_token()
        if token is None:
            if not changed:
                return _Outcome.NOOP
            self._settle(instance, events)
            instance.recompute_wake_at()
            return _Outcome.SETTLED

        if instance.status == InstanceStatus.SUSPENDED:
            instance.status = InstanceStatus.RUNNING
        await self._run_token(instance, graph, token, events)
        if instance.status == InstanceStatus.RUNNING:
            self._settle(instance, events)
        instance.recompute_wake_at()
        if instance.status == InstanceStatus.RUNNING and instance.next_ready_token() is not None:
            return _Outcome.CONTINUE
        if instance.status == InstanceStatus.COMPENSATING:
            return _Outcome.CONTINUE
        return _Outcome.SETTLED

    def _release_due(self, instance: WorkflowInstance, graph: WorkflowGraph, now: datetime) -> bool:
        """Make due retries ready and fire due timers. Returns whether anything fired."""
        changed = False
        for token in instance.tokens_with(TokenStatus.RETRYING):
            if token.retry_at is not None and token.retry_at <= now:
                token.status = TokenStatus.READY
                token.retry_at = None
                changed = True
        due = sorted((b for b in instance.bookmarks if b.due_at and b.due_at <= now), key=lambda b: b.due_at)
        for bookmark in due:
            # An interrupting boundary may already have discarded this bookmark.
            if bookmark in instance.bookmarks:
                self.resume_bookmark(instance, graph, bookmark, {})
                changed = True
        return changed

    def _settle(self, instance: WorkflowInstance, events: _Events) -> None:
        """Complete or suspend a running instance that has no ready tokens left."""
        if not instance.tokens:
            self._complete(instance, events)
            return
        if instance.next_ready_token() is not None or instance.tokens_with(TokenStatus.RETRYING):
            return
        if instance.tokens_with(TokenStatus.WAITING) and instance.status != InstanceStatus.SUSPENDED:
            instance.status = InstanceStatus.SUSPENDED
            names = [b.name for b in instance.bookmarks]
            instance.record(HistoryEntryType.WORKFLOW_SUSPENDED, output={"bookmarks": names})
            events.append(("workflow.suspended", {"instance_id": instance.id, "bookmarks": names}))
            logger.debug("Instance %s suspended on %s", instance.id, names)

    def _complete(self, instance: WorkflowInstance, events: _Events) -> None:
        definition = self.registry.get(instance.workflow_id, instance.version).definition
        if definition.output_parameters:
            instance.output = {p.name: instance.variables.get(p.name, p.default) for p in definition.output_parameters}
        else:
            instance.output = dict(instance.variables)
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = utcnow()
        instance.forks.clear()
        instance.record(HistoryEntryType.WORKFLOW_COMPLETED, output=dict(instance.output))
        events.append(("workflow.completed", {"instance_id": instance.id, "output": instance.output}))
        logger.info("Instance %s completed", instance.id)

    def _fail(
        self,
        instance: WorkflowInstance,
        code: str,
        message: str,
        activity_id: str | None,
        events: _Events,
    ) -> None:
        instance.status = InstanceStatus.FAULTED
        instance.error = InstanceError(code=code, message=message, activity_id=activity_id)
        instance.completed_at = utcnow()
        instance.record(HistoryEntryType.WORKFLOW_FAULTED, activity_id=activity_id, error=instance.error.to_dict())
        events.append(("workflow.faulted", {"instance_id": instance.id, "error": instance.error.to_dict()}))
        logger.info("Instance %s faulted with %s at %s: %s", instance.id, code, activity_id, message)

    # Activities

    def _context(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        compiled: CompiledNode,
        token: Token,
        inputs: dict[str, Any],
    ) -> ActivityContext:
        return ActivityContext(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            node=compiled.node,
            token_id=token.id,
            inputs=inputs,
            variables=scope_of(instance),
            graph=graph,
            evaluator=self.evaluator,
            attempt=token.attempt,
            correlation_id=instance.correlation_id,
            cancellation=self.cancellation_for(instance.id),
        )

    def _inputs(self, instance: WorkflowInstance, compiled: CompiledNode) -> dict[str, Any]:
        if not compiled.node.input_mappings:
            return dict(instance.variables)
        scope = scope_of(instance)
        return {name: self.evaluator.evaluate(expr, scope) for name, expr in compiled.node.input_mappings.items()}

    async def _run_token(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        token: Token,
        events: _Events,
    ) -> None:
        compiled = graph.node(token.node_id)
        instance.current_activity_id = compiled.id

        if compiled.is_join and not token.joined and token.fork_stack:
            fork = instance.forks.get(token.fork_stack[-1])
            if fork is not None:
                instance.tokens.remove(token)
                fork.arrived += 1
                fork.join_node_id = compiled.id
                merged = self._release_join(instance, fork, token.fork_stack[:-1])
                if merged is None:
                    return
                token = merged

        instance.steps_since_input += 1
        if instance.steps_since_input > self.config.max_activities_per_run:
            token.status = TokenStatus.FAULTED
            self._fail(
                instance,
                "PotentialInfiniteLoop",
                f"Exceeded {self.config.max_activities_per_run} activities without external input",
                compiled.id,
                events,
            )
            return

        resuming, payload = token.resuming, token.resume_payload or {}
        token.resuming, token.resume_payload = False, None
        started = time.perf_counter()
        inputs: dict[str, Any] = {}
        result: ExecutionResult
        try:
            inputs = self._inputs(instance, compiled)
            context = self._context(instance, graph, compiled, token, inputs)
            if resuming:
                result = await compiled.executor.resume(context, payload)
            else:
                result = await compiled.executor.execute(context)
        except ActivityExecutionError as exc:
            result = Faulted(exc.error_code, str(exc))
        except OrchestrationError as exc:
            result = Faulted(exc.code, str(exc))
        except Exception as exc:
            logger.warning("Activity %s of instance %s raised", compiled.id, instance.id, exc_info=True)
            result = Faulted(ActivityExecutionError.code, f"{type(exc).__name__}: {exc}")
        duration_ms = (time.perf_counter() - started) * 1000
        logger.debug("Instance %s ran %s in %.1fms: %s", instance.id, compiled.id, duration_ms, type(result).__name__)

        if isinstance(result, Completed):
            self._on_completed(instance, graph, compiled, token, inputs, result, duration_ms, events)
        elif isinstance(result, Suspended):
            self._on_suspended(instance, compiled, token, result, events)
        else:
            self._on_faulted(instance, graph, compiled, token, result, events)

    def _on_completed(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        compiled: CompiledNode,
        token: Token,
        inputs: dict[str, Any],
        result: Completed,
        duration_ms: float,
        events: _Events,
    ) -> None:
        node = compiled.node
        output = dict(result.output)
        try:
            if node.output_mappings:
                scope = {**scope_of(instance), "output": output}
                values = {target: self.evaluator.evaluate(expr, scope) for target, expr in node.output_mappings.items()}
                for target, value in values.items():
                    set_path(instance.variables, target, value)
            else:
                instance.variables.update(output)
            edges = result.next_edges
            if edges is None and compiled.outgoing:
                edges = (graph.select_exclusive(node.id, scope_of(instance), self.evaluator),)
        except OrchestrationError as exc:
            self._on_faulted(instance, graph, compiled, token, Faulted(exc.code, str(exc)), events)
            return

        instance.record(
            HistoryEntryType.ACTIVITY_COMPLETED,
            activity_id=node.id,
            activity_name=node.name,
            activity_type=str(node.type),
            duration_ms=duration_ms,
            input=inputs if node.type == NodeType.TASK else None,
            output=output or None,
        )
        if node.type in _UNDOABLE:
            instance.compensation_log.append(node.id)
        token.attempt = 0
        token.joined = False

        if not edges:
            self._retire(instance, token)
        elif node.type == NodeType.PARALLEL_GATEWAY and len(edges) > 1:
            self._fork(instance, graph, compiled, token, edges)
        else:
            token.node_id = graph.target_of(edges[0]).id

    def _fork(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        compiled: CompiledNode,
        token: Token,
        edges: tuple[int, ...],
    ) -> None:
        fork = Fork(gateway_id=compiled.id, branch_count=len(edges))
        instance.forks[fork.id] = fork
        instance.tokens.remove(token)
        for edge_index in edges:
            target = graph.target_of(edge_index).id
            instance.tokens.append(Token(node_id=target, fork_stack=[*token.fork_stack, fork.id]))
        logger.debug("Instance %s forked %d branches at %s", instance.id, len(edges), compiled.id)

    @staticmethod
    def _release_join(instance: WorkflowInstance, fork: Fork, parent_stack: list[str]) -> Token | None:
        """Replace a completed fork with a single token at its join node."""
        if not fork.is_complete or fork.join_node_id is None:
            return None
        del instance.forks[fork.id]
        token = Token(node_id=fork.join_node_id, fork_stack=parent_stack, joined=True)
        instance.tokens.append(token)
        return token

    def _retire(self, instance: WorkflowInstance, token: Token) -> None:
        """Remove a token whose branch ended without reaching a join."""
        if token in instance.tokens:
            instance.tokens.remove(token)
        stack = list(token.fork_stack)
        while stack:
            fork = instance.forks.get(stack.pop())
            if fork is None:
                return
            fork.branch_count -= 1
            if fork.join_node_id is not None:
                self._release_join(instance, fork, list(stack))
                return
            if fork.branch_count > 0:
                return
            # Every branch of this fork ended; the branch of the enclosing fork ends too.
            del instance.forks[fork.id]

    def _on_suspended(
        self,
        instance: WorkflowInstance,
        compiled: CompiledNode,
        token: Token,
        result: Suspended,
        events: _Events,
    ) -> None:
        node = compiled.node
        now = utcnow()
        bookmarks = [
            Bookmark(
                name=result.bookmark,
                activity_id=node.id,
                token=token.id,
                created_at=now,
                kind=result.kind,
                due_at=result.due_at,
            )
        ]
        for index, boundary in enumerate(node.boundary_events):
            if bookmark := self._boundary_bookmark(node.id, token, index, boundary, now):
                bookmarks.append(bookmark)

        names = [b.name for b in bookmarks]
        duplicate = next((n for n in names if instance.get_bookmark(n) or names.count(n) > 1), None)
        if duplicate is not None:
            token.status = TokenStatus.FAULTED
            self._fail(
                instance,
                "DuplicateBookmark",
                f"Bookmark '{duplicate}' is already pending on this instance",
                node.id,
                events,
            )
            return

        token.status = TokenStatus.WAITING
        instance.bookmarks.extend(bookmarks)
        instance.record(
            HistoryEntryType.ACTIVITY_SUSPENDED,
            activity_id=node.id,
            activity_name=node.name,
            activity_type=str(node.type),
            output={"bookmarks": names},
        )

    @staticmethod
    def _boundary_bookmark(
        node_id: str,
        token: Token,
        index: int,
        boundary: BoundaryEvent,
        now: datetime,
    ) -> Bookmark | None:
        if boundary.type == BoundaryEventType.TIMER and boundary.duration_ms is not None:
            return Bookmark(
                name=timer_bookmark_name(node_id, token.id, index),
                activity_id=node_id,
                token=token.id,
                created_at=now,
                kind=BookmarkKind.TIMER,
                due_at=now + timedelta(milliseconds=boundary.duration_ms),
                boundary_index=index,
            )
        if boundary.type == BoundaryEventType.SIGNAL and boundary.name:
            return Bookmark(
                name=boundary.name,
                activity_id=node_id,
                token=token.id,
                created_at=now,
                kind=BookmarkKind.SIGNAL,
                boundary_index=index,
            )
        if boundary.type == BoundaryEventType.EVENT and boundary.name:
            return Bookmark(
                name=event_bookmark_name(boundary.name),
                activity_id=node_id,
                token=token.id,
                created_at=now,
                kind=BookmarkKind.EVENT,
                boundary_index=index,
            )
        return None

    # Faults

    def _on_faulted(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        compiled: CompiledNode,
        token: Token,
        fault: Faulted,
        events: _Events,
    ) -> None:
        node = compiled.node
        error = {"code": fault.error_code, "message": fault.message}
        instance.record(
            HistoryEntryType.ACTIVITY_FAULTED,
            activity_id=node.id,
            activity_name=node.name,
            activity_type=str(node.type),
            error=error,
        )

        boundary = next(
            (
                b
                for b in node.boundary_events
                if b.type == BoundaryEventType.ERROR and (not b.error_codes or fault.error_code in b.error_codes)
            ),
            None,
        )
        if boundary is not None:
            instance.record(
                HistoryEntryType.BOUNDARY_EVENT_TRIGGERED,
                activity_id=node.id,
                activity_name=node.name,
                reason=str(boundary.type),
                error=error,
            )
            self._move(token, boundary.target)
            return

        handler = self._find_handler(graph, compiled, fault.error_code)
        policy = handler.retry_policy if handler else None
        if policy is not None and token.attempt < policy.max_retries:
            delay_ms = policy.delay_ms(token.attempt)
            token.attempt += 1
            token.status = TokenStatus.RETRYING
            token.retry_at = utcnow() + timedelta(milliseconds=delay_ms)
            instance.record(
                HistoryEntryType.ACTIVITY_RETRY_SCHEDULED,
                activity_id=node.id,
                activity_name=node.name,
                error=error,
                output={"attempt": token.attempt, "delay_ms": delay_ms},
            )
            events.append(
                (
                    "activity.retry_scheduled",
                    {
                        "instance_id": instance.id,
                        "activity_id": node.id,
                        "attempt": token.attempt,
                        "delay_ms": delay_ms,
                    },
                )
            )
            logger.debug("Instance %s retries %s in %.0fms (attempt %d)", instance.id, node.id, delay_ms, token.attempt)
            return

        if handler is not None and handler.handler_node_id and handler.handler_node_id in graph:
            self._move(token, handler.handler_node_id)
            return

        if handler is not None and handler.compensate and not handler.terminate:
            instance.error = InstanceError(code=fault.error_code, message=fault.message, activity_id=node.id)
            self.begin_compensation(instance)
            logger.info("Instance %s compensating after %s at %s", instance.id, fault.error_code, node.id)
            return

        token.status = TokenStatus.FAULTED
        self._fail(instance, fault.error_code, fault.message, node.id, events)

    @staticmethod
    def _find_handler(graph: WorkflowGraph, compiled: CompiledNode, error_code: str) -> ErrorHandler | None:
        for handler in (*compiled.node.error_handlers, *graph.definition.error_handlers):
            if handler.matches(error_code):
                return handler
        return None

    @staticmethod
    def _move(token: Token, node_id: str) -> None:
        token.node_id = node_id
        token.status = TokenStatus.READY
        token.attempt = 0
        token.retry_at = None
        token.joined = False

    @staticmethod
    def begin_compensation(instance: WorkflowInstance) -> None:
        """Switch ``instance`` to compensating, discarding in-flight work."""
        instance.status = InstanceStatus.COMPENSATING
        instance.tokens.clear()
        instance.forks.clear()
        instance.bookmarks.clear()

    async def _compensate_next(self, instance: WorkflowInstance, graph: WorkflowGraph, events: _Events) -> _Outcome:
        done = {e.activity_id for e in instance.history if e.type == HistoryEntryType.ACTIVITY_COMPENSATED}
        for node_id in reversed(instance.compensation_log):
            if node_id in done or node_id not in graph:
                continue
            compiled = graph.node(node_id)
            token = Token(node_id=node_id)
            context = self._context(instance, graph, compiled, token, dict(instance.variables))
            started = time.perf_counter()
            try:
                await compiled.executor.compensate(context)
            except Exception as exc:
                failure = CompensationError(node_id, exc)
                logger.warning("Compensation of %s on instance %s failed", node_id, instance.id, exc_info=True)
                self._fail(instance, failure.code, str(failure), node_id, events)
                return _Outcome.SETTLED
            instance.record(
                HistoryEntryType.ACTIVITY_COMPENSATED,
                activity_id=node_id,
                activity_name=compiled.node.name,
                activity_type=str(compiled.node.type),
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            return _Outcome.CONTINUE

        instance.status = InstanceStatus.COMPENSATED
        instance.completed_at = utcnow()
        instance.wake_at = None
        instance.record(HistoryEntryType.WORKFLOW_COMPENSATED)
        events.append(("workflow.compensated", {"instance_id": instance.id}))
        logger.info("Instance %s compensated", instance.id)
        return _Outcome.SETTLED

    # Signals

    def resume_bookmark(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        bookmark: Bookmark,
        payload: dict[str, Any],
    ) -> None:
        """Consume ``bookmark`` and make its token runnable.

        A regular bookmark hands ``payload`` to the executor's ``resume``. A boundary
        bookmark merges ``payload`` into the variables and moves the token to the
        boundary's target, or spawns a new token for a non-interrupting boundary.
        The caller saves the instance and queues it.
        """
        instance.bookmarks.remove(bookmark)
        token = instance.get_token(bookmark.token)
        if token is None:
            return
        compiled = graph.node(bookmark.activity_id)

        if bookmark.boundary_index is not None:
            boundary = compiled.node.boundary_events[bookmark.boundary_index]
            instance.record(
                HistoryEntryType.BOUNDARY_EVENT_TRIGGERED,
                activity_id=compiled.id,
                activity_name=compiled.node.name,
                reason=str(boundary.type),
                input=dict(payload) or None,
            )
            instance.variables.update(payload)
            if boundary.cancel_activity:
                instance.bookmarks = [b for b in instance.bookmarks if b.token != token.id]
                self._move(token, boundary.target)
            else:
                instance.tokens.append(Token(node_id=boundary.target, fork_stack=list(token.fork_stack)))
                if token.fork_stack and (fork := instance.forks.get(token.fork_stack[-1])):
                    fork.branch_count += 1
        else:
            instance.bookmarks = [b for b in instance.bookmarks if b.token != token.id]
            token.status = TokenStatus.READY
            token.resuming = True
            token.resume_payload = dict(payload)
            instance.record(
                HistoryEntryType.ACTIVITY_RESUMED,
                activity_id=compiled.id,
                activity_name=compiled.node.name,
                activity_type=str(compiled.node.type),
                input=dict(payload) or None,
            )

        instance.steps_since_input = 0
        if instance.status == InstanceStatus.SUSPENDED:
            instance.status = InstanceStatus.RUNNING
        instance.recompute_wake_at()
