"""Intermediate event executors: timers, signals and named events."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from litestar_orchestration.activities.base import BaseActivityExecutor
from litestar_orchestration.core.models import Completed, Faulted, Suspended, utcnow
from litestar_orchestration.core.types import BookmarkKind, NodeType
from litestar_orchestration.exceptions import ExpressionError

if TYPE_CHECKING:
    from litestar_orchestration.core.context import ActivityContext
    from litestar_orchestration.core.models import ExecutionResult

__all__ = ["EventExecutor", "event_bookmark_name", "timer_bookmark_name"]


def event_bookmark_name(event_name: str) -> str:
    """Bookmark name under which instances wait for a named event."""
    return f"event:{event_name}"


def timer_bookmark_name(node_id: str, token_id: str, boundary_index: int | None = None) -> str:
    """Bookmark name of a timer, unique per waiting token."""
    suffix = f":{boundary_index}" if boundary_index is not None else ""
    return f"timer:{node_id}:{token_id}{suffix}"


class EventExecutor(BaseActivityExecutor):
    """Waits for a timer, a signal or a named event.

    Node configuration, first match wins:
        duration_ms: Wait this long. May be an expression over the variables.
        due_at: Wait until this ISO 8601 timestamp (or expression yielding one).
        signal: Wait for a signal with this name.
        event: Wait for a named event raised through ``trigger_event``.

    An event node with none of these is a pass-through.

    Example:
        >>> Node("cool_down", NodeType.EVENT, config={"duration_ms": "retry_after * 1000"})
        >>> Node("lab_results", NodeType.EVENT, config={"signal": "labResultsReady"})
    """

    node_type = NodeType.EVENT

    def _value(self, context: ActivityContext, key: str) -> Any:
        value = self.node.config.get(key)
        if isinstance(value, str) and key in {"duration_ms", "due_at"}:
            try:
                return datetime.fromisoformat(value) if key == "due_at" else float(value)
            except ValueError:
                return context.evaluator.evaluate(value, context.variables)
        return value

    async def execute(self, context: ActivityContext) -> ExecutionResult:
        config = self.node.config
        try:
            if "duration_ms" in config:
                due_at = utcnow() + timedelta(milliseconds=float(self._value(context, "duration_ms")))
                return self._timer(context, due_at)
            if "due_at" in config:
                due_at = self._value(context, "due_at")
                if isinstance(due_at, str):
                    due_at = datetime.fromisoformat(due_at)
                if due_at.tzinfo is None:
                    due_at = due_at.replace(tzinfo=timezone.utc)
                return self._timer(context, due_at)
        except ExpressionError as exc:
            return Faulted(exc.code, str(exc))
        except (TypeError, ValueError, AttributeError) as exc:
            return Faulted("InvalidTimer", f"Invalid timer on node '{self.node.id}': {exc}")

        if signal := config.get("signal"):
            return Suspended(signal, kind=BookmarkKind.SIGNAL)
        if event := config.get("event"):
            return Suspended(event_bookmark_name(event), kind=BookmarkKind.EVENT)
        return Completed()

    def _timer(self, context: ActivityContext, due_at: datetime) -> ExecutionResult:
        return Suspended(
            timer_bookmark_name(self.node.id, context.token_id),
            due_at=due_at,
            kind=BookmarkKind.TIMER,
        )
