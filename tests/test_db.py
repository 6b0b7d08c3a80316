"""Tests for the SQLAlchemy instance store, run against in-memory SQLite."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar_orchestration.activities.task import TaskHandlerRegistry
    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.db.store import SQLAlchemyInstanceStore


@pytest.fixture
async def sql_store() -> AsyncIterator[SQLAlchemyInstanceStore]:
    """Create a store over a fresh in-memory SQLite database.

    Yields:
        SQLAlchemyInstanceStore with the orchestration tables created
    """
    from sqlalchemy import event
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from litestar_orchestration.db.models import WorkflowInstanceModel
    from litestar_orchestration.db.store import SQLAlchemyInstanceStore

    # A single shared connection keeps the in-memory database alive across sessions.
    db_engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(db_engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with db_engine.begin() as connection:
        await connection.run_sync(WorkflowInstanceModel.metadata.create_all)

    yield SQLAlchemyInstanceStore(async_sessionmaker(db_engine, expire_on_commit=False))
    await db_engine.dispose()


@pytest.mark.integration
@pytest.mark.asyncio
class TestSQLAlchemyInstanceStore:
    """Tests for persistence, conditional saves and lookups."""

    async def test_round_trip(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import Bookmark, Fork, Token, WorkflowInstance
        from litestar_orchestration.core.types import BookmarkKind, HistoryEntryType, InstanceStatus

        instance = WorkflowInstance(
            workflow_id="approval",
            version=2,
            status=InstanceStatus.SUSPENDED,
            correlation_id="order-7",
            input={"amount": 250},
            variables={"amount": 250, "tags": ["rush"]},
        )
        instance.tokens.append(Token(id="t1", node_id="wait"))
        instance.forks["f1"] = Fork(gateway_id="split", branch_count=2, id="f1")
        instance.bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t1"))
        instance.bookmarks.append(
            Bookmark(
                name="timer:wait:t1:0",
                activity_id="wait",
                token="t1",
                kind=BookmarkKind.TIMER,
                due_at=instance.created_at + timedelta(minutes=5),
                boundary_index=0,
            )
        )
        instance.record(HistoryEntryType.WORKFLOW_STARTED)
        instance.record(HistoryEntryType.ACTIVITY_SUSPENDED, activity_id="wait", input={"amount": 250})

        await sql_store.save(instance)
        loaded = await sql_store.load(instance.id)

        assert instance.revision == 1
        assert loaded.revision == 1
        assert loaded.status == InstanceStatus.SUSPENDED
        assert loaded.correlation_id == "order-7"
        assert loaded.variables == {"amount": 250, "tags": ["rush"]}
        assert [t.id for t in loaded.tokens] == ["t1"]
        assert list(loaded.forks) == ["f1"]
        assert {b.name for b in loaded.bookmarks} == {"approved", "timer:wait:t1:0"}
        boundary = loaded.get_bookmark("timer:wait:t1:0")
        assert boundary is not None
        assert boundary.boundary_index == 0
        assert boundary.due_at == instance.bookmarks[1].due_at
        assert [e.sequence for e in loaded.history] == [1, 2]
        assert loaded.history[1].input == {"amount": 250}

    async def test_history_is_appended_once(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import WorkflowInstance
        from litestar_orchestration.core.types import HistoryEntryType

        instance = WorkflowInstance(workflow_id="linear", version=1)
        instance.record(HistoryEntryType.WORKFLOW_STARTED)
        await sql_store.save(instance)

        loaded = await sql_store.load(instance.id)
        loaded.record(HistoryEntryType.WORKFLOW_COMPLETED)
        await sql_store.save(loaded)
        await sql_store.save(loaded)

        history = await sql_store.get_history(instance.id)

        assert [e.type for e in history] == [HistoryEntryType.WORKFLOW_STARTED, HistoryEntryType.WORKFLOW_COMPLETED]

    async def test_bookmarks_are_replaced_on_save(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import Bookmark, WorkflowInstance

        instance = WorkflowInstance(workflow_id="approval", version=1)
        instance.bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t1"))
        await sql_store.save(instance)

        instance.bookmarks = [Bookmark(name="shipped", activity_id="ship", token="t1")]
        await sql_store.save(instance)
        loaded = await sql_store.load(instance.id)

        assert [b.name for b in loaded.bookmarks] == ["shipped"]
        assert await sql_store.find_by_bookmark("approved") == []

    async def test_stale_save_conflicts(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import WorkflowInstance
        from litestar_orchestration.exceptions import ConcurrencyConflictError

        instance = WorkflowInstance(workflow_id="linear", version=1)
        await sql_store.save(instance)
        first = await sql_store.load(instance.id)
        second = await sql_store.load(instance.id)

        first.variables["winner"] = "first"
        await sql_store.save(first)
        second.variables["winner"] = "second"

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await sql_store.save(second)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert (await sql_store.load(instance.id)).variables["winner"] == "first"

    async def test_duplicate_create_conflicts(self, sql_store: SQLAlchemyInstanceStore) -> None:
        import copy

        from litestar_orchestration.core.models import WorkflowInstance
        from litestar_orchestration.exceptions import ConcurrencyConflictError

        instance = WorkflowInstance(workflow_id="linear", version=1)
        duplicate = copy.deepcopy(instance)
        await sql_store.save(instance)

        with pytest.raises(ConcurrencyConflictError):
            await sql_store.save(duplicate)

    async def test_missing_instance(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from uuid import uuid4

        from litestar_orchestration.exceptions import WorkflowInstanceNotFoundError

        with pytest.raises(WorkflowInstanceNotFoundError):
            await sql_store.load(uuid4())
        with pytest.raises(WorkflowInstanceNotFoundError):
            await sql_store.get_history(uuid4())

    async def test_find_by_bookmark(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import Bookmark, WorkflowInstance

        waiting = WorkflowInstance(workflow_id="approval", version=1, correlation_id="order-1")
        waiting.bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t1"))
        other = WorkflowInstance(workflow_id="approval", version=1, correlation_id="order-2")
        other.bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t2"))
        idle = WorkflowInstance(workflow_id="approval", version=1)
        for instance in (waiting, other, idle):
            await sql_store.save(instance)

        assert set(await sql_store.find_by_bookmark("approved")) == {waiting.id, other.id}
        assert await sql_store.find_by_bookmark("approved", correlation_id="order-1") == [waiting.id]
        assert await sql_store.find_by_bookmark("approved", workflow_id="other") == []

    async def test_find_due(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import WorkflowInstance, utcnow

        now = utcnow()
        later = WorkflowInstance(workflow_id="w", version=1, wake_at=now - timedelta(seconds=1))
        earlier = WorkflowInstance(workflow_id="w", version=1, wake_at=now - timedelta(seconds=5))
        future = WorkflowInstance(workflow_id="w", version=1, wake_at=now + timedelta(hours=1))
        for instance in (later, earlier, future):
            await sql_store.save(instance)

        assert await sql_store.find_due(now) == [earlier.id, later.id]

    async def test_query_filters_and_pages(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import Bookmark, WorkflowInstance, utcnow
        from litestar_orchestration.core.types import HistoryEntryType, InstanceStatus
        from litestar_orchestration.dto import InstanceQuery

        base = utcnow() - timedelta(minutes=10)
        instances = [
            WorkflowInstance(
                workflow_id="linear" if n % 2 else "approval",
                version=1,
                status=InstanceStatus.COMPLETED if n < 3 else InstanceStatus.RUNNING,
                created_at=base + timedelta(minutes=n),
            )
            for n in range(5)
        ]
        instances[4].bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t1"))
        instances[4].record(HistoryEntryType.WORKFLOW_STARTED)
        for instance in instances:
            await sql_store.save(instance)

        newest_first = await sql_store.query(InstanceQuery(page_size=2))
        completed = await sql_store.query(InstanceQuery(statuses=["Completed"], descending=False))
        linear = await sql_store.query(InstanceQuery(workflow_id="linear"))

        assert newest_first.total == 5
        assert [i.id for i in newest_first.items] == [instances[4].id, instances[3].id]
        assert [b.name for b in newest_first.items[0].bookmarks] == ["approved"]
        assert newest_first.items[0].history == []
        assert [i.id for i in completed.items] == [i.id for i in instances[:3]]
        assert linear.total == 2

    async def test_delete(self, sql_store: SQLAlchemyInstanceStore) -> None:
        from litestar_orchestration.core.models import Bookmark, WorkflowInstance
        from litestar_orchestration.core.types import HistoryEntryType
        from litestar_orchestration.exceptions import WorkflowInstanceNotFoundError

        instance = WorkflowInstance(workflow_id="approval", version=1)
        instance.bookmarks.append(Bookmark(name="approved", activity_id="wait", token="t1"))
        instance.record(HistoryEntryType.WORKFLOW_STARTED)
        await sql_store.save(instance)

        await sql_store.delete(instance.id)
        await sql_store.delete(instance.id)

        with pytest.raises(WorkflowInstanceNotFoundError):
            await sql_store.load(instance.id)
        assert await sql_store.find_by_bookmark("approved") == []


@pytest.mark.integration
@pytest.mark.asyncio
class TestEngineOnSQLAlchemy:
    """Tests running workflows end to end on the SQLAlchemy store."""

    async def test_linear_and_signalled_workflows(
        self,
        sql_store: SQLAlchemyInstanceStore,
        tasks: TaskHandlerRegistry,
        linear_definition: WorkflowDefinition,
        approval_json: dict[str, Any],
    ) -> None:
        from litestar_orchestration.config import EngineConfig
        from litestar_orchestration.core.types import InstanceStatus
        from litestar_orchestration.engine.runtime import WorkflowEngine

        workflow_engine = WorkflowEngine(
            store=sql_store,
            tasks=tasks,
            config=EngineConfig(worker_count=2, due_poll_interval=0.05),
        )
        async with workflow_engine:
            workflow_engine.publish(linear_definition)
            workflow_engine.publish(approval_json)

            linear = await workflow_engine.start_workflow("linear", input={"count": 4})
            approval = await workflow_engine.start_workflow("approval", input={"amount": 90})
            linear_result = await workflow_engine.wait(linear.instance_id, timeout=5)
            suspended = await workflow_engine.wait(approval.instance_id, timeout=5)

            await workflow_engine.signal(approval.instance_id, "approved", {"approver": "kim"})
            approval_result = await workflow_engine.wait(approval.instance_id, timeout=5)
            history = await workflow_engine.get_history(approval.instance_id)

        assert linear_result.status == InstanceStatus.COMPLETED
        assert linear_result.output == {"count": 5}
        assert suspended.status == InstanceStatus.SUSPENDED
        assert approval_result.status == InstanceStatus.COMPLETED
        assert approval_result.output == {"amount": 90, "approver": "kim"}
        assert [e.sequence for e in history] == list(range(1, len(history) + 1))

    async def test_datetime_input_and_payload_are_stored_as_iso_strings(
        self,
        sql_store: SQLAlchemyInstanceStore,
        tasks: TaskHandlerRegistry,
        approval_json: dict[str, Any],
    ) -> None:
        from datetime import datetime, timezone

        from litestar_orchestration.config import EngineConfig
        from litestar_orchestration.core.types import InstanceStatus
        from litestar_orchestration.engine.runtime import WorkflowEngine

        approval_json["inputParameters"].append({"name": "requestedAt", "type": "DateTime"})
        requested_at = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        approved_at = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

        workflow_engine = WorkflowEngine(
            store=sql_store,
            tasks=tasks,
            config=EngineConfig(worker_count=1, due_poll_interval=0.05),
        )
        async with workflow_engine:
            workflow_engine.publish(approval_json)

            started = await workflow_engine.start_workflow(
                "approval", input={"amount": 10, "requestedAt": requested_at}
            )
            suspended = await workflow_engine.wait(started.instance_id, timeout=5)
            await workflow_engine.signal(started.instance_id, "approved", {"approvedAt": approved_at})
            result = await workflow_engine.wait(started.instance_id, timeout=5)

        stored = await sql_store.load(started.instance_id)

        assert suspended.status == InstanceStatus.SUSPENDED
        assert result.status == InstanceStatus.COMPLETED
        assert isinstance(stored.input["requestedAt"], str)
        assert datetime.fromisoformat(stored.input["requestedAt"]) == requested_at
        assert datetime.fromisoformat(stored.output["approvedAt"]) == approved_at
        assert datetime.fromisoformat(stored.variables["requestedAt"]) == requested_at
