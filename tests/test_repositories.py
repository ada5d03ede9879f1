"""
Tests for the repository backends.

The in-memory backend is exercised directly; the PostgreSQL backend runs
against a mocked psycopg AsyncConnection and is checked for the SQL and
parameters it sends and for how it maps rows and errors.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from conftest import NOW, hours_ago, make_message
from context_memory.errors import PersistenceError
from context_memory.memory.models import (
    ConversationSummary,
    KnowledgeType,
    LongTermMemory,
    MessageRole,
    ProjectContextValue,
    Session,
)
from context_memory.memory.postgres import (
    SCHEMA_STATEMENTS,
    PostgresDatabase,
    _like_pattern,
    create_postgres_repositories,
)

# ── In-memory: sessions and counters ──


class TestInMemoryCounters:
    @pytest.mark.asyncio
    async def test_counter_arithmetic(self, repos, session):
        m1, m2, m3 = (make_message(tokens=t) for t in (10, 20, 30))
        for m in (m1, m2, m3):
            await repos.messages.create(m)

        stored = await repos.sessions.find_by_id("s1")
        assert (stored.message_count, stored.total_tokens) == (3, 60)

        await repos.messages.archive_batch([m2.id])
        await repos.messages.archive_batch([m2.id])
        await repos.messages.soft_delete(m3.id)
        await repos.messages.soft_delete(m3.id)

        stored = await repos.sessions.find_by_id("s1")
        assert stored.message_count == 2
        assert stored.total_tokens == 30
        assert stored.archived_count == 1
        assert stored.archived_tokens == 20

        reconciled = await repos.sessions.reconcile_counters("s1")
        assert (
            reconciled.message_count,
            reconciled.total_tokens,
            reconciled.archived_count,
            reconciled.archived_tokens,
        ) == (2, 30, 1, 20)

    @pytest.mark.asyncio
    async def test_deleted_messages_are_not_counted(self, repos, session):
        await repos.messages.create(make_message(tokens=50, is_deleted=True))
        stored = await repos.sessions.find_by_id("s1")
        assert stored.message_count == 0
        assert stored.total_tokens == 0

    @pytest.mark.asyncio
    async def test_update_keeps_counters(self, repos, session):
        await repos.messages.create(make_message(tokens=10))
        changed = Session(id="s1", title="renamed", workspace_path="/other", is_pinned=True, message_count=99)
        await repos.sessions.update(changed)

        stored = await repos.sessions.find_by_id("s1")
        assert stored.title == "renamed"
        assert stored.is_pinned
        assert stored.message_count == 1

        with pytest.raises(PersistenceError):
            await repos.sessions.update(Session(id="missing"))

    @pytest.mark.asyncio
    async def test_stats(self, repos, session):
        await repos.messages.create(make_message(tokens=10, timestamp=hours_ago(2)))
        archived = make_message(tokens=20, timestamp=hours_ago(1))
        await repos.messages.create(archived)
        await repos.messages.archive_batch([archived.id])

        stats = await repos.sessions.get_stats("s1")
        assert stats.active_message_count == 1
        assert stats.archived_count == 1
        assert stats.last_message_at == hours_ago(1)
        assert await repos.sessions.get_stats("missing") is None

    @pytest.mark.asyncio
    async def test_session_queries(self, repos, session):
        await repos.sessions.create(Session(id="s2", workspace_path="/ws", engine_id="deepseek"))
        await repos.sessions.create(Session(id="s3", workspace_path="/else", engine_id="deepseek"))
        await repos.sessions.soft_delete("s3")

        assert {s.id for s in await repos.sessions.find_by_workspace("/ws")} == {"s1", "s2"}
        assert [s.id for s in await repos.sessions.find_by_engine("deepseek")] == ["s2"]
        assert await repos.sessions.count() == 2
        assert len(await repos.sessions.find_all(limit=1)) == 1

        with pytest.raises(PersistenceError):
            await repos.sessions.create(Session(id="s2"))


# ── In-memory: messages, summaries, memories ──


class TestInMemoryMessages:
    @pytest.mark.asyncio
    async def test_create_rejects_unknown_session_and_duplicates(self, repos, session):
        with pytest.raises(PersistenceError):
            await repos.messages.create(make_message(session_id="nope"))

        msg = make_message()
        await repos.messages.create(msg)
        with pytest.raises(PersistenceError):
            await repos.messages.create(msg)

    @pytest.mark.asyncio
    async def test_create_batch_reports_failures(self, repos, session):
        good = make_message()
        result = await repos.messages.create_batch([good, make_message(session_id="nope"), good])
        assert result.success == 1
        assert result.failed == 2
        assert [i for i, _ in result.errors] == [1, 2]

    @pytest.mark.asyncio
    async def test_find_by_session_filters_and_order(self, repos, session):
        old = make_message(content="old", timestamp=hours_ago(3), importance_score=90)
        mid = make_message(content="mid", timestamp=hours_ago(2), importance_score=10)
        new = make_message(content="new", timestamp=hours_ago(1), importance_score=50)
        for m in (new, old, mid):
            await repos.messages.create(m)
        await repos.messages.archive_batch([old.id])

        assert [m.content for m in await repos.messages.find_by_session("s1")] == ["mid", "new"]
        everything = await repos.messages.find_by_session("s1", include_archived=True)
        assert [m.content for m in everything] == ["old", "mid", "new"]
        by_score = await repos.messages.find_by_session(
            "s1", include_archived=True, order_by="importance_score", descending=True
        )
        assert [m.content for m in by_score] == ["old", "new", "mid"]
        page = await repos.messages.find_by_session("s1", include_archived=True, limit=1, offset=1)
        assert [m.content for m in page] == ["mid"]

        with pytest.raises(ValueError):
            await repos.messages.find_by_session("s1", order_by="content")

    @pytest.mark.asyncio
    async def test_returned_messages_are_copies(self, repos, session):
        msg = make_message(content="original")
        await repos.messages.create(msg)
        fetched = await repos.messages.find_by_id(msg.id)
        fetched.content = "changed"
        assert (await repos.messages.find_by_id(msg.id)).content == "original"

    @pytest.mark.asyncio
    async def test_batch_updates_report_missing_ids(self, repos, session):
        msg = make_message()
        await repos.messages.create(msg)

        archived = await repos.messages.archive_batch([msg.id, "ghost"])
        assert (archived.success, archived.failed) == (1, 1)
        assert archived.errors[0][0] == 1

        scored = await repos.messages.update_importance_batch({msg.id: 42, "ghost": 1})
        assert (scored.success, scored.failed) == (1, 1)
        assert (await repos.messages.find_by_id(msg.id)).importance_score == 42

    @pytest.mark.asyncio
    async def test_count(self, repos, session):
        a, b = make_message(), make_message()
        await repos.messages.create(a)
        await repos.messages.create(b)
        await repos.messages.soft_delete(b.id)
        assert await repos.messages.count("s1") == 1
        assert await repos.messages.count() == 1


class TestInMemorySummariesAndMemories:
    @pytest.mark.asyncio
    async def test_summaries(self, repos):
        for hours, cost in ((5, 100), (10, 50)):
            await repos.summaries.create(
                ConversationSummary(
                    session_id="s1",
                    start_time=hours_ago(hours),
                    end_time=hours_ago(hours - 1),
                    message_count=3,
                    total_tokens=300,
                    summary="...",
                    cost_tokens=cost,
                )
            )
        found = await repos.summaries.find_by_session("s1")
        assert [s.start_time for s in found] == [hours_ago(10), hours_ago(5)]
        assert await repos.summaries.total_cost_tokens("s1") == 150
        assert await repos.summaries.count("other") == 0

    @pytest.mark.asyncio
    async def test_memory_search(self, repos):
        app = LongTermMemory(
            type=KnowledgeType.PROJECT_CONTEXT,
            key="file:src/App.tsx",
            value=ProjectContextValue(path="src/App.tsx"),
            workspace_path="/ws",
        )
        other = LongTermMemory(
            type=KnowledgeType.PROJECT_CONTEXT,
            key="file:lib/util.py",
            value=ProjectContextValue(path="lib/util.py"),
            workspace_path="/other",
        )
        await repos.memories.create(app)
        await repos.memories.create(other)

        assert [m.id for m in await repos.memories.search(["APP.TSX"])] == [app.id]
        assert await repos.memories.search(["util"], workspace_path="/ws") == []
        assert await repos.memories.search([""]) == []

        await repos.memories.increment_hit(other.id)
        assert [m.id for m in await repos.memories.search(["file:"])] == [other.id, app.id]


# ── PostgreSQL ──


def mock_connection(rows=None, row=None, rowcount=1):
    cursor = MagicMock()
    cursor.fetchone = AsyncMock(return_value=row)
    cursor.fetchall = AsyncMock(return_value=rows or [])
    cursor.rowcount = rowcount
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=cursor)
    conn.close = AsyncMock()
    return conn


def session_row(**overrides):
    row = {
        "id": "s1",
        "title": "t",
        "workspace_path": "/ws",
        "engine_id": "claude-code",
        "created_at": NOW,
        "updated_at": NOW,
        "message_count": 2,
        "total_tokens": 40,
        "archived_count": 1,
        "archived_tokens": 10,
        "is_deleted": False,
        "is_pinned": False,
        "metadata": {"k": "v"},
    }
    row.update(overrides)
    return row


class TestPostgresDatabase:
    @pytest.mark.asyncio
    async def test_connect_uses_autocommit_dict_rows(self):
        conn = mock_connection()
        with patch(
            "context_memory.memory.postgres.AsyncConnection.connect", AsyncMock(return_value=conn)
        ) as connect:
            db = PostgresDatabase("postgresql://localhost/test")
            assert await db.connect() is conn
            assert await db.connect() is conn

        connect.assert_awaited_once()
        assert connect.call_args.args == ("postgresql://localhost/test",)
        assert connect.call_args.kwargs["autocommit"] is True
        assert connect.call_args.kwargs["row_factory"] is dict_row

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        with patch(
            "context_memory.memory.postgres.AsyncConnection.connect",
            AsyncMock(side_effect=psycopg.OperationalError("connection refused")),
        ):
            with pytest.raises(PersistenceError, match="connection refused"):
                await PostgresDatabase("postgresql://nowhere").connect()

    @pytest.mark.asyncio
    async def test_setup_is_idempotent(self):
        conn = mock_connection()
        db = PostgresDatabase(conn=conn)
        await db.setup()
        await db.setup()
        assert conn.execute.await_count == len(SCHEMA_STATEMENTS)

    @pytest.mark.asyncio
    async def test_query_errors_become_persistence_errors(self):
        conn = mock_connection()
        conn.execute.side_effect = psycopg.errors.UniqueViolation("duplicate key")
        db = PostgresDatabase(conn=conn)
        with pytest.raises(PersistenceError, match="duplicate key"):
            await db.execute("INSERT INTO sessions VALUES (%s)", ("s1",))
        with pytest.raises(PersistenceError):
            await db.fetchone("SELECT 1")

    @pytest.mark.asyncio
    async def test_close(self):
        conn = mock_connection()
        db = PostgresDatabase(conn=conn)
        await db.close()
        conn.close.assert_awaited_once()
        assert db.conn is None


class TestPostgresRepositories:
    @pytest.mark.asyncio
    async def test_session_create_params(self):
        conn = mock_connection()
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        await repos.sessions.create(Session(id="s1", title="t", metadata={"a": 1}))

        sql, params = conn.execute.call_args.args
        assert "INSERT INTO sessions" in sql
        assert params[0] == "s1"
        assert params[1] == "t"
        assert isinstance(params[-1], Jsonb)

    @pytest.mark.asyncio
    async def test_session_update_missing(self):
        conn = mock_connection(rowcount=0)
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        with pytest.raises(PersistenceError):
            await repos.sessions.update(Session(id="ghost"))

    @pytest.mark.asyncio
    async def test_session_row_mapping(self):
        conn = mock_connection(row=session_row())
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        session = await repos.sessions.find_by_id("s1")
        assert session.message_count == 2
        assert session.metadata == {"k": "v"}
        assert conn.execute.call_args.args[1] == ("s1",)

    @pytest.mark.asyncio
    async def test_message_query_conditions(self):
        conn = mock_connection(
            rows=[
                {
                    "id": "m1",
                    "session_id": "s1",
                    "role": "assistant",
                    "content": "hi",
                    "tokens": 5,
                    "is_archived": False,
                    "archived_at": None,
                    "importance_score": None,
                    "is_deleted": False,
                    "timestamp": NOW,
                    "tool_calls": [{"name": "bash", "output": "ok"}],
                }
            ]
        )
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))

        [message] = await repos.messages.find_by_session("s1", limit=10)
        assert message.role == MessageRole.ASSISTANT
        assert message.tool_calls[0].name == "bash"
        sql, params = conn.execute.call_args.args
        assert "NOT is_archived" in sql
        assert "NOT is_deleted" in sql
        assert params == ("s1", 10, 0)

        await repos.messages.find_by_session("s1", include_archived=True, order_by="importance_score", descending=True)
        sql, _ = conn.execute.call_args.args
        assert "NOT is_archived" not in sql
        assert "ORDER BY importance_score DESC" in sql

        with pytest.raises(ValueError):
            await repos.messages.find_by_session("s1", order_by="id; DROP TABLE messages")

    @pytest.mark.asyncio
    async def test_archive_batch_reports_missing(self):
        conn = mock_connection(rows=[{"id": "m1"}])
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        result = await repos.messages.archive_batch(["m1", "m2"])
        assert (result.success, result.failed) == (1, 1)
        assert conn.execute.call_args.args[1] == (["m1", "m2"],)

        conn.execute.reset_mock()
        assert (await repos.messages.archive_batch([])).success == 0
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_importance_batch(self):
        conn = mock_connection(rowcount=0)
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        result = await repos.messages.update_importance_batch({"ghost": 10})
        assert (result.success, result.failed) == (0, 1)

    @pytest.mark.asyncio
    async def test_memory_row_mapping(self):
        row = {
            "id": "mem1",
            "type": "project_context",
            "key": "file:a.py",
            "value": {"path": "a.py", "file_type": "python"},
            "workspace_path": "/ws",
            "session_id": None,
            "hit_count": 3,
            "last_hit_at": None,
            "confidence": 0.9,
            "created_at": NOW,
            "updated_at": NOW,
            "is_deleted": False,
        }
        conn = mock_connection(row=row)
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        memory = await repos.memories.find_by_key("file:a.py")
        assert memory.value == ProjectContextValue(path="a.py", file_type="python")
        assert memory.hit_count == 3

    @pytest.mark.asyncio
    async def test_memory_search_escapes_like_patterns(self):
        conn = mock_connection()
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        await repos.memories.search(["50%_off"], workspace_path="/ws", limit=5)

        sql, params = conn.execute.call_args.args
        assert "ILIKE ANY" in sql
        assert params[0] == [r"%50\%\_off%"]
        assert params[0] == params[1]
        assert params[2:] == ("/ws", 5, 0)

        conn.execute.reset_mock()
        assert await repos.memories.search([]) == []
        conn.execute.assert_not_called()

    def test_like_pattern(self):
        assert _like_pattern("a\\b") == "%a\\\\b%"

    @pytest.mark.asyncio
    async def test_count(self):
        conn = mock_connection(row={"count": 7})
        repos = create_postgres_repositories(PostgresDatabase(conn=conn))
        assert await repos.memories.count(KnowledgeType.FAQ, "/ws") == 7
        sql, params = conn.execute.call_args.args
        assert "type = %s" in sql
        assert params == ("faq", "/ws")
