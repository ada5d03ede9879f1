"""
PostgreSQL backend for conversation memory.

Schema: sessions, messages, conversation_summaries, long_term_memories,
the v_session_stats view and PL/pgSQL triggers that keep the session
counters in step with message insert / archive / soft delete.

Uses a single psycopg ``AsyncConnection`` in autocommit mode with dict
rows. Every ``psycopg.Error`` is re-raised as ``PersistenceError``.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..errors import PersistenceError
from .models import (
    BatchResult,
    ConversationSummary,
    KnowledgeType,
    LongTermMemory,
    Message,
    Session,
    SessionStats,
    ToolCall,
    value_from_dict,
    value_to_dict,
)
from .repositories import (
    MESSAGE_ORDER_FIELDS,
    LongTermMemoryRepository,
    MessageRepository,
    Repositories,
    SessionRepository,
    SummaryRepository,
)

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    # ── Tables ──
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        workspace_path TEXT NOT NULL DEFAULT '',
        engine_id TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        message_count INT NOT NULL DEFAULT 0,
        total_tokens INT NOT NULL DEFAULT 0,
        archived_count INT NOT NULL DEFAULT 0,
        archived_tokens INT NOT NULL DEFAULT 0,
        is_deleted BOOLEAN NOT NULL DEFAULT false,
        is_pinned BOOLEAN NOT NULL DEFAULT false,
        metadata JSONB NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        tokens INT NOT NULL DEFAULT 0,
        is_archived BOOLEAN NOT NULL DEFAULT false,
        archived_at TIMESTAMPTZ,
        importance_score INT,
        is_deleted BOOLEAN NOT NULL DEFAULT false,
        timestamp TIMESTAMPTZ NOT NULL,
        tool_calls JSONB NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_summaries (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        start_time TIMESTAMPTZ NOT NULL,
        end_time TIMESTAMPTZ NOT NULL,
        message_count INT NOT NULL,
        total_tokens INT NOT NULL,
        summary TEXT NOT NULL,
        key_points JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        model_used TEXT NOT NULL DEFAULT '',
        cost_tokens INT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS long_term_memories (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        key TEXT NOT NULL,
        value JSONB NOT NULL,
        workspace_path TEXT,
        session_id TEXT REFERENCES sessions(id) ON DELETE SET NULL,
        hit_count INT NOT NULL DEFAULT 0,
        last_hit_at TIMESTAMPTZ,
        confidence REAL NOT NULL DEFAULT 0.5,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_deleted BOOLEAN NOT NULL DEFAULT false
    )
    """,
    # ── Indexes ──
    "CREATE INDEX IF NOT EXISTS idx_sessions_workspace ON sessions(workspace_path)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_engine ON sessions(engine_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_archived ON messages(session_id, is_archived)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_timestamp ON messages(session_id, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_importance ON messages(importance_score DESC)",
    "CREATE INDEX IF NOT EXISTS idx_summaries_session ON conversation_summaries(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON long_term_memories(type)",
    "CREATE INDEX IF NOT EXISTS idx_memories_workspace ON long_term_memories(workspace_path)",
    "CREATE INDEX IF NOT EXISTS idx_memories_key ON long_term_memories(key)",
    "CREATE INDEX IF NOT EXISTS idx_memories_hit_count ON long_term_memories(hit_count DESC)",
    # ── View ──
    """
    CREATE OR REPLACE VIEW v_session_stats AS
    SELECT
        s.id,
        s.title,
        s.workspace_path,
        s.engine_id,
        s.message_count,
        s.total_tokens,
        s.archived_count,
        s.archived_tokens,
        (SELECT COUNT(*) FROM messages m
          WHERE m.session_id = s.id AND NOT m.is_archived AND NOT m.is_deleted
        ) AS active_message_count,
        (SELECT MAX(m.timestamp) FROM messages m
          WHERE m.session_id = s.id AND NOT m.is_deleted
        ) AS last_message_at
    FROM sessions s
    WHERE NOT s.is_deleted
    """,
    # ── Counter triggers ──
    """
    CREATE OR REPLACE FUNCTION trg_fn_message_insert() RETURNS trigger AS $$
    BEGIN
        UPDATE sessions
        SET message_count = message_count + 1,
            total_tokens = total_tokens + NEW.tokens,
            updated_at = now()
        WHERE id = NEW.session_id;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE TRIGGER trg_update_session_stats_insert
    AFTER INSERT ON messages
    FOR EACH ROW WHEN (NOT NEW.is_deleted)
    EXECUTE FUNCTION trg_fn_message_insert()
    """,
    """
    CREATE OR REPLACE FUNCTION trg_fn_message_archive() RETURNS trigger AS $$
    BEGIN
        UPDATE sessions
        SET archived_count = archived_count + 1,
            archived_tokens = archived_tokens + NEW.tokens,
            updated_at = now()
        WHERE id = NEW.session_id;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE TRIGGER trg_archive_message
    AFTER UPDATE OF is_archived ON messages
    FOR EACH ROW WHEN (NEW.is_archived AND NOT OLD.is_archived AND NOT NEW.is_deleted)
    EXECUTE FUNCTION trg_fn_message_archive()
    """,
    """
    CREATE OR REPLACE FUNCTION trg_fn_message_soft_delete() RETURNS trigger AS $$
    BEGIN
        UPDATE sessions
        SET message_count = message_count - 1,
            total_tokens = total_tokens - NEW.tokens,
            updated_at = now()
        WHERE id = NEW.session_id;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE TRIGGER trg_soft_delete_message
    AFTER UPDATE OF is_deleted ON messages
    FOR EACH ROW WHEN (NEW.is_deleted AND NOT OLD.is_deleted)
    EXECUTE FUNCTION trg_fn_message_soft_delete()
    """,
]


class PostgresDatabase:
    """
    Owns the connection and creates the schema.

    Usage:
        db = PostgresDatabase("postgresql://...")
        await db.setup()
        repos = create_postgres_repositories(db)
    """

    def __init__(self, conninfo: str = "", conn: Optional[AsyncConnection] = None):
        self.conninfo = conninfo
        self.conn = conn
        self._ready = False

    async def connect(self) -> AsyncConnection:
        if self.conn is None:
            try:
                self.conn = await AsyncConnection.connect(
                    self.conninfo,
                    autocommit=True,
                    prepare_threshold=0,
                    row_factory=dict_row,
                )
            except psycopg.Error as e:
                raise PersistenceError(f"cannot connect to PostgreSQL: {e}") from e
            logger.info("Connected to PostgreSQL")
        return self.conn

    async def setup(self):
        """Create tables, indexes, view and triggers (idempotent)."""
        if self._ready:
            return
        await self.connect()
        for statement in SCHEMA_STATEMENTS:
            await self.execute(statement)
        self._ready = True
        logger.info("Memory schema ready")

    @asynccontextmanager
    async def _errors(self, sql: str):
        try:
            yield
        except psycopg.Error as e:
            logger.error("Query failed: %s (%s)", e, " ".join(sql.split())[:80])
            raise PersistenceError(str(e)) from e

    async def execute(self, sql: str, params: Optional[Any] = None):
        conn = await self.connect()
        async with self._errors(sql):
            return await conn.execute(sql, params)

    async def fetchone(self, sql: str, params: Optional[Any] = None) -> Optional[dict]:
        async with self._errors(sql):
            cur = await self.execute(sql, params)
            return await cur.fetchone()

    async def fetchall(self, sql: str, params: Optional[Any] = None) -> list[dict]:
        async with self._errors(sql):
            cur = await self.execute(sql, params)
            return await cur.fetchall()

    async def close(self):
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
            self._ready = False


# ── Row mapping ──


def _row_to_session(row: dict) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        workspace_path=row["workspace_path"],
        engine_id=row["engine_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        message_count=row["message_count"],
        total_tokens=row["total_tokens"],
        archived_count=row["archived_count"],
        archived_tokens=row["archived_tokens"],
        is_deleted=row["is_deleted"],
        is_pinned=row["is_pinned"],
        metadata=row.get("metadata") or {},
    )


def _row_to_message(row: dict) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        tokens=row["tokens"],
        is_archived=row["is_archived"],
        archived_at=row.get("archived_at"),
        importance_score=row.get("importance_score"),
        is_deleted=row["is_deleted"],
        timestamp=row["timestamp"],
        tool_calls=[ToolCall.from_dict(tc) for tc in row.get("tool_calls") or []],
    )


def _row_to_summary(row: dict) -> ConversationSummary:
    return ConversationSummary(
        id=row["id"],
        session_id=row["session_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        message_count=row["message_count"],
        total_tokens=row["total_tokens"],
        summary=row["summary"],
        key_points=list(row.get("key_points") or []),
        created_at=row["created_at"],
        model_used=row.get("model_used") or "",
        cost_tokens=row.get("cost_tokens") or 0,
    )


def _row_to_memory(row: dict) -> LongTermMemory:
    knowledge_type = KnowledgeType(row["type"])
    return LongTermMemory(
        id=row["id"],
        type=knowledge_type,
        key=row["key"],
        value=value_from_dict(knowledge_type, row["value"]),
        workspace_path=row.get("workspace_path"),
        session_id=row.get("session_id"),
        hit_count=row.get("hit_count") or 0,
        last_hit_at=row.get("last_hit_at"),
        confidence=row.get("confidence", 0.5),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_deleted=row.get("is_deleted", False),
    )


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ── Repositories ──


class PostgresSessionRepository(SessionRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create(self, session: Session) -> Session:
        await self.db.execute(
            """
            INSERT INTO sessions (
                id, title, workspace_path, engine_id, created_at, updated_at,
                message_count, total_tokens, archived_count, archived_tokens,
                is_deleted, is_pinned, metadata
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.title,
                session.workspace_path,
                session.engine_id,
                session.created_at,
                session.updated_at,
                session.message_count,
                session.total_tokens,
                session.archived_count,
                session.archived_tokens,
                session.is_deleted,
                session.is_pinned,
                Jsonb(session.metadata),
            ),
        )
        return session

    async def update(self, session: Session) -> None:
        cur = await self.db.execute(
            """
            UPDATE sessions
            SET title = %s, workspace_path = %s, engine_id = %s,
                is_pinned = %s, metadata = %s, updated_at = now()
            WHERE id = %s
            """,
            (
                session.title,
                session.workspace_path,
                session.engine_id,
                session.is_pinned,
                Jsonb(session.metadata),
                session.id,
            ),
        )
        if cur.rowcount == 0:
            raise PersistenceError(f"session {session.id} not found")

    async def find_by_id(self, session_id: str) -> Optional[Session]:
        row = await self.db.fetchone("SELECT * FROM sessions WHERE id = %s", (session_id,))
        return _row_to_session(row) if row else None

    async def _find(self, where: str, params: tuple, limit: int, offset: int):
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM sessions
            WHERE NOT is_deleted {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        return [_row_to_session(r) for r in rows]

    async def find_all(self, limit: int = 100, offset: int = 0) -> list[Session]:
        return await self._find("", (), limit, offset)

    async def find_by_workspace(
        self, workspace_path: str, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        return await self._find("AND workspace_path = %s", (workspace_path,), limit, offset)

    async def find_by_engine(
        self, engine_id: str, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        return await self._find("AND engine_id = %s", (engine_id,), limit, offset)

    async def soft_delete(self, session_id: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET is_deleted = true, updated_at = now() WHERE id = %s",
            (session_id,),
        )

    async def count(self) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS count FROM sessions WHERE NOT is_deleted"
        )
        return row["count"] if row else 0

    async def get_stats(self, session_id: str) -> Optional[SessionStats]:
        row = await self.db.fetchone(
            "SELECT * FROM v_session_stats WHERE id = %s", (session_id,)
        )
        if not row:
            return None
        return SessionStats(
            session_id=row["id"],
            message_count=row["message_count"],
            total_tokens=row["total_tokens"],
            archived_count=row["archived_count"],
            archived_tokens=row["archived_tokens"],
            active_message_count=row["active_message_count"],
            last_message_at=row.get("last_message_at"),
        )

    async def reconcile_counters(self, session_id: str) -> Optional[Session]:
        row = await self.db.fetchone(
            """
            UPDATE sessions s
            SET message_count = agg.message_count,
                total_tokens = agg.total_tokens,
                archived_count = agg.archived_count,
                archived_tokens = agg.archived_tokens,
                updated_at = now()
            FROM (
                SELECT
                    COUNT(*) AS message_count,
                    COALESCE(SUM(tokens), 0) AS total_tokens,
                    COUNT(*) FILTER (WHERE is_archived) AS archived_count,
                    COALESCE(SUM(tokens) FILTER (WHERE is_archived), 0) AS archived_tokens
                FROM messages
                WHERE session_id = %s AND NOT is_deleted
            ) agg
            WHERE s.id = %s
            RETURNING s.*
            """,
            (session_id, session_id),
        )
        return _row_to_session(row) if row else None


class PostgresMessageRepository(MessageRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create(self, message: Message) -> Message:
        await self.db.execute(
            """
            INSERT INTO messages (
                id, session_id, role, content, tokens, is_archived, archived_at,
                importance_score, is_deleted, timestamp, tool_calls
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                message.id,
                message.session_id,
                message.role.value,
                message.content,
                message.tokens,
                message.is_archived,
                message.archived_at,
                message.importance_score,
                message.is_deleted,
                message.timestamp,
                Jsonb([asdict(tc) for tc in message.tool_calls]),
            ),
        )
        return message

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        row = await self.db.fetchone("SELECT * FROM messages WHERE id = %s", (message_id,))
        return _row_to_message(row) if row else None

    async def find_by_session(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        include_archived: bool = False,
        include_deleted: bool = False,
        order_by: str = "timestamp",
        descending: bool = False,
    ) -> list[Message]:
        if order_by not in MESSAGE_ORDER_FIELDS:
            raise ValueError(f"cannot order messages by {order_by!r}")
        conditions = ["session_id = %s"]
        if not include_archived:
            conditions.append("NOT is_archived")
        if not include_deleted:
            conditions.append("NOT is_deleted")
        direction = "DESC" if descending else "ASC"
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM messages
            WHERE {' AND '.join(conditions)}
            ORDER BY {order_by} {direction}, timestamp {direction}
            LIMIT %s OFFSET %s
            """,
            (session_id, limit, offset),
        )
        return [_row_to_message(r) for r in rows]

    async def archive_batch(self, message_ids: list[str]) -> BatchResult:
        if not message_ids:
            return BatchResult()
        # Re-archiving keeps the first archived_at; the trigger only counts
        # rows that were active before this update.
        rows = await self.db.fetchall(
            """
            UPDATE messages
            SET is_archived = true, archived_at = COALESCE(archived_at, now())
            WHERE id = ANY(%s)
            RETURNING id
            """,
            (list(message_ids),),
        )
        found = {r["id"] for r in rows}
        result = BatchResult(success=len(found))
        for i, message_id in enumerate(message_ids):
            if message_id not in found:
                result.failed += 1
                result.errors.append((i, f"message {message_id} not found"))
        return result

    async def update_importance_batch(self, scores: dict[str, int]) -> BatchResult:
        result = BatchResult()
        for i, (message_id, score) in enumerate(scores.items()):
            try:
                cur = await self.db.execute(
                    "UPDATE messages SET importance_score = %s WHERE id = %s",
                    (score, message_id),
                )
            except PersistenceError as e:
                result.failed += 1
                result.errors.append((i, str(e)))
                continue
            if cur.rowcount == 0:
                result.failed += 1
                result.errors.append((i, f"message {message_id} not found"))
            else:
                result.success += 1
        return result

    async def soft_delete(self, message_id: str) -> None:
        await self.db.execute(
            "UPDATE messages SET is_deleted = true WHERE id = %s", (message_id,)
        )

    async def count(self, session_id: Optional[str] = None) -> int:
        if session_id:
            row = await self.db.fetchone(
                "SELECT COUNT(*) AS count FROM messages WHERE NOT is_deleted AND session_id = %s",
                (session_id,),
            )
        else:
            row = await self.db.fetchone(
                "SELECT COUNT(*) AS count FROM messages WHERE NOT is_deleted"
            )
        return row["count"] if row else 0


class PostgresSummaryRepository(SummaryRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create(self, summary: ConversationSummary) -> ConversationSummary:
        await self.db.execute(
            """
            INSERT INTO conversation_summaries (
                id, session_id, start_time, end_time, message_count, total_tokens,
                summary, key_points, created_at, model_used, cost_tokens
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                summary.id,
                summary.session_id,
                summary.start_time,
                summary.end_time,
                summary.message_count,
                summary.total_tokens,
                summary.summary,
                Jsonb(summary.key_points),
                summary.created_at,
                summary.model_used,
                summary.cost_tokens,
            ),
        )
        return summary

    async def find_by_id(self, summary_id: str) -> Optional[ConversationSummary]:
        row = await self.db.fetchone(
            "SELECT * FROM conversation_summaries WHERE id = %s", (summary_id,)
        )
        return _row_to_summary(row) if row else None

    async def find_by_session(self, session_id: str) -> list[ConversationSummary]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM conversation_summaries
            WHERE session_id = %s
            ORDER BY start_time ASC
            """,
            (session_id,),
        )
        return [_row_to_summary(r) for r in rows]

    async def count(self, session_id: Optional[str] = None) -> int:
        if session_id:
            row = await self.db.fetchone(
                "SELECT COUNT(*) AS count FROM conversation_summaries WHERE session_id = %s",
                (session_id,),
            )
        else:
            row = await self.db.fetchone(
                "SELECT COUNT(*) AS count FROM conversation_summaries"
            )
        return row["count"] if row else 0

    async def total_cost_tokens(self, session_id: str) -> int:
        row = await self.db.fetchone(
            """
            SELECT COALESCE(SUM(cost_tokens), 0) AS total
            FROM conversation_summaries WHERE session_id = %s
            """,
            (session_id,),
        )
        return row["total"] if row else 0


class PostgresLongTermMemoryRepository(LongTermMemoryRepository):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def setup(self) -> None:
        await self.db.setup()

    async def create(self, memory: LongTermMemory) -> LongTermMemory:
        await self.db.execute(
            """
            INSERT INTO long_term_memories (
                id, type, key, value, workspace_path, session_id, hit_count,
                last_hit_at, confidence, created_at, updated_at, is_deleted
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                memory.id,
                memory.type.value,
                memory.key,
                Jsonb(value_to_dict(memory.value)),
                memory.workspace_path,
                memory.session_id,
                memory.hit_count,
                memory.last_hit_at,
                memory.confidence,
                memory.created_at,
                memory.updated_at,
                memory.is_deleted,
            ),
        )
        return memory

    async def find_by_id(self, memory_id: str) -> Optional[LongTermMemory]:
        row = await self.db.fetchone(
            "SELECT * FROM long_term_memories WHERE id = %s", (memory_id,)
        )
        return _row_to_memory(row) if row else None

    async def find_by_key(self, key: str) -> Optional[LongTermMemory]:
        row = await self.db.fetchone(
            "SELECT * FROM long_term_memories WHERE key = %s AND NOT is_deleted LIMIT 1",
            (key,),
        )
        return _row_to_memory(row) if row else None

    async def _select(
        self,
        where: list[str],
        params: list,
        order: str = "hit_count DESC, created_at DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LongTermMemory]:
        clause = " AND ".join(["NOT is_deleted", *where])
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM long_term_memories
            WHERE {clause}
            ORDER BY {order}
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        return [_row_to_memory(r) for r in rows]

    async def find_by_type(
        self,
        knowledge_type: KnowledgeType,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LongTermMemory]:
        where, params = ["type = %s"], [KnowledgeType(knowledge_type).value]
        if workspace_path:
            where.append("workspace_path = %s")
            params.append(workspace_path)
        return await self._select(where, params, limit=limit)

    async def find_by_session(self, session_id: str) -> list[LongTermMemory]:
        return await self._select(
            ["session_id = %s"], [session_id], order="created_at DESC"
        )

    async def find_by_workspace(self, workspace_path: str) -> list[LongTermMemory]:
        return await self._select(["workspace_path = %s"], [workspace_path])

    async def search(
        self,
        terms: list[str],
        workspace_path: Optional[str] = None,
        limit: Optional[int] = 20,
    ) -> list[LongTermMemory]:
        patterns = [_like_pattern(t) for t in terms if t]
        if not patterns:
            return []
        where = ["(key ILIKE ANY(%s) OR value::text ILIKE ANY(%s))"]
        params: list = [patterns, patterns]
        if workspace_path:
            where.append("workspace_path = %s")
            params.append(workspace_path)
        return await self._select(where, params, limit=limit)

    async def increment_hit(self, memory_id: str) -> None:
        await self.db.execute(
            """
            UPDATE long_term_memories
            SET hit_count = hit_count + 1, last_hit_at = now(), updated_at = now()
            WHERE id = %s
            """,
            (memory_id,),
        )

    async def update(self, memory: LongTermMemory) -> None:
        cur = await self.db.execute(
            """
            UPDATE long_term_memories
            SET type = %s, key = %s, value = %s, workspace_path = %s,
                session_id = %s, confidence = %s, is_deleted = %s, updated_at = now()
            WHERE id = %s
            """,
            (
                memory.type.value,
                memory.key,
                Jsonb(value_to_dict(memory.value)),
                memory.workspace_path,
                memory.session_id,
                memory.confidence,
                memory.is_deleted,
                memory.id,
            ),
        )
        if cur.rowcount == 0:
            raise PersistenceError(f"memory {memory.id} not found")

    async def soft_delete(self, memory_id: str) -> None:
        await self.db.execute(
            "UPDATE long_term_memories SET is_deleted = true, updated_at = now() WHERE id = %s",
            (memory_id,),
        )

    async def delete(self, memory_id: str) -> None:
        await self.db.execute("DELETE FROM long_term_memories WHERE id = %s", (memory_id,))

    async def top(
        self, limit: int = 10, workspace_path: Optional[str] = None
    ) -> list[LongTermMemory]:
        if workspace_path:
            return await self._select(["workspace_path = %s"], [workspace_path], limit=limit)
        return await self._select([], [], limit=limit)

    def _filters(self, knowledge_type, workspace_path) -> tuple[list[str], list]:
        where, params = [], []
        if knowledge_type is not None:
            where.append("type = %s")
            params.append(KnowledgeType(knowledge_type).value)
        if workspace_path:
            where.append("workspace_path = %s")
            params.append(workspace_path)
        return where, params

    async def get_all(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LongTermMemory]:
        where, params = self._filters(knowledge_type, workspace_path)
        return await self._select(
            where, params, order="created_at DESC", limit=limit, offset=offset
        )

    async def count(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
    ) -> int:
        where, params = self._filters(knowledge_type, workspace_path)
        clause = " AND ".join(["NOT is_deleted", *where])
        row = await self.db.fetchone(
            f"SELECT COUNT(*) AS count FROM long_term_memories WHERE {clause}",
            tuple(params),
        )
        return row["count"] if row else 0


def create_postgres_repositories(db: PostgresDatabase) -> Repositories:
    return Repositories(
        sessions=PostgresSessionRepository(db),
        messages=PostgresMessageRepository(db),
        summaries=PostgresSummaryRepository(db),
        memories=PostgresLongTermMemoryRepository(db),
    )
