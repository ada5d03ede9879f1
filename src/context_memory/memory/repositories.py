"""
Repository interfaces and the in-memory backend.

Session counters are running totals. Both backends apply the same
arithmetic at the same events:

- message inserted (not deleted): message_count += 1, total_tokens += tokens
- message archived (was active, not deleted): archived_count += 1,
  archived_tokens += tokens
- message soft-deleted (was not deleted): message_count -= 1,
  total_tokens -= tokens

Counters are never recomputed by a full scan except through
``SessionRepository.reconcile_counters``.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..errors import PersistenceError
from ..utils import utc_now
from .models import (
    BatchResult,
    ConversationSummary,
    KnowledgeType,
    LongTermMemory,
    Message,
    Session,
    SessionStats,
)

logger = logging.getLogger(__name__)

MESSAGE_ORDER_FIELDS = ("timestamp", "importance_score")


# ── Interfaces ──


class SessionRepository(ABC):
    @abstractmethod
    async def create(self, session: Session) -> Session: ...

    @abstractmethod
    async def update(self, session: Session) -> None:
        """Persist title / workspace / engine / flags / metadata (not counters)."""

    @abstractmethod
    async def find_by_id(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def find_all(self, limit: int = 100, offset: int = 0) -> list[Session]: ...

    @abstractmethod
    async def find_by_workspace(
        self, workspace_path: str, limit: int = 100, offset: int = 0
    ) -> list[Session]: ...

    @abstractmethod
    async def find_by_engine(
        self, engine_id: str, limit: int = 100, offset: int = 0
    ) -> list[Session]: ...

    @abstractmethod
    async def soft_delete(self, session_id: str) -> None: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def get_stats(self, session_id: str) -> Optional[SessionStats]: ...

    @abstractmethod
    async def reconcile_counters(self, session_id: str) -> Optional[Session]:
        """Recompute the running totals from the session's messages."""


class MessageRepository(ABC):
    @abstractmethod
    async def create(self, message: Message) -> Message: ...

    async def create_batch(self, messages: list[Message]) -> BatchResult:
        result = BatchResult()
        for i, message in enumerate(messages):
            try:
                await self.create(message)
                result.success += 1
            except PersistenceError as e:
                logger.warning("Failed to insert message %s: %s", message.id, e)
                result.failed += 1
                result.errors.append((i, str(e)))
        return result

    @abstractmethod
    async def find_by_id(self, message_id: str) -> Optional[Message]: ...

    @abstractmethod
    async def find_by_session(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        include_archived: bool = False,
        include_deleted: bool = False,
        order_by: str = "timestamp",
        descending: bool = False,
    ) -> list[Message]: ...

    @abstractmethod
    async def archive_batch(self, message_ids: list[str]) -> BatchResult: ...

    @abstractmethod
    async def update_importance_batch(self, scores: dict[str, int]) -> BatchResult: ...

    @abstractmethod
    async def soft_delete(self, message_id: str) -> None: ...

    @abstractmethod
    async def count(self, session_id: Optional[str] = None) -> int: ...


class SummaryRepository(ABC):
    @abstractmethod
    async def create(self, summary: ConversationSummary) -> ConversationSummary: ...

    @abstractmethod
    async def find_by_id(self, summary_id: str) -> Optional[ConversationSummary]: ...

    @abstractmethod
    async def find_by_session(self, session_id: str) -> list[ConversationSummary]: ...

    @abstractmethod
    async def count(self, session_id: Optional[str] = None) -> int: ...

    @abstractmethod
    async def total_cost_tokens(self, session_id: str) -> int: ...


class LongTermMemoryRepository(ABC):
    async def setup(self) -> None:
        """Prepare the backing store; idempotent."""

    @abstractmethod
    async def create(self, memory: LongTermMemory) -> LongTermMemory: ...

    @abstractmethod
    async def find_by_id(self, memory_id: str) -> Optional[LongTermMemory]: ...

    @abstractmethod
    async def find_by_key(self, key: str) -> Optional[LongTermMemory]: ...

    @abstractmethod
    async def find_by_type(
        self,
        knowledge_type: KnowledgeType,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LongTermMemory]: ...

    @abstractmethod
    async def find_by_session(self, session_id: str) -> list[LongTermMemory]: ...

    @abstractmethod
    async def find_by_workspace(self, workspace_path: str) -> list[LongTermMemory]: ...

    @abstractmethod
    async def search(
        self,
        terms: list[str],
        workspace_path: Optional[str] = None,
        limit: Optional[int] = 20,
    ) -> list[LongTermMemory]:
        """Memories whose key or value contains any of ``terms`` (case-insensitive)."""

    @abstractmethod
    async def increment_hit(self, memory_id: str) -> None:
        """Atomically add one hit and stamp ``last_hit_at``."""

    @abstractmethod
    async def update(self, memory: LongTermMemory) -> None: ...

    @abstractmethod
    async def soft_delete(self, memory_id: str) -> None: ...

    @abstractmethod
    async def delete(self, memory_id: str) -> None: ...

    @abstractmethod
    async def top(
        self, limit: int = 10, workspace_path: Optional[str] = None
    ) -> list[LongTermMemory]: ...

    @abstractmethod
    async def get_all(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LongTermMemory]: ...

    @abstractmethod
    async def count(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
    ) -> int: ...


# ── In-memory backend ──


@dataclass
class InMemoryDatabase:
    """Shared tables for the in-memory repositories."""

    sessions: dict[str, Session] = field(default_factory=dict)
    messages: dict[str, Message] = field(default_factory=dict)
    summaries: dict[str, ConversationSummary] = field(default_factory=dict)
    memories: dict[str, LongTermMemory] = field(default_factory=dict)

    def adjust_session(self, session_id: str, **deltas: int):
        session = self.sessions.get(session_id)
        if session is None:
            return
        for name, delta in deltas.items():
            setattr(session, name, getattr(session, name) + delta)
        session.updated_at = utc_now()


def _page(items: list, limit: Optional[int], offset: int) -> list:
    end = None if limit is None else offset + limit
    return [copy.copy(i) for i in items[offset:end]]


class InMemorySessionRepository(SessionRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create(self, session: Session) -> Session:
        if session.id in self.db.sessions:
            raise PersistenceError(f"session {session.id} already exists")
        self.db.sessions[session.id] = copy.copy(session)
        return session

    async def update(self, session: Session) -> None:
        stored = self.db.sessions.get(session.id)
        if stored is None:
            raise PersistenceError(f"session {session.id} not found")
        stored.title = session.title
        stored.workspace_path = session.workspace_path
        stored.engine_id = session.engine_id
        stored.is_pinned = session.is_pinned
        stored.metadata = dict(session.metadata)
        stored.updated_at = utc_now()

    async def find_by_id(self, session_id: str) -> Optional[Session]:
        session = self.db.sessions.get(session_id)
        return copy.copy(session) if session else None

    def _active(self, predicate=None) -> list[Session]:
        sessions = [
            s
            for s in self.db.sessions.values()
            if not s.is_deleted and (predicate is None or predicate(s))
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def find_all(self, limit: int = 100, offset: int = 0) -> list[Session]:
        return _page(self._active(), limit, offset)

    async def find_by_workspace(
        self, workspace_path: str, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        return _page(
            self._active(lambda s: s.workspace_path == workspace_path), limit, offset
        )

    async def find_by_engine(
        self, engine_id: str, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        return _page(self._active(lambda s: s.engine_id == engine_id), limit, offset)

    async def soft_delete(self, session_id: str) -> None:
        session = self.db.sessions.get(session_id)
        if session:
            session.is_deleted = True
            session.updated_at = utc_now()

    async def count(self) -> int:
        return len(self._active())

    async def get_stats(self, session_id: str) -> Optional[SessionStats]:
        session = self.db.sessions.get(session_id)
        if session is None or session.is_deleted:
            return None
        live = [
            m
            for m in self.db.messages.values()
            if m.session_id == session_id and not m.is_deleted
        ]
        return SessionStats(
            session_id=session_id,
            message_count=session.message_count,
            total_tokens=session.total_tokens,
            archived_count=session.archived_count,
            archived_tokens=session.archived_tokens,
            active_message_count=sum(1 for m in live if not m.is_archived),
            last_message_at=max((m.timestamp for m in live), default=None),
        )

    async def reconcile_counters(self, session_id: str) -> Optional[Session]:
        session = self.db.sessions.get(session_id)
        if session is None:
            return None
        live = [
            m
            for m in self.db.messages.values()
            if m.session_id == session_id and not m.is_deleted
        ]
        archived = [m for m in live if m.is_archived]
        session.message_count = len(live)
        session.total_tokens = sum(m.tokens for m in live)
        session.archived_count = len(archived)
        session.archived_tokens = sum(m.tokens for m in archived)
        session.updated_at = utc_now()
        return copy.copy(session)


class InMemoryMessageRepository(MessageRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create(self, message: Message) -> Message:
        if message.id in self.db.messages:
            raise PersistenceError(f"message {message.id} already exists")
        if message.session_id not in self.db.sessions:
            raise PersistenceError(f"session {message.session_id} not found")
        self.db.messages[message.id] = copy.copy(message)
        if not message.is_deleted:
            self.db.adjust_session(
                message.session_id, message_count=1, total_tokens=message.tokens
            )
        return message

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        message = self.db.messages.get(message_id)
        return copy.copy(message) if message else None

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
        messages = [
            m
            for m in self.db.messages.values()
            if m.session_id == session_id
            and (include_archived or not m.is_archived)
            and (include_deleted or not m.is_deleted)
        ]
        messages.sort(
            key=lambda m: (getattr(m, order_by) or 0, m.timestamp), reverse=descending
        )
        return _page(messages, limit, offset)

    async def archive_batch(self, message_ids: list[str]) -> BatchResult:
        result = BatchResult()
        now = utc_now()
        for i, message_id in enumerate(message_ids):
            message = self.db.messages.get(message_id)
            if message is None:
                result.failed += 1
                result.errors.append((i, f"message {message_id} not found"))
                continue
            if not message.is_archived:
                message.is_archived = True
                message.archived_at = now
                if not message.is_deleted:
                    self.db.adjust_session(
                        message.session_id,
                        archived_count=1,
                        archived_tokens=message.tokens,
                    )
            result.success += 1
        return result

    async def update_importance_batch(self, scores: dict[str, int]) -> BatchResult:
        result = BatchResult()
        for i, (message_id, score) in enumerate(scores.items()):
            message = self.db.messages.get(message_id)
            if message is None:
                result.failed += 1
                result.errors.append((i, f"message {message_id} not found"))
                continue
            message.importance_score = score
            result.success += 1
        return result

    async def soft_delete(self, message_id: str) -> None:
        message = self.db.messages.get(message_id)
        if message is None or message.is_deleted:
            return
        message.is_deleted = True
        self.db.adjust_session(
            message.session_id, message_count=-1, total_tokens=-message.tokens
        )

    async def count(self, session_id: Optional[str] = None) -> int:
        return sum(
            1
            for m in self.db.messages.values()
            if not m.is_deleted and (session_id is None or m.session_id == session_id)
        )


class InMemorySummaryRepository(SummaryRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create(self, summary: ConversationSummary) -> ConversationSummary:
        self.db.summaries[summary.id] = copy.copy(summary)
        return summary

    async def find_by_id(self, summary_id: str) -> Optional[ConversationSummary]:
        summary = self.db.summaries.get(summary_id)
        return copy.copy(summary) if summary else None

    async def find_by_session(self, session_id: str) -> list[ConversationSummary]:
        summaries = [s for s in self.db.summaries.values() if s.session_id == session_id]
        return _page(sorted(summaries, key=lambda s: s.start_time), None, 0)

    async def count(self, session_id: Optional[str] = None) -> int:
        return sum(
            1
            for s in self.db.summaries.values()
            if session_id is None or s.session_id == session_id
        )

    async def total_cost_tokens(self, session_id: str) -> int:
        return sum(
            s.cost_tokens for s in self.db.summaries.values() if s.session_id == session_id
        )


def _by_hits(memories: list[LongTermMemory]) -> list[LongTermMemory]:
    return sorted(memories, key=lambda m: (m.hit_count, m.created_at), reverse=True)


class InMemoryLongTermMemoryRepository(LongTermMemoryRepository):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    def _live(self, predicate=None) -> list[LongTermMemory]:
        return [
            m
            for m in self.db.memories.values()
            if not m.is_deleted and (predicate is None or predicate(m))
        ]

    async def create(self, memory: LongTermMemory) -> LongTermMemory:
        if memory.id in self.db.memories:
            raise PersistenceError(f"memory {memory.id} already exists")
        self.db.memories[memory.id] = copy.copy(memory)
        return memory

    async def find_by_id(self, memory_id: str) -> Optional[LongTermMemory]:
        memory = self.db.memories.get(memory_id)
        return copy.copy(memory) if memory else None

    async def find_by_key(self, key: str) -> Optional[LongTermMemory]:
        for memory in self._live(lambda m: m.key == key):
            return copy.copy(memory)
        return None

    async def find_by_type(
        self,
        knowledge_type: KnowledgeType,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LongTermMemory]:
        memories = self._live(
            lambda m: m.type == knowledge_type
            and (not workspace_path or m.workspace_path == workspace_path)
        )
        return _page(_by_hits(memories), limit, 0)

    async def find_by_session(self, session_id: str) -> list[LongTermMemory]:
        memories = self._live(lambda m: m.session_id == session_id)
        return _page(
            sorted(memories, key=lambda m: m.created_at, reverse=True), None, 0
        )

    async def find_by_workspace(self, workspace_path: str) -> list[LongTermMemory]:
        memories = self._live(lambda m: m.workspace_path == workspace_path)
        return _page(_by_hits(memories), None, 0)

    async def search(
        self,
        terms: list[str],
        workspace_path: Optional[str] = None,
        limit: Optional[int] = 20,
    ) -> list[LongTermMemory]:
        lowered = [t.lower() for t in terms if t]
        if not lowered:
            return []

        def matches(m: LongTermMemory) -> bool:
            if workspace_path and m.workspace_path != workspace_path:
                return False
            haystacks = (m.key.lower(), m.value_text().lower())
            return any(t in h for t in lowered for h in haystacks)

        return _page(_by_hits(self._live(matches)), limit, 0)

    async def increment_hit(self, memory_id: str) -> None:
        memory = self.db.memories.get(memory_id)
        if memory is None:
            return
        now = utc_now()
        memory.hit_count += 1
        memory.last_hit_at = now
        memory.updated_at = now

    async def update(self, memory: LongTermMemory) -> None:
        if memory.id not in self.db.memories:
            raise PersistenceError(f"memory {memory.id} not found")
        stored = copy.copy(memory)
        stored.updated_at = utc_now()
        self.db.memories[memory.id] = stored

    async def soft_delete(self, memory_id: str) -> None:
        memory = self.db.memories.get(memory_id)
        if memory:
            memory.is_deleted = True
            memory.updated_at = utc_now()

    async def delete(self, memory_id: str) -> None:
        self.db.memories.pop(memory_id, None)

    async def top(
        self, limit: int = 10, workspace_path: Optional[str] = None
    ) -> list[LongTermMemory]:
        memories = self._live(
            lambda m: not workspace_path or m.workspace_path == workspace_path
        )
        return _page(_by_hits(memories), limit, 0)

    async def get_all(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LongTermMemory]:
        memories = self._live(
            lambda m: (knowledge_type is None or m.type == knowledge_type)
            and (not workspace_path or m.workspace_path == workspace_path)
        )
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return _page(memories, limit, offset)

    async def count(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
    ) -> int:
        return len(
            self._live(
                lambda m: (knowledge_type is None or m.type == knowledge_type)
                and (not workspace_path or m.workspace_path == workspace_path)
            )
        )


@dataclass
class Repositories:
    """One repository per table, sharing a backend."""

    sessions: SessionRepository
    messages: MessageRepository
    summaries: SummaryRepository
    memories: LongTermMemoryRepository


def create_in_memory_repositories(db: Optional[InMemoryDatabase] = None) -> Repositories:
    db = db or InMemoryDatabase()
    return Repositories(
        sessions=InMemorySessionRepository(db),
        messages=InMemoryMessageRepository(db),
        summaries=InMemorySummaryRepository(db),
        memories=InMemoryLongTermMemoryRepository(db),
    )
