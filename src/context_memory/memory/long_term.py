"""
Long-term memory service.

Stores extracted knowledge deduplicated by key: saving a key that already
exists records one more hit on the stored memory instead of inserting a
second row. Every operation requires ``init()`` first.
"""

import dataclasses
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from ..errors import NotInitializedError, PersistenceError
from .knowledge import KnowledgeExtractor
from .models import ExtractedKnowledge, KnowledgeType, LongTermMemory, Message, Session
from .repositories import LongTermMemoryRepository
from .scoring_rules import extract_words

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    project_knowledge: list[ExtractedKnowledge] = field(default_factory=list)
    user_preferences: list[ExtractedKnowledge] = field(default_factory=list)
    faq: list[ExtractedKnowledge] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.project_knowledge) + len(self.user_preferences) + len(self.faq)

    def all(self) -> list[ExtractedKnowledge]:
        return self.project_knowledge + self.user_preferences + self.faq


@dataclass
class SaveBatchResult:
    created: int = 0
    updated: int = 0
    failed: int = 0


@dataclass
class MemoryStats:
    total: int
    by_type: dict[KnowledgeType, int]
    top_memories: list[LongTermMemory]


def search_terms(query: str) -> list[str]:
    """The whole query plus each of its words."""
    terms: dict[str, None] = {}
    query = query.strip()
    if query:
        terms[query] = None
    for word in query.split():
        terms[word] = None
    for word in extract_words(query):
        terms[word] = None
    return list(terms)


class LongTermMemoryService:
    """Extracts, stores and looks up durable knowledge."""

    def __init__(
        self,
        repository: LongTermMemoryRepository,
        extractor: Optional[KnowledgeExtractor] = None,
    ):
        self.repository = repository
        self.extractor = extractor or KnowledgeExtractor()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self):
        if self._initialized:
            return
        await self.repository.setup()
        self._initialized = True
        logger.info("Long-term memory service initialized")

    def _ensure_initialized(self):
        if not self._initialized:
            raise NotInitializedError("LongTermMemoryService used before init()")

    # ── Extraction ──

    def extract_from_sessions(
        self, sessions: list[Session], messages: list[Message]
    ) -> ExtractionResult:
        """Mine every session; preferences are aggregated across all of them."""
        self._ensure_initialized()
        by_session: dict[str, list[Message]] = defaultdict(list)
        for message in messages:
            by_session[message.session_id].append(message)

        result = ExtractionResult()
        for session in sessions:
            session_messages = by_session.get(session.id, [])
            result.project_knowledge.extend(
                self.extractor.extract_project_knowledge(session, session_messages)
            )
            result.faq.extend(self.extractor.extract_faq(session, session_messages))
        result.user_preferences = self.extractor.extract_user_preferences(sessions)

        logger.info(
            "Extracted %d knowledge items from %d sessions "
            "(project=%d, preferences=%d, faq=%d)",
            result.total, len(sessions), len(result.project_knowledge),
            len(result.user_preferences), len(result.faq),
        )
        return result

    # ── Persistence ──

    async def save_knowledge(self, knowledge: ExtractedKnowledge) -> LongTermMemory:
        self._ensure_initialized()
        existing = await self.repository.find_by_key(knowledge.key)
        if existing:
            await self.repository.increment_hit(existing.id)
            logger.debug("Knowledge %s already stored, recorded a hit", knowledge.key)
            return await self.repository.find_by_id(existing.id) or existing

        memory = await self.repository.create(knowledge.to_memory())
        logger.debug("Stored knowledge %s (%s)", memory.key, memory.type.value)
        return memory

    async def save_batch(self, knowledge: list[ExtractedKnowledge]) -> SaveBatchResult:
        self._ensure_initialized()
        result = SaveBatchResult()
        for item in knowledge:
            try:
                existing = await self.repository.find_by_key(item.key)
                if existing:
                    await self.repository.increment_hit(existing.id)
                    result.updated += 1
                else:
                    await self.repository.create(item.to_memory())
                    result.created += 1
            except PersistenceError as e:
                logger.warning("Failed to save knowledge %s: %s", item.key, e)
                result.failed += 1
        logger.info(
            "Saved knowledge batch: %d created, %d updated, %d failed",
            result.created, result.updated, result.failed,
        )
        return result

    # ── Queries ──

    async def find_relevant_memories(
        self, query: str, workspace_path: Optional[str] = None, limit: Optional[int] = 10
    ) -> list[LongTermMemory]:
        self._ensure_initialized()
        terms = search_terms(query)
        if not terms:
            return []
        return await self.repository.search(terms, workspace_path, limit)

    async def get_by_type(
        self,
        knowledge_type: KnowledgeType,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.find_by_type(knowledge_type, workspace_path, limit)

    async def get_all(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.get_all(knowledge_type, workspace_path, limit, offset)

    async def record_memory_hit(self, memory_id: str):
        self._ensure_initialized()
        await self.repository.increment_hit(memory_id)

    async def get_top_memories(
        self, limit: int = 10, workspace_path: Optional[str] = None
    ) -> list[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.top(limit, workspace_path)

    async def get_by_key(self, key: str) -> Optional[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.find_by_key(key)

    async def get_by_session(self, session_id: str) -> list[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.find_by_session(session_id)

    async def get_by_workspace(self, workspace_path: str) -> list[LongTermMemory]:
        self._ensure_initialized()
        return await self.repository.find_by_workspace(workspace_path)

    async def update_memory(self, memory_id: str, **changes) -> LongTermMemory:
        """Apply field changes (``value``, ``confidence``, ...) to a stored memory."""
        self._ensure_initialized()
        memory = await self.repository.find_by_id(memory_id)
        if memory is None:
            raise PersistenceError(f"memory {memory_id} not found")
        updated = dataclasses.replace(memory, **changes)
        await self.repository.update(updated)
        return updated

    async def delete_memory(self, memory_id: str):
        self._ensure_initialized()
        await self.repository.soft_delete(memory_id)

    async def permanently_delete_memory(self, memory_id: str):
        self._ensure_initialized()
        await self.repository.delete(memory_id)

    async def count(
        self,
        knowledge_type: Optional[KnowledgeType] = None,
        workspace_path: Optional[str] = None,
    ) -> int:
        self._ensure_initialized()
        return await self.repository.count(knowledge_type, workspace_path)

    async def get_stats(self, workspace_path: Optional[str] = None) -> MemoryStats:
        self._ensure_initialized()
        by_type = {
            t: await self.repository.count(t, workspace_path) for t in KnowledgeType
        }
        return MemoryStats(
            total=await self.repository.count(None, workspace_path),
            by_type=by_type,
            top_memories=await self.repository.top(5, workspace_path),
        )
