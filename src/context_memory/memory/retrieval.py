"""
Keyword retrieval over long-term memories.

Candidates come from a case-insensitive substring search over key and
value; they are then re-ranked by a composite relevance score favouring
key matches, popular, confident and recent memories.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..constants import (
    DEFAULT_SEARCH_LIMIT,
    RELEVANCE_CONFIDENCE_WEIGHT,
    RELEVANCE_HIT_CAP,
    RELEVANCE_HIT_WEIGHT,
    RELEVANCE_KEY_MATCH,
    RELEVANCE_KEY_WORD_MATCH,
    RELEVANCE_MONTH_BONUS,
    RELEVANCE_MONTH_DAYS,
    RELEVANCE_RECENT_BONUS,
    RELEVANCE_RECENT_DAYS,
    RELEVANCE_VALUE_MATCH,
    REMIND_MIN_HITS,
    REMIND_POPULAR_HITS,
    REMIND_RECENT_DAYS,
    REMINDER_PREVIEW_CHARS,
)
from ..utils import age_days
from .knowledge import DECISION_KEYWORDS, extract_file_paths
from .long_term import LongTermMemoryService
from .models import (
    CodePatternValue,
    FaqValue,
    KeyDecisionValue,
    KnowledgeType,
    LongTermMemory,
    MemorySearchResult,
    Message,
    ProjectContextValue,
    ReminderResult,
    UserPreferenceValue,
)
from .scoring_rules import KeywordAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class MemorySummary:
    total_memories: int
    recent_memories: list[LongTermMemory]
    top_memories: list[LongTermMemory]
    by_type: dict[KnowledgeType, int]


def relevance(query: str, memory: LongTermMemory, now: Optional[datetime] = None) -> float:
    query = query.lower()
    key = memory.key.lower()
    score = 0.0
    if query in key:
        score += RELEVANCE_KEY_MATCH
    for word in query.split():
        if word in key:
            score += RELEVANCE_KEY_WORD_MATCH
    if query in memory.value_text().lower():
        score += RELEVANCE_VALUE_MATCH
    score += min(memory.hit_count * RELEVANCE_HIT_WEIGHT, RELEVANCE_HIT_CAP)
    score += memory.confidence * RELEVANCE_CONFIDENCE_WEIGHT

    days = age_days(memory.created_at, now)
    if days < RELEVANCE_RECENT_DAYS:
        score += RELEVANCE_RECENT_BONUS
    elif days < RELEVANCE_MONTH_DAYS:
        score += RELEVANCE_MONTH_BONUS
    return score


def _preview(text: str) -> str:
    if len(text) <= REMINDER_PREVIEW_CHARS:
        return text
    return text[:REMINDER_PREVIEW_CHARS] + "..."


def generate_reminder(memory: LongTermMemory) -> str:
    value = memory.value
    if isinstance(value, ProjectContextValue):
        return f"Project file: {value.path}"
    if isinstance(value, KeyDecisionValue):
        if value.decision:
            return f"Earlier decision: {value.decision}"
        return f"Decision record: {_preview(value.content)}"
    if isinstance(value, FaqValue):
        return f"Frequently asked: {value.question}"
    if isinstance(value, UserPreferenceValue):
        if value.preference == "engine" and value.ratio is not None:
            return f"Preferred engine: {value.value} (used in {round(value.ratio * 100)}% of sessions)"
        return f"User preference: {memory.key}"
    if isinstance(value, CodePatternValue):
        return f"Code pattern: {_preview(value.pattern)}"
    return f"Related memory: {memory.key}"


class MemoryRetrieval:
    def __init__(
        self,
        service: LongTermMemoryService,
        keyword_analyzer: Optional[KeywordAnalyzer] = None,
    ):
        self.service = service
        self.keywords = keyword_analyzer or KeywordAnalyzer()

    async def semantic_search(
        self,
        query: str,
        workspace_path: Optional[str] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        now: Optional[datetime] = None,
    ) -> MemorySearchResult:
        """
        Keyword search re-ranked by relevance; ties keep the store's hit order.

        Every match is ranked before ``limit`` applies, so a strong key match
        is never crowded out by popular fragment matches.
        """
        candidates = await self.service.find_relevant_memories(query, workspace_path, limit=None)
        ranked = sorted(candidates, key=lambda m: relevance(query, m, now), reverse=True)
        logger.debug("Search %r matched %d memories", query, len(ranked))
        return MemorySearchResult(memories=ranked[:limit], query=query, total_hits=len(ranked))

    def extract_keywords(self, message: Message) -> list[str]:
        content = message.content
        keywords: dict[str, None] = {}
        for word in self.keywords.analyze(content).keywords:
            keywords[word] = None
        for path in extract_file_paths(content):
            keywords[path] = None
        lowered = content.lower()
        for keyword in DECISION_KEYWORDS:
            if keyword in lowered:
                keywords[keyword] = None
        return list(keywords)

    async def get_related_memories(
        self,
        message: Message,
        workspace_path: Optional[str] = None,
        limit: int = 5,
        now: Optional[datetime] = None,
    ) -> list[LongTermMemory]:
        """Memories related to ``message``; each returned memory records a hit."""
        keywords = self.extract_keywords(message)
        if not keywords:
            return []
        result = await self.semantic_search(" ".join(keywords), workspace_path, limit, now)
        for memory in result.memories:
            await self.service.record_memory_hit(memory.id)
        return result.memories

    async def should_remind(
        self,
        message: Message,
        workspace_path: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReminderResult:
        memories = await self.get_related_memories(message, workspace_path, 3, now)
        if not memories:
            return ReminderResult(should_remind=False)

        top = memories[0]
        recently_hit = (
            top.last_hit_at is not None
            and age_days(top.last_hit_at, now) < REMIND_RECENT_DAYS
        )
        if (top.hit_count >= REMIND_MIN_HITS and recently_hit) or top.hit_count >= REMIND_POPULAR_HITS:
            logger.debug("Reminding memory %s (%d hits)", top.id, top.hit_count)
            return ReminderResult(
                should_remind=True, reminder=generate_reminder(top), memory_id=top.id
            )
        return ReminderResult(should_remind=False)

    async def get_memory_summary(
        self, workspace_path: Optional[str] = None, limit: int = 10
    ) -> MemorySummary:
        stats = await self.service.get_stats(workspace_path)
        recent = await self.service.get_all(workspace_path=workspace_path, limit=limit)
        return MemorySummary(
            total_memories=stats.total,
            recent_memories=recent,
            top_memories=stats.top_memories,
            by_type=stats.by_type,
        )
