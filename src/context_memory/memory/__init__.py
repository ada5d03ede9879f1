"""
Conversation memory: sessions, messages, compression and long-term memory.

Short-term history lives in the message store; once a session grows past
its thresholds a compression run folds a slice of it into a stored
summary. Durable facts mined from sessions become long-term memories,
deduplicated by key and retrieved by keyword relevance.
"""

from .compression import (
    CompressionScheduler,
    CompressionStrategy,
    CompressorService,
    ImportanceCompressionStrategy,
    SizeCompressionStrategy,
    TimeCompressionStrategy,
)
from .conversation import ConversationMemory
from .knowledge import KnowledgeExtractor
from .long_term import ExtractionResult, LongTermMemoryService, MemoryStats, SaveBatchResult
from .models import (
    CompressionResult,
    ConversationSummary,
    ExtractedKnowledge,
    KnowledgeType,
    LongTermMemory,
    Message,
    MessageRole,
    Session,
    ToolCall,
)
from .postgres import PostgresDatabase, create_postgres_repositories
from .repositories import InMemoryDatabase, Repositories, create_in_memory_repositories
from .retrieval import MemoryRetrieval, MemorySummary
from .scorer import MessageScorer, ScoreResult
from .summarizer import MessageSummarizer

__all__ = [
    "CompressionResult",
    "CompressionScheduler",
    "CompressionStrategy",
    "CompressorService",
    "ConversationMemory",
    "ConversationSummary",
    "ExtractedKnowledge",
    "ExtractionResult",
    "ImportanceCompressionStrategy",
    "InMemoryDatabase",
    "KnowledgeExtractor",
    "KnowledgeType",
    "LongTermMemory",
    "LongTermMemoryService",
    "MemoryRetrieval",
    "MemoryStats",
    "MemorySummary",
    "Message",
    "MessageRole",
    "MessageScorer",
    "MessageSummarizer",
    "PostgresDatabase",
    "Repositories",
    "SaveBatchResult",
    "ScoreResult",
    "Session",
    "SizeCompressionStrategy",
    "TimeCompressionStrategy",
    "ToolCall",
    "create_in_memory_repositories",
    "create_postgres_repositories",
]
