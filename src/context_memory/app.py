"""
Application context.

``create_app`` builds one instance of every component and wires them
together explicitly; nothing is shared through module-level state.

Usage:
    app = create_app(MemoryConfig.from_env())
    await app.start()
    try:
        result = await app.context.query(request)
        ...
    finally:
        await app.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import MemoryConfig
from .context import ContextManager
from .llm import ChatModelCaller
from .memory.compression import CompressorService
from .memory.conversation import ConversationMemory
from .memory.long_term import LongTermMemoryService
from .memory.postgres import PostgresDatabase, create_postgres_repositories
from .memory.repositories import Repositories, create_in_memory_repositories
from .memory.retrieval import MemoryRetrieval
from .memory.scorer import MessageScorer
from .memory.summarizer import MessageSummarizer, SummaryCaller

logger = logging.getLogger(__name__)


@dataclass
class MemoryApp:
    config: MemoryConfig
    repositories: Repositories
    context: ContextManager
    scorer: MessageScorer
    summarizer: MessageSummarizer
    compressor: CompressorService
    conversations: ConversationMemory
    long_term: LongTermMemoryService
    retrieval: MemoryRetrieval
    database: Optional[PostgresDatabase] = None

    async def start(self):
        """Bootstrap the database, initialize long-term memory, start the sweep."""
        if self.database is not None:
            await self.database.setup()
        await self.long_term.init()
        self.context.start()
        logger.info(
            "Memory app started (%s backend)",
            "postgres" if self.database is not None else "in-memory",
        )

    async def close(self):
        await self.compressor.dispose()
        await self.context.dispose()
        if self.database is not None:
            await self.database.close()
        logger.info("Memory app closed")


def create_app(
    config: Optional[MemoryConfig] = None,
    caller: Optional[SummaryCaller] = None,
    database: Optional[PostgresDatabase] = None,
) -> MemoryApp:
    """
    Build the application context.

    Args:
        config: engine configuration; defaults to ``MemoryConfig()``
        caller: remote summarizer; defaults to a LangChain ``ChatModelCaller``
        database: PostgreSQL database to use instead of ``config.database_url``
    """
    config = config or MemoryConfig()
    if database is None and config.database_url:
        database = PostgresDatabase(config.database_url)

    if database is not None:
        repositories = create_postgres_repositories(database)
    else:
        repositories = create_in_memory_repositories()

    caller = caller or ChatModelCaller(config.engine_models)
    scorer = MessageScorer(config.scorer)
    summarizer = MessageSummarizer(config.compression, repositories.summaries, caller)
    compressor = CompressorService(config.compression, repositories, summarizer, scorer)
    long_term = LongTermMemoryService(repositories.memories)

    return MemoryApp(
        config=config,
        repositories=repositories,
        context=ContextManager(config.context),
        scorer=scorer,
        summarizer=summarizer,
        compressor=compressor,
        conversations=ConversationMemory(repositories, compressor),
        long_term=long_term,
        retrieval=MemoryRetrieval(long_term),
        database=database,
    )
