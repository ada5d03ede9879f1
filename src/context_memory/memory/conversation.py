"""
Session persistence hooks used by the chat layer.

Saving stores the session and any messages not stored yet, then scores
the session and (optionally) schedules a compression. Loading returns the
session with its active messages, compressing first when configured.
"""

import dataclasses
import logging
from typing import Optional

from ..config import CompressionConfig
from ..token_budget import estimate_tokens
from .compression import CompressorService
from .models import BatchResult, Message, MessageRole, Session
from .repositories import Repositories

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
DEFAULT_TITLE = "New conversation"


def default_title(messages: list[Message]) -> str:
    for message in messages:
        if message.role == MessageRole.USER and message.content.strip():
            text = message.content.strip()
            return text[:TITLE_MAX_CHARS] + ("..." if len(text) > TITLE_MAX_CHARS else "")
    return DEFAULT_TITLE


def _with_tokens(message: Message) -> Message:
    # Content only; tool calls are costed at estimation time
    if message.tokens:
        return message
    return dataclasses.replace(message, tokens=estimate_tokens(message.content))


class ConversationMemory:
    def __init__(self, repositories: Repositories, compressor: CompressorService):
        self.repositories = repositories
        self.compressor = compressor

    @property
    def config(self) -> CompressionConfig:
        return self.compressor.config

    async def save_session(self, session: Session, messages: list[Message]) -> BatchResult:
        """Upsert ``session`` and insert the messages it does not hold yet."""
        sessions = self.repositories.sessions
        if not session.title:
            session = dataclasses.replace(session, title=default_title(messages))
        if await sessions.find_by_id(session.id):
            await sessions.update(session)
        else:
            await sessions.create(session)

        new_messages = []
        for message in messages:
            if message.session_id != session.id:
                message = dataclasses.replace(message, session_id=session.id)
            if await self.repositories.messages.find_by_id(message.id) is None:
                new_messages.append(_with_tokens(message))

        result = await self.repositories.messages.create_batch(new_messages)
        logger.info(
            "Saved session %s: %d new messages (%d failed)",
            session.id, result.success, result.failed,
        )
        if self.config.compress_on_save:
            await self._maybe_compress(session.id)
        return result

    async def load_session(self, session_id: str) -> Optional[tuple[Session, list[Message]]]:
        session = await self.repositories.sessions.find_by_id(session_id)
        if session is None or session.is_deleted:
            return None

        messages = await self.repositories.messages.find_by_session(session_id)
        if self.config.compress_on_load and self.compressor.scheduler.should_compress(messages):
            result, messages = await self.compressor.compress(session_id)
            if result.success and result.archived_count:
                session = await self.repositories.sessions.find_by_id(session_id) or session
        return session, messages

    async def append_message(self, message: Message) -> Message:
        stored = await self.repositories.messages.create(_with_tokens(message))
        if self.config.compress_on_save:
            await self._maybe_compress(message.session_id)
        return stored

    async def delete_message(self, message_id: str):
        await self.repositories.messages.soft_delete(message_id)

    async def list_sessions(
        self, workspace_path: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        if workspace_path:
            return await self.repositories.sessions.find_by_workspace(workspace_path, limit, offset)
        return await self.repositories.sessions.find_all(limit, offset)

    async def delete_session(self, session_id: str):
        await self.repositories.sessions.soft_delete(session_id)

    async def _maybe_compress(self, session_id: str):
        await self.compressor.score_session(session_id)
        if self.config.compress_in_background:
            self.compressor.compress_in_background(session_id)
        elif await self.compressor.should_compress(session_id):
            await self.compressor.compress(session_id)
