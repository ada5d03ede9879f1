"""
History compression: strategies, scheduler and the session-level service.

A compression run picks a slice of a session's active messages, folds it
into one stored summary and archives the slice. Three strategies choose the
slice:

- ``TimeCompressionStrategy``: every message older than ``max_age_hours``
- ``SizeCompressionStrategy``: oldest messages first until the history
  shrinks to ``target_token_ratio`` of its size
- ``ImportanceCompressionStrategy``: lowest-scoring messages first toward
  the same target, never touching messages scored above 70

The scheduler decides which one runs: age first, then size, then
importance. Compression never raises; failures come back as an
unsuccessful ``CompressionResult``.
"""

import asyncio
import dataclasses
import logging
import math
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..config import CompressionConfig
from ..constants import (
    DEFAULT_IMPORTANCE_SCORE,
    PROTECTED_IMPORTANCE_SCORE,
    SUMMARY_TOKEN_MULTIPLIER,
)
from ..errors import PersistenceError
from ..token_budget import estimate_message_tokens, estimate_messages_tokens, estimate_tokens
from ..utils import age_hours
from .models import CompressionResult, Message
from .repositories import MessageRepository, Repositories
from .scorer import MessageScorer, ScoreResult
from .summarizer import MessageSummarizer

logger = logging.getLogger(__name__)


def _noop_result(total_tokens: int, strategy: str) -> CompressionResult:
    return CompressionResult(
        success=True,
        before_tokens=total_tokens,
        after_tokens=total_tokens,
        compression_ratio=1.0,
        strategy=strategy,
    )


def _accumulate(candidates: list[Message], reduction: float) -> list[Message]:
    """Take candidates in order until their tokens reach ``reduction``."""
    selected = []
    accumulated = 0
    for message in candidates:
        if accumulated >= reduction:
            break
        selected.append(message)
        accumulated += estimate_message_tokens(message)
    return selected


# ── Strategies ──


class CompressionStrategy(ABC):
    name = ""

    def __init__(
        self,
        config: CompressionConfig,
        summarizer: MessageSummarizer,
        messages: MessageRepository,
    ):
        self.config = config
        self.summarizer = summarizer
        self.messages = messages

    @abstractmethod
    def select(self, messages: list[Message], now: Optional[datetime] = None) -> list[Message]:
        """Pick the messages to fold into a summary."""

    async def compress(
        self, session_id: str, messages: list[Message], now: Optional[datetime] = None
    ) -> CompressionResult:
        selected = self.select(messages, now)
        if not selected:
            logger.info("%s strategy: nothing to compress in session %s", self.name, session_id)
            return _noop_result(estimate_messages_tokens(messages), self.name)
        return await self.execute_compression(session_id, selected, messages)

    async def execute_compression(
        self,
        session_id: str,
        selected: list[Message],
        all_messages: list[Message],
    ) -> CompressionResult:
        """
        Summarize ``selected``, archive it and measure the result.

        The archive step updates the session's archived counters through the
        repository, so no separate counter update happens here.
        """
        started = time.monotonic()
        before_tokens = estimate_messages_tokens(all_messages)
        logger.info(
            "%s strategy: compressing %d of %d messages in session %s",
            self.name, len(selected), len(all_messages), session_id,
        )
        try:
            summary = await self.summarizer.summarize(session_id, selected)

            selected_ids = [m.id for m in selected]
            archived = await self.messages.archive_batch(selected_ids)
            if archived.failed:
                logger.warning(
                    "Failed to archive %d messages of session %s: %s",
                    archived.failed, session_id, archived.errors,
                )

            failed_ids = {selected_ids[i] for i, _ in archived.errors}
            archived_ids = set(selected_ids) - failed_ids
            remaining = [m for m in all_messages if m.id not in archived_ids]
            summary_tokens = math.ceil(estimate_tokens(summary.summary) * SUMMARY_TOKEN_MULTIPLIER)
            after_tokens = min(
                before_tokens, estimate_messages_tokens(remaining) + summary_tokens
            )

            result = CompressionResult(
                success=True,
                before_tokens=before_tokens,
                after_tokens=after_tokens,
                archived_count=archived.success,
                archived_tokens=summary.total_tokens,
                compression_ratio=after_tokens / before_tokens if before_tokens else 1.0,
                duration_ms=int((time.monotonic() - started) * 1000),
                cost_tokens=summary.cost_tokens,
                summary_id=summary.id,
                strategy=self.name,
            )
            logger.info(
                "Compressed session %s: %d -> %d tokens (ratio %.1f%%, %d ms)",
                session_id, before_tokens, after_tokens,
                result.compression_ratio * 100, result.duration_ms,
            )
            return result
        except Exception as e:
            logger.exception("Compression of session %s failed", session_id)
            return CompressionResult(
                success=False,
                before_tokens=before_tokens,
                after_tokens=before_tokens,
                compression_ratio=1.0,
                duration_ms=int((time.monotonic() - started) * 1000),
                strategy=self.name,
                error=str(e),
            )


class TimeCompressionStrategy(CompressionStrategy):
    name = "time"

    def select(self, messages: list[Message], now: Optional[datetime] = None) -> list[Message]:
        return [m for m in messages if age_hours(m.timestamp, now) > self.config.max_age_hours]


class SizeCompressionStrategy(CompressionStrategy):
    name = "size"

    def select(self, messages: list[Message], now: Optional[datetime] = None) -> list[Message]:
        total = estimate_messages_tokens(messages)
        if total < self.config.max_tokens:
            return []
        reduction = total * (1 - self.config.target_token_ratio)
        oldest_first = sorted(messages, key=lambda m: m.timestamp)
        return _accumulate(oldest_first, reduction)


class ImportanceCompressionStrategy(CompressionStrategy):
    name = "importance"

    def select(self, messages: list[Message], now: Optional[datetime] = None) -> list[Message]:
        total = estimate_messages_tokens(messages)
        reduction = total * (1 - self.config.target_token_ratio)

        def score(m: Message) -> int:
            return DEFAULT_IMPORTANCE_SCORE if m.importance_score is None else m.importance_score

        ranked = sorted(messages, key=score)
        candidates = [m for m in ranked if score(m) <= PROTECTED_IMPORTANCE_SCORE]
        selected = _accumulate(candidates, reduction)

        selected_tokens = estimate_messages_tokens(selected)
        if selected and selected_tokens < reduction:
            # Accepted as is: protected messages are never evicted
            logger.warning(
                "Importance strategy reaches only %d of %d target tokens "
                "(%d protected messages)",
                selected_tokens, math.ceil(reduction), len(messages) - len(candidates),
            )
        return selected


# ── Scheduler ──


class CompressionScheduler:
    """Decides when to compress and which strategy runs."""

    def __init__(
        self,
        config: CompressionConfig,
        summarizer: MessageSummarizer,
        messages: MessageRepository,
    ):
        self.config = config
        self.time_strategy = TimeCompressionStrategy(config, summarizer, messages)
        self.size_strategy = SizeCompressionStrategy(config, summarizer, messages)
        self.importance_strategy = ImportanceCompressionStrategy(config, summarizer, messages)

    def _oldest_age(self, messages: list[Message], now: Optional[datetime]) -> float:
        return max(age_hours(m.timestamp, now) for m in messages)

    def should_compress(self, messages: list[Message], now: Optional[datetime] = None) -> bool:
        if not messages:
            return False
        total_tokens = estimate_messages_tokens(messages)
        if total_tokens >= self.config.max_tokens:
            logger.debug("Token threshold reached: %d >= %d", total_tokens, self.config.max_tokens)
            return True
        if len(messages) >= self.config.max_message_count:
            logger.debug(
                "Message count threshold reached: %d >= %d",
                len(messages), self.config.max_message_count,
            )
            return True
        if self._oldest_age(messages, now) >= self.config.max_age_hours:
            logger.debug("Age threshold reached (max %sh)", self.config.max_age_hours)
            return True
        return False

    def choose_strategy(
        self, messages: list[Message], now: Optional[datetime] = None
    ) -> CompressionStrategy:
        if self._oldest_age(messages, now) >= self.config.max_age_hours:
            return self.time_strategy
        if estimate_messages_tokens(messages) >= self.config.max_tokens:
            return self.size_strategy
        return self.importance_strategy

    async def compress(
        self, session_id: str, messages: list[Message], now: Optional[datetime] = None
    ) -> CompressionResult:
        if not messages:
            return _noop_result(0, "")
        strategy = self.choose_strategy(messages, now)
        logger.info("Using %s strategy for session %s", strategy.name, session_id)
        result = await strategy.compress(session_id, messages, now)
        if not result.success:
            logger.error("Compression of session %s failed: %s", session_id, result.error)
        return result


# ── Service ──


class CompressorService:
    """Session-level entry point: loads messages, compresses, reloads."""

    def __init__(
        self,
        config: CompressionConfig,
        repositories: Repositories,
        summarizer: MessageSummarizer,
        scorer: Optional[MessageScorer] = None,
    ):
        self.config = config
        self.repositories = repositories
        self.summarizer = summarizer
        self.scorer = scorer or MessageScorer()
        self.scheduler = CompressionScheduler(config, summarizer, repositories.messages)
        self._pending: dict[str, asyncio.Task] = {}

    async def _active_messages(self, session_id: str) -> list[Message]:
        return await self.repositories.messages.find_by_session(session_id)

    async def should_compress(self, session_id: str, now: Optional[datetime] = None) -> bool:
        return self.scheduler.should_compress(await self._active_messages(session_id), now)

    async def compress(
        self, session_id: str, now: Optional[datetime] = None
    ) -> tuple[CompressionResult, list[Message]]:
        """Compress a session; returns the result and its active messages afterwards."""
        try:
            messages = await self._active_messages(session_id)
        except PersistenceError as e:
            logger.exception("Failed to load messages of session %s", session_id)
            return CompressionResult(success=False, error=str(e)), []

        result = await self.scheduler.compress(session_id, messages, now)
        if not result.success or not result.archived_count:
            return result, messages

        try:
            active = await self._active_messages(session_id)
        except PersistenceError:
            logger.exception("Failed to reload messages of session %s", session_id)
            return result, messages
        logger.info(
            "Session %s now has %d active messages (was %d)",
            session_id, len(active), len(messages),
        )
        return result, active

    def compress_in_background(self, session_id: str) -> Optional[asyncio.Task]:
        """
        Schedule a delayed compression of ``session_id``.

        The task re-checks ``should_compress`` after the delay. At most one
        task is pending per session; repeated calls return the pending one.
        """
        if not self.config.compress_in_background:
            return None
        pending = self._pending.get(session_id)
        if pending and not pending.done():
            return pending
        task = asyncio.create_task(self._delayed_compress(session_id))
        self._pending[session_id] = task
        task.add_done_callback(lambda t: self._forget(session_id, t))
        return task

    def _forget(self, session_id: str, task: asyncio.Task):
        if self._pending.get(session_id) is task:
            del self._pending[session_id]

    async def _delayed_compress(self, session_id: str) -> Optional[CompressionResult]:
        await asyncio.sleep(self.config.background_delay_seconds)
        try:
            if not await self.should_compress(session_id):
                logger.debug("Background compression of %s no longer needed", session_id)
                return None
        except PersistenceError:
            logger.exception("Background compression check of %s failed", session_id)
            return None
        logger.info("Background compression triggered for session %s", session_id)
        result, _ = await self.compress(session_id)
        return result

    async def score_session(
        self, session_id: str, now: Optional[datetime] = None
    ) -> dict[str, ScoreResult]:
        """Score the active messages of a session and persist the totals."""
        messages = await self._active_messages(session_id)
        scores = self.scorer.score_batch(messages, now)
        if scores:
            result = await self.repositories.messages.update_importance_batch(
                {message_id: s.total for message_id, s in scores.items()}
            )
            if result.failed:
                logger.warning(
                    "Failed to store %d importance scores for session %s",
                    result.failed, session_id,
                )
        return scores

    def update_config(self, **changes) -> CompressionConfig:
        self.config = dataclasses.replace(self.config, **changes)
        self.summarizer.config = self.config
        self.scheduler = CompressionScheduler(
            self.config, self.summarizer, self.repositories.messages
        )
        logger.info("Compression config updated: %s", changes)
        return self.config

    async def dispose(self):
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
