"""
Conversation summarizer.

Asks the remote summarizer for a ``{summary, keyPoints}`` JSON object over
a slice of messages and persists the result as a ``ConversationSummary``.
A reply that is not valid JSON degrades to truncation + bullet extraction
instead of failing the compression run.
"""

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, Optional

from ..config import CompressionConfig
from ..constants import FALLBACK_KEY_POINT
from ..errors import RemoteCallError, ValidationError
from ..token_budget import estimate_messages_tokens, estimate_tokens
from .models import ConversationSummary, Message
from .prompts import build_summary_prompt, detect_language
from .repositories import SummaryRepository

logger = logging.getLogger(__name__)

# (engine_id, prompt, temperature) -> reply text
SummaryCaller = Callable[[str, str, float], Awaitable[str]]

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BULLET_RE = re.compile(r"^[-•]\s*")


class MessageSummarizer:
    """Generates and stores conversation summaries."""

    def __init__(
        self,
        config: CompressionConfig,
        summaries: SummaryRepository,
        caller: SummaryCaller,
    ):
        self.config = config
        self.summaries = summaries
        self.caller = caller

    async def summarize(self, session_id: str, messages: list[Message]) -> ConversationSummary:
        """
        Summarize ``messages`` and persist the summary.

        Raises RemoteCallError when the summarizer fails or times out, and
        PersistenceError when the summary cannot be stored.
        """
        if not messages:
            raise ValidationError("cannot summarize an empty message list")

        language = detect_language(messages)
        prompt = build_summary_prompt(messages, self.config, language)
        logger.debug(
            "Summarizing %d messages of session %s (language=%s, prompt=%d chars)",
            len(messages), session_id, language, len(prompt),
        )

        response = await self._call(prompt)
        summary_text, key_points = self.parse_response(response)

        ordered = sorted(messages, key=lambda m: m.timestamp)
        summary = ConversationSummary(
            session_id=session_id,
            start_time=ordered[0].timestamp,
            end_time=ordered[-1].timestamp,
            message_count=len(messages),
            total_tokens=estimate_messages_tokens(messages),
            summary=summary_text,
            key_points=key_points,
            model_used=self.config.summary_model,
            cost_tokens=estimate_tokens(prompt) + estimate_tokens(response),
        )
        await self.summaries.create(summary)
        logger.info(
            "Stored summary %s for session %s (%d messages, %d key points, cost %d tokens)",
            summary.id, session_id, summary.message_count, len(key_points), summary.cost_tokens,
        )
        return summary

    async def _call(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                self.caller(
                    self.config.summary_model, prompt, self.config.summary_temperature
                ),
                timeout=self.config.summary_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RemoteCallError(
                f"summarizer timed out after {self.config.summary_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise RemoteCallError(f"summarizer call failed: {e}") from e

    def parse_response(self, response: str) -> tuple[str, list[str]]:
        """Return (summary, key_points); falls back to plain-text parsing."""
        parsed = _load_json(response)
        if (
            isinstance(parsed, dict)
            and isinstance(parsed.get("summary"), str)
            and parsed["summary"]
            and isinstance(parsed.get("keyPoints"), list)
        ):
            key_points = [str(p) for p in parsed["keyPoints"]]
            return parsed["summary"], key_points[: self.config.max_key_points]

        logger.warning("Summarizer reply is not a valid summary object, using fallback parse")
        return self.fallback_parse(response)

    def fallback_parse(self, response: str) -> tuple[str, list[str]]:
        summary = response[: self.config.max_summary_length]
        key_points = [
            _BULLET_RE.sub("", line.strip()).strip()
            for line in response.splitlines()
            if line.strip().startswith(("-", "•"))
        ][: self.config.max_key_points]
        return summary, key_points or [FALLBACK_KEY_POINT]


def _load_json(text: str) -> Optional[object]:
    candidates = [text.strip()]
    match = _FENCED_JSON_RE.search(text)
    if match:
        candidates.append(match.group(1).strip())
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None
