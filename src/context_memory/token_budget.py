"""
Token estimation and greedy budget packing.

Estimates are a character heuristic, not a tokenizer: each CJK ideograph
counts CJK_TOKENS_PER_CHAR tokens, every other character
OTHER_TOKENS_PER_CHAR, and the sum is rounded up.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import ContextConfig
from .constants import (
    CJK_CHAR_PATTERN,
    CJK_TOKENS_PER_CHAR,
    OTHER_TOKENS_PER_CHAR,
    TOOL_CALL_TOKENS,
)

logger = logging.getLogger(__name__)

_CJK_RE = re.compile(CJK_CHAR_PATTERN)

DROP_REASON_TOKEN_LIMIT = "token_limit"


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate for mixed CJK/English text."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk * CJK_TOKENS_PER_CHAR + other * OTHER_TOKENS_PER_CHAR)


def estimate_message_tokens(msg) -> int:
    """Tokens of a chat message: stored count if known, plus a flat cost per tool call."""
    base = getattr(msg, "tokens", 0) or estimate_tokens(getattr(msg, "content", ""))
    tool_calls = getattr(msg, "tool_calls", None) or []
    return base + len(tool_calls) * TOOL_CALL_TOKENS


def estimate_messages_tokens(messages: Sequence) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


@dataclass
class DroppedEntry:
    id: str
    reason: str
    priority: int
    tokens: int


@dataclass
class BudgetSelection:
    """Exact partition of the candidates into ``selected`` and ``dropped``."""

    selected: list = field(default_factory=list)
    dropped: list[DroppedEntry] = field(default_factory=list)
    used_tokens: int = 0


def _rank_key(entry):
    recency = entry.last_accessed_at or entry.created_at
    return (-(entry.priority or 0), -recency.timestamp(), entry.id)


class TokenBudgetController:
    """
    Greedy packer over context entries.

    Candidates are ranked by (priority desc, recency desc, id) and admitted
    while they fit. The first candidate that does not fit ends admission:
    it and every lower-ranked candidate are dropped as ``token_limit``.
    """

    def __init__(self, config: Optional[ContextConfig] = None):
        self.config = config or ContextConfig()

    @property
    def context_window(self) -> int:
        return self.config.get_context_window()

    @property
    def available(self) -> int:
        """Tokens left for context after system and user-message reserves."""
        return max(
            self.context_window
            - self.config.system_reserved
            - self.config.user_message_reserved,
            0,
        )

    def estimate_tokens(self, text: Optional[str]) -> int:
        return estimate_tokens(text)

    def select_within_budget(
        self, entries: Sequence, budget: Optional[int] = None
    ) -> BudgetSelection:
        if budget is None:
            budget = self.available
        budget = max(budget, 0)

        result = BudgetSelection()
        ranked = sorted(entries, key=_rank_key)
        for i, entry in enumerate(ranked):
            if result.used_tokens + entry.estimated_tokens > budget:
                result.dropped = [
                    DroppedEntry(
                        id=e.id,
                        reason=DROP_REASON_TOKEN_LIMIT,
                        priority=e.priority or 0,
                        tokens=e.estimated_tokens,
                    )
                    for e in ranked[i:]
                ]
                break
            result.selected.append(entry)
            result.used_tokens += entry.estimated_tokens

        if result.dropped:
            logger.debug(
                "Budget %d: selected %d entries (%d tokens), dropped %d",
                budget,
                len(result.selected),
                result.used_tokens,
                len(result.dropped),
            )
        return result
