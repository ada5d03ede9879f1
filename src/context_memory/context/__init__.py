"""
Token-budgeted selection of context entries.

Entries (files, symbols, diagnostics, ...) are stored with a 0-5 priority
and a token estimate; a query filters them, applies per-request boosts for
the current and mentioned files, and greedily packs the highest-ranked ones
into the available token budget.
"""

from .manager import ContextManager, estimate_entry_tokens
from .models import (
    BuildPromptOptions,
    ContextEntry,
    ContextFilter,
    ContextQueryRequest,
    ContextQueryResult,
    ContextSource,
    ContextType,
    PromptFormat,
)
from .priority import PriorityManager
from .store import ContextStore, MemoryContextStore

__all__ = [
    "BuildPromptOptions",
    "ContextEntry",
    "ContextFilter",
    "ContextManager",
    "ContextQueryRequest",
    "ContextQueryResult",
    "ContextSource",
    "ContextStore",
    "ContextType",
    "MemoryContextStore",
    "PriorityManager",
    "PromptFormat",
    "estimate_entry_tokens",
]
