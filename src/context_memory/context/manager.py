"""
Context manager: the query / build-prompt facade over store, priorities
and token budget.

Callers hand in pre-built ``ContextEntry`` objects (possibly without a
priority or token estimate) and ask for a budgeted, prioritized slice of
them for the next model request.
"""

import asyncio
import contextlib
import json
import logging
from dataclasses import asdict
from typing import Callable, Optional

from ..config import ContextConfig
from ..constants import FOLDER_ENTRY_TOKENS, PROJECT_META_TOKENS, UNKNOWN_ENTRY_TOKENS
from ..token_budget import TokenBudgetController, estimate_tokens
from ..utils import utc_now
from .formatting import format_prompt
from .models import (
    BuildPromptOptions,
    ChangeEvent,
    ContextEntry,
    ContextFilter,
    ContextQueryRequest,
    ContextQueryResult,
    ContextStats,
    ContextSummary,
    ContextType,
    DiagnosticsContent,
    FileContent,
    FileStructureContent,
    FolderContent,
    ProjectMetaContent,
    SelectionContent,
    SymbolContent,
    ToolResultContent,
    UserMessageContent,
)
from .priority import PriorityManager
from .store import ContextStore, MemoryContextStore

logger = logging.getLogger(__name__)


def estimate_entry_tokens(entry: ContextEntry) -> int:
    """Default token estimate derived from the entry's content variant."""
    content = entry.content
    if isinstance(content, (FileContent, SelectionContent, UserMessageContent)):
        return estimate_tokens(content.content)
    if isinstance(content, FileStructureContent):
        return estimate_tokens(json.dumps([asdict(s) for s in content.symbols]))
    if isinstance(content, FolderContent):
        return FOLDER_ENTRY_TOKENS
    if isinstance(content, SymbolContent):
        return estimate_tokens(content.documentation or content.signature or content.name)
    if isinstance(content, DiagnosticsContent):
        return estimate_tokens(json.dumps([asdict(d) for d in content.items]))
    if isinstance(content, ProjectMetaContent):
        return PROJECT_META_TOKENS
    if isinstance(content, ToolResultContent):
        return estimate_tokens(content.output or json.dumps(content.input, default=str))
    return UNKNOWN_ENTRY_TOKENS


class ContextManager:
    """
    Selects context entries for a prompt.

    Owns one background task when started: a periodic sweep removing
    expired entries. ``dispose()`` cancels it.
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        store: Optional[ContextStore] = None,
        priority_manager: Optional[PriorityManager] = None,
        budget: Optional[TokenBudgetController] = None,
    ):
        self.config = config or ContextConfig()
        self.store = store or MemoryContextStore()
        self.priority_manager = priority_manager or PriorityManager()
        self.budget = budget or TokenBudgetController(self.config)
        self._cleanup_task: Optional[asyncio.Task] = None

    # ── Lifecycle ──

    def start(self):
        """Start the periodic expiry sweep (no-op if disabled or running)."""
        if not self.config.auto_cleanup or self._cleanup_task is not None:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def dispose(self):
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.store.cleanup_expired()
            except Exception:
                logger.exception("Context expiry sweep failed")

    # ── Queries ──

    async def query(self, request: Optional[ContextQueryRequest] = None) -> ContextQueryResult:
        """
        Filter, prioritize and pack entries into the request's budget.

        Never raises: a failing store or a malformed request is logged and
        yields an empty result.
        """
        request = request or ContextQueryRequest()
        try:
            entries = await self.store.get_all()
            filtered = self.priority_manager.adjust_priorities(
                self._filter_entries(entries, request), request
            )
            max_tokens = (
                request.max_tokens if request.max_tokens is not None else self.budget.available
            )
            selection = self.budget.select_within_budget(
                filtered, max_tokens - request.reserved_tokens
            )
        except Exception:
            logger.exception("Context query failed")
            return ContextQueryResult()

        return ContextQueryResult(
            entries=selection.selected,
            total_tokens=selection.used_tokens,
            dropped_entries=selection.dropped,
            summary=_build_summary(selection.selected),
        )

    async def build_prompt(self, options: Optional[BuildPromptOptions] = None) -> str:
        options = options or BuildPromptOptions()
        result = await self.query(
            ContextQueryRequest(
                max_tokens=options.max_tokens,
                include_diagnostics=options.include_diagnostics,
                include_structure=options.include_structure,
            )
        )
        return format_prompt(result.entries, options)

    async def get_stats(self) -> ContextStats:
        return await self.store.get_stats()

    async def get(self, entry_id: str) -> Optional[ContextEntry]:
        return await self.store.get(entry_id)

    async def get_all(self) -> list[ContextEntry]:
        return await self.store.get_all()

    async def get_by_type(self, entry_type: ContextType) -> list[ContextEntry]:
        entry_type = ContextType(entry_type)
        return [e for e in await self.store.get_all() if e.type == entry_type]

    # ── Updates ──

    async def upsert(self, entry: ContextEntry):
        await self.store.upsert(self._fill_defaults(entry))

    async def upsert_many(self, entries: list[ContextEntry]):
        await self.store.upsert_many([self._fill_defaults(e) for e in entries])

    async def touch(self, entry_id: str):
        await self.store.touch(entry_id)

    async def remove(self, entry_id: str):
        await self.store.remove(entry_id)

    async def remove_by_filter(self, flt: ContextFilter) -> int:
        return await self.store.remove_by_filter(flt)

    async def clear(self):
        await self.store.clear()

    def on_change(self, handler: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self.store.on_change(handler)

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    # ── Internal ──

    def _fill_defaults(self, entry: ContextEntry) -> ContextEntry:
        if entry.priority is None:
            entry.priority = self.priority_manager.get_default_priority(entry.source)
        if entry.estimated_tokens == 0:
            entry.estimated_tokens = estimate_entry_tokens(entry)
        return entry

    @staticmethod
    def _filter_entries(
        entries: list[ContextEntry], request: ContextQueryRequest
    ) -> list[ContextEntry]:
        now = utc_now()
        files = set(request.files)
        types = {ContextType(t) for t in request.types}
        sources = set(request.sources)

        def keep(entry: ContextEntry) -> bool:
            if entry.is_expired(now):
                return False
            if request.workspace_id and entry.metadata.workspace_id != request.workspace_id:
                return False
            if files and entry.path not in files:
                return False
            if types and entry.type not in types:
                return False
            if sources and entry.source not in sources:
                return False
            if request.min_priority is not None and (entry.priority or 0) < request.min_priority:
                return False
            return True

        return [e for e in entries if keep(e)]


def _build_summary(entries: list[ContextEntry]) -> ContextSummary:
    summary = ContextSummary()
    workspaces: dict[str, None] = {}
    languages: dict[str, None] = {}
    for entry in entries:
        if entry.type in (ContextType.FILE, ContextType.FILE_STRUCTURE, ContextType.FOLDER):
            summary.file_count += 1
        elif entry.type == ContextType.SYMBOL:
            summary.symbol_count += 1
        elif entry.type == ContextType.PROJECT_META:
            summary.project_info = entry.content
        elif entry.type == ContextType.DIAGNOSTICS:
            summary.diagnostics = entry.content.summary

        if entry.metadata.workspace_id:
            workspaces[entry.metadata.workspace_id] = None
        if entry.language:
            languages[entry.language] = None

    summary.workspace_ids = list(workspaces)
    summary.languages = list(languages)
    return summary
