"""
Context entry storage.

``ContextStore`` is the storage interface used by the context manager;
``MemoryContextStore`` keeps entries in a dict keyed by id and notifies
subscribers on every change.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Callable, Optional

from ..constants import MAX_PRIORITY, MIN_PRIORITY
from ..utils import utc_now
from .models import (
    ChangeEvent,
    ChangeType,
    ContextEntry,
    ContextFilter,
    ContextSource,
    ContextStats,
    ContextType,
)

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], None]


class ContextStore(ABC):
    """Storage interface for context entries."""

    @abstractmethod
    async def upsert(self, entry: ContextEntry) -> None: ...

    @abstractmethod
    async def upsert_many(self, entries: list[ContextEntry]) -> None: ...

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[ContextEntry]: ...

    @abstractmethod
    async def get_all(self) -> list[ContextEntry]: ...

    @abstractmethod
    async def remove(self, entry_id: str) -> None: ...

    @abstractmethod
    async def remove_by_filter(self, flt: ContextFilter) -> int: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def touch(self, entry_id: str) -> None: ...

    @abstractmethod
    async def get_stats(self) -> ContextStats: ...

    @abstractmethod
    async def cleanup_expired(self) -> int: ...

    @abstractmethod
    def on_change(self, handler: ChangeHandler) -> Callable[[], None]: ...


class MemoryContextStore(ContextStore):
    """In-process store; entries live until removed, cleared or expired."""

    def __init__(self):
        self._entries: dict[str, ContextEntry] = {}
        self._listeners: list[ChangeHandler] = []

    def __len__(self) -> int:
        return len(self._entries)

    async def upsert(self, entry: ContextEntry) -> None:
        is_new = entry.id not in self._entries
        self._entries[entry.id] = entry
        self._emit(ChangeType.ADD if is_new else ChangeType.UPDATE, entry.id)

    async def upsert_many(self, entries: list[ContextEntry]) -> None:
        for entry in entries:
            self._entries[entry.id] = entry
        if entries:
            self._emit(ChangeType.ADD)

    async def get(self, entry_id: str) -> Optional[ContextEntry]:
        entry = self._entries.get(entry_id)
        if entry:
            self._touch(entry)
        return entry

    async def get_all(self) -> list[ContextEntry]:
        return list(self._entries.values())

    async def remove(self, entry_id: str) -> None:
        if self._entries.pop(entry_id, None) is not None:
            self._emit(ChangeType.REMOVE, entry_id)

    async def remove_by_filter(self, flt: ContextFilter) -> int:
        """
        Remove entries matching every field set on the filter.

        ``expired_before`` matches entries whose expiry lies before the given
        time. An empty filter removes nothing.
        """
        if flt.is_empty():
            return 0

        doomed = [
            entry_id
            for entry_id, entry in self._entries.items()
            if _matches(entry, flt)
        ]
        for entry_id in doomed:
            del self._entries[entry_id]
        if doomed:
            self._emit(ChangeType.REMOVE)
        return len(doomed)

    async def clear(self) -> None:
        had_entries = bool(self._entries)
        self._entries.clear()
        if had_entries:
            self._emit(ChangeType.CLEAR)

    async def touch(self, entry_id: str) -> None:
        entry = self._entries.get(entry_id)
        if entry:
            self._touch(entry)

    async def get_stats(self) -> ContextStats:
        entries = list(self._entries.values())
        by_source = Counter({s.value: 0 for s in ContextSource})
        by_type = Counter({t.value: 0 for t in ContextType})
        by_priority = Counter({p: 0 for p in range(MIN_PRIORITY, MAX_PRIORITY + 1)})
        for entry in entries:
            by_source[entry.source.value] += 1
            by_type[entry.type.value] += 1
            by_priority[entry.priority or 0] += 1

        created = [e.created_at for e in entries]
        return ContextStats(
            total_entries=len(entries),
            total_tokens=sum(e.estimated_tokens for e in entries),
            by_source=dict(by_source),
            by_type=dict(by_type),
            by_priority=dict(by_priority),
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    async def cleanup_expired(self) -> int:
        now = utc_now()
        expired = [eid for eid, e in self._entries.items() if e.is_expired(now)]
        for entry_id in expired:
            del self._entries[entry_id]
        if expired:
            logger.debug("Removed %d expired context entries", len(expired))
            self._emit(ChangeType.REMOVE)
        return len(expired)

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Subscribe to changes; returns a function that unsubscribes."""
        self._listeners.append(handler)

        def unsubscribe():
            if handler in self._listeners:
                self._listeners.remove(handler)

        return unsubscribe

    # ── Internal ──

    @staticmethod
    def _touch(entry: ContextEntry):
        entry.last_accessed_at = utc_now()
        entry.access_count += 1

    def _emit(self, change_type: ChangeType, entry_id: Optional[str] = None):
        event = ChangeEvent(type=change_type, entry_id=entry_id)
        for handler in list(self._listeners):
            try:
                handler(event)
            except Exception:
                logger.exception("Context change handler failed")


def _matches(entry: ContextEntry, flt: ContextFilter) -> bool:
    if flt.source and entry.source != flt.source:
        return False
    if flt.type and entry.type != flt.type:
        return False
    if flt.workspace_id and entry.metadata.workspace_id != flt.workspace_id:
        return False
    if flt.expired_before is not None:
        if entry.expires_at is None or entry.expires_at >= flt.expired_before:
            return False
    return True
