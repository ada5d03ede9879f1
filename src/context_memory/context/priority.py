"""Priority assignment for context entries."""

from dataclasses import replace
from typing import Optional

from ..constants import DEFAULT_SOURCE_PRIORITIES, MAX_PRIORITY, MENTIONED_FILE_BOOST
from .models import ContextEntry, ContextQueryRequest, ContextSource


class PriorityManager:
    """Maps sources to default priorities and applies per-query boosts."""

    def __init__(self, source_priorities: Optional[dict[str, int]] = None):
        self._priorities = {**DEFAULT_SOURCE_PRIORITIES, **(source_priorities or {})}

    def get_default_priority(self, source: ContextSource) -> int:
        return self._priorities[ContextSource(source).value]

    def adjust_priorities(
        self, entries: list[ContextEntry], request: ContextQueryRequest
    ) -> list[ContextEntry]:
        """
        Return a new list with query-specific boosts applied.

        The entry for ``request.current_file`` is raised to the maximum
        priority; entries for ``request.mentioned_files`` gain
        MENTIONED_FILE_BOOST, capped at the maximum. Boosted entries are
        copies, the input entries are never modified.
        """
        mentioned = set(request.mentioned_files)
        adjusted = []
        for entry in entries:
            priority = entry.priority
            if priority is None:
                priority = self.get_default_priority(entry.source)
            path = entry.path
            if path and request.current_file and path == request.current_file:
                priority = MAX_PRIORITY
            elif path and path in mentioned:
                priority = min(priority + MENTIONED_FILE_BOOST, MAX_PRIORITY)

            if priority != entry.priority:
                entry = replace(entry, priority=priority)
            adjusted.append(entry)
        return adjusted
