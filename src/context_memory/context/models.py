"""
Context entry model.

A context entry is one unit of information (file, symbol, diagnostic, ...)
that may be included in a model prompt. Its ``content`` is a tagged union:
one dataclass per entry type, and the active variant must match ``type``.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from ..constants import MAX_PRIORITY, MIN_PRIORITY
from ..errors import ValidationError
from ..token_budget import DroppedEntry
from ..utils import utc_now


class ContextSource(str, Enum):
    PROJECT = "project"
    WORKSPACE = "workspace"
    IDE = "ide"
    USER_SELECTION = "user_selection"
    SEMANTIC_RELATED = "semantic_related"
    HISTORY = "history"
    DIAGNOSTICS = "diagnostics"


class ContextType(str, Enum):
    FILE = "file"
    FILE_STRUCTURE = "file_structure"
    SYMBOL = "symbol"
    SYMBOL_REFERENCE = "symbol_reference"
    SELECTION = "selection"
    DIAGNOSTICS = "diagnostics"
    DEPENDENCY = "dependency"
    PROJECT_META = "project_meta"
    USER_MESSAGE = "user_message"
    TOOL_RESULT = "tool_result"
    FOLDER = "folder"


class PromptFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"
    CONCISE = "concise"


# ── Content variants ──


@dataclass
class Location:
    path: str
    line_start: int = 0
    line_end: Optional[int] = None


@dataclass
class SymbolInfo:
    name: str
    kind: str
    line: Optional[int] = None


@dataclass
class FileContent:
    path: str
    content: str = ""
    language: str = ""
    size: Optional[int] = None


@dataclass
class FileStructureContent:
    path: str
    symbols: list[SymbolInfo] = field(default_factory=list)
    language: str = ""


@dataclass
class SymbolContent:
    name: str
    kind: str
    definition: Optional[Location] = None
    signature: str = ""
    documentation: str = ""


@dataclass
class SymbolReferenceContent:
    name: str
    references: list[Location] = field(default_factory=list)


@dataclass
class SelectionContent:
    path: str
    content: str
    language: str = ""
    start_line: int = 0
    end_line: int = 0


@dataclass
class Diagnostic:
    path: str
    line: int
    message: str
    severity: str = "error"  # error / warning / info
    source: str = ""


@dataclass
class DiagnosticsSummary:
    errors: int = 0
    warnings: int = 0
    infos: int = 0


@dataclass
class DiagnosticsContent:
    items: list[Diagnostic] = field(default_factory=list)
    summary: Optional[DiagnosticsSummary] = None


@dataclass
class DependencyContent:
    name: str
    version: str = ""
    dev: bool = False


@dataclass
class ProjectMetaContent:
    name: str
    project_type: str = ""
    languages: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    entry_files: list[str] = field(default_factory=list)


@dataclass
class UserMessageContent:
    content: str


@dataclass
class ToolResultContent:
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""


@dataclass
class FolderContent:
    path: str
    file_count: Optional[int] = None
    dir_count: Optional[int] = None


ContextContent = Union[
    FileContent,
    FileStructureContent,
    SymbolContent,
    SymbolReferenceContent,
    SelectionContent,
    DiagnosticsContent,
    DependencyContent,
    ProjectMetaContent,
    UserMessageContent,
    ToolResultContent,
    FolderContent,
]

CONTENT_TYPES: dict[ContextType, type] = {
    ContextType.FILE: FileContent,
    ContextType.FILE_STRUCTURE: FileStructureContent,
    ContextType.SYMBOL: SymbolContent,
    ContextType.SYMBOL_REFERENCE: SymbolReferenceContent,
    ContextType.SELECTION: SelectionContent,
    ContextType.DIAGNOSTICS: DiagnosticsContent,
    ContextType.DEPENDENCY: DependencyContent,
    ContextType.PROJECT_META: ProjectMetaContent,
    ContextType.USER_MESSAGE: UserMessageContent,
    ContextType.TOOL_RESULT: ToolResultContent,
    ContextType.FOLDER: FolderContent,
}


def content_path(content: ContextContent) -> Optional[str]:
    """File path an entry refers to, if any."""
    if isinstance(content, SymbolContent):
        return content.definition.path if content.definition else None
    return getattr(content, "path", None)


# ── Entry ──


@dataclass
class ContextMetadata:
    workspace_id: Optional[str] = None
    language: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    confidence: Optional[float] = None


@dataclass
class ContextEntry:
    """
    One context entry.

    ``priority`` may be left as None and ``estimated_tokens`` as 0; the
    context manager fills both in on upsert.
    """

    id: str
    source: ContextSource
    type: ContextType
    content: ContextContent
    priority: Optional[int] = None
    metadata: ContextMetadata = field(default_factory=ContextMetadata)
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    estimated_tokens: int = 0

    def __post_init__(self):
        try:
            self.source = ContextSource(self.source)
            self.type = ContextType(self.type)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        expected = CONTENT_TYPES[self.type]
        if not isinstance(self.content, expected):
            raise ValidationError(
                f"entry {self.id!r} of type {self.type.value} requires "
                f"{expected.__name__}, got {type(self.content).__name__}"
            )
        if self.priority is not None and not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValidationError(
                f"priority {self.priority} out of range {MIN_PRIORITY}-{MAX_PRIORITY}"
            )
        if self.estimated_tokens < 0:
            raise ValidationError("estimated_tokens must be >= 0")
        if self.last_accessed_at is None:
            self.last_accessed_at = self.created_at

    @property
    def path(self) -> Optional[str]:
        return content_path(self.content)

    @property
    def language(self) -> Optional[str]:
        return self.metadata.language or getattr(self.content, "language", None) or None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or utc_now())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["type"] = self.type.value
        for key in ("created_at", "expires_at", "last_accessed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


# ── Query types ──


@dataclass
class ContextQueryRequest:
    workspace_id: Optional[str] = None
    files: list[str] = field(default_factory=list)
    types: list[ContextType] = field(default_factory=list)
    sources: list[ContextSource] = field(default_factory=list)
    min_priority: Optional[int] = None
    max_tokens: Optional[int] = None
    reserved_tokens: int = 0
    current_file: Optional[str] = None
    mentioned_files: list[str] = field(default_factory=list)
    include_diagnostics: bool = True
    include_structure: bool = True


@dataclass
class ContextSummary:
    file_count: int = 0
    symbol_count: int = 0
    workspace_ids: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    project_info: Optional[ProjectMetaContent] = None
    diagnostics: Optional[DiagnosticsSummary] = None


@dataclass
class ContextQueryResult:
    entries: list[ContextEntry] = field(default_factory=list)
    total_tokens: int = 0
    dropped_entries: list[DroppedEntry] = field(default_factory=list)
    summary: ContextSummary = field(default_factory=ContextSummary)


@dataclass
class BuildPromptOptions:
    format: PromptFormat = PromptFormat.MARKDOWN
    max_tokens: Optional[int] = None
    include_diagnostics: bool = True
    include_structure: bool = True


@dataclass
class ContextStats:
    total_entries: int = 0
    total_tokens: int = 0
    by_source: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_priority: dict[int, int] = field(default_factory=dict)
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None


@dataclass
class ContextFilter:
    source: Optional[ContextSource] = None
    type: Optional[ContextType] = None
    workspace_id: Optional[str] = None
    expired_before: Optional[datetime] = None

    def is_empty(self) -> bool:
        return not (self.source or self.type or self.workspace_id or self.expired_before)


class ChangeType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    CLEAR = "clear"


@dataclass
class ChangeEvent:
    type: ChangeType
    entry_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
