"""
Conversation memory entities.

Sessions own messages; a compression run archives a slice of messages and
records one ``ConversationSummary`` for it. Long-term memories are durable
facts mined from sessions and deduplicated by ``key``; their ``value`` is a
typed payload, one dataclass per knowledge type, that is only turned into
JSON at the storage boundary.
"""

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from ..constants import DEFAULT_MEMORY_CONFIDENCE
from ..errors import ValidationError
from ..utils import utc_now


def new_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    # A collapsed batch of consecutive tool calls
    TOOL_GROUP = "tool_group"


class KnowledgeType(str, Enum):
    PROJECT_CONTEXT = "project_context"
    KEY_DECISION = "key_decision"
    USER_PREFERENCE = "user_preference"
    FAQ = "faq"
    CODE_PATTERN = "code_pattern"


@dataclass
class ToolCall:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    error: Optional[str] = None
    status: str = "completed"  # pending / running / completed / failed

    @property
    def failed(self) -> bool:
        return bool(self.error) or self.status == "failed"

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            name=data.get("name", ""),
            input=data.get("input") or {},
            output=data.get("output") or "",
            error=data.get("error"),
            status=data.get("status", "completed"),
        )


@dataclass
class Message:
    session_id: str
    role: MessageRole
    content: str
    id: str = field(default_factory=new_id)
    tokens: int = 0
    timestamp: datetime = field(default_factory=utc_now)
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    # None = not scored yet
    importance_score: Optional[int] = None
    is_deleted: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)

    def __post_init__(self):
        try:
            self.role = MessageRole(self.role)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if self.tokens < 0:
            raise ValidationError("tokens must be >= 0")
        if self.importance_score is not None and not 0 <= self.importance_score <= 100:
            raise ValidationError("importance_score must be within 0-100")


@dataclass
class Session:
    id: str = field(default_factory=new_id)
    title: str = ""
    workspace_path: str = ""
    engine_id: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    # Running totals, maintained on message insert / archive / soft delete
    message_count: int = 0
    total_tokens: int = 0
    archived_count: int = 0
    archived_tokens: int = 0
    is_deleted: bool = False
    is_pinned: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStats:
    session_id: str
    message_count: int
    total_tokens: int
    archived_count: int
    archived_tokens: int
    active_message_count: int
    last_message_at: Optional[datetime] = None


@dataclass
class ConversationSummary:
    session_id: str
    start_time: datetime
    end_time: datetime
    message_count: int
    total_tokens: int
    summary: str
    key_points: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    model_used: str = ""
    cost_tokens: int = 0


@dataclass
class BatchResult:
    success: int = 0
    failed: int = 0
    errors: list[tuple[int, str]] = field(default_factory=list)


@dataclass
class CompressionResult:
    success: bool
    before_tokens: int = 0
    after_tokens: int = 0
    archived_count: int = 0
    archived_tokens: int = 0
    compression_ratio: float = 1.0
    duration_ms: int = 0
    cost_tokens: int = 0
    summary_id: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None

    @property
    def saved_tokens(self) -> int:
        return self.before_tokens - self.after_tokens


# ── Long-term memory values ──


@dataclass
class ProjectContextValue:
    path: str
    file_type: str = "unknown"


@dataclass
class KeyDecisionValue:
    content: str
    timestamp: Optional[datetime] = None
    topic: Optional[str] = None
    decision: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class UserPreferenceValue:
    # engine / hour / day_of_week / workspace
    preference: str
    value: Union[str, int]
    count: int = 0
    ratio: Optional[float] = None


@dataclass
class FaqValue:
    question: str
    answer: str
    session_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class CodePatternValue:
    pattern: str
    context: str = ""


MemoryValue = Union[
    ProjectContextValue, KeyDecisionValue, UserPreferenceValue, FaqValue, CodePatternValue
]

VALUE_TYPES: dict[KnowledgeType, type] = {
    KnowledgeType.PROJECT_CONTEXT: ProjectContextValue,
    KnowledgeType.KEY_DECISION: KeyDecisionValue,
    KnowledgeType.USER_PREFERENCE: UserPreferenceValue,
    KnowledgeType.FAQ: FaqValue,
    KnowledgeType.CODE_PATTERN: CodePatternValue,
}


def value_to_dict(value: MemoryValue) -> dict[str, Any]:
    data = asdict(value)
    for k, v in data.items():
        if isinstance(v, datetime):
            data[k] = v.isoformat()
    return data


def value_from_dict(knowledge_type: KnowledgeType, data: dict[str, Any]) -> MemoryValue:
    cls = VALUE_TYPES[KnowledgeType(knowledge_type)]
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    if isinstance(kwargs.get("timestamp"), str):
        kwargs["timestamp"] = datetime.fromisoformat(kwargs["timestamp"])
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ValidationError(f"invalid {knowledge_type} value: {e}") from e


def _check_value(knowledge_type: KnowledgeType, value: Any):
    expected = VALUE_TYPES[knowledge_type]
    if not isinstance(value, expected):
        raise ValidationError(
            f"{knowledge_type.value} memory requires {expected.__name__}, "
            f"got {type(value).__name__}"
        )


@dataclass
class LongTermMemory:
    type: KnowledgeType
    key: str
    value: MemoryValue
    id: str = field(default_factory=new_id)
    workspace_path: Optional[str] = None
    session_id: Optional[str] = None
    hit_count: int = 0
    last_hit_at: Optional[datetime] = None
    confidence: float = DEFAULT_MEMORY_CONFIDENCE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    is_deleted: bool = False

    def __post_init__(self):
        self.type = KnowledgeType(self.type)
        _check_value(self.type, self.value)
        if not 0 <= self.confidence <= 1:
            raise ValidationError("confidence must be within 0-1")

    def value_text(self) -> str:
        """Flat text of the value, as searched by keyword queries."""
        return json.dumps(value_to_dict(self.value), ensure_ascii=False)


@dataclass
class ExtractedKnowledge:
    """A candidate long-term memory produced by the extractor."""

    type: KnowledgeType
    key: str
    value: MemoryValue
    confidence: float
    session_id: Optional[str] = None
    workspace_path: Optional[str] = None
    extracted_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.type = KnowledgeType(self.type)
        _check_value(self.type, self.value)

    def to_memory(self) -> LongTermMemory:
        return LongTermMemory(
            type=self.type,
            key=self.key,
            value=self.value,
            workspace_path=self.workspace_path,
            session_id=self.session_id,
            confidence=self.confidence,
            created_at=self.extracted_at,
            updated_at=self.extracted_at,
        )


@dataclass
class MemorySearchResult:
    memories: list[LongTermMemory]
    query: str
    total_hits: int


@dataclass
class ReminderResult:
    should_remind: bool
    reminder: Optional[str] = None
    memory_id: Optional[str] = None
