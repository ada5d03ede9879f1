"""
Knowledge extraction from conversation history.

Produces ``ExtractedKnowledge`` candidates; persistence and deduplication
by key happen in ``LongTermMemoryService``.

- project knowledge (per session): file paths, key decisions, code patterns
- user preferences (across sessions): engine usage, peak hour / day,
  workspace usage
- FAQ (per session): a user question directly answered by the assistant
"""

import logging
import re
from collections import Counter
from typing import Optional

from ..constants import (
    CODE_PATTERN_CONFIDENCE,
    ENGINE_PREFERENCE_CONFIDENCE,
    FAQ_CONFIDENCE,
    KEY_DECISION_CONFIDENCE,
    KNOWLEDGE_KEY_MAX_CHARS,
    PATTERN_CONTEXT_CHARS,
    PROJECT_CONTEXT_CONFIDENCE,
    TIME_PREFERENCE_CONFIDENCE,
    WORKSPACE_PREFERENCE_CONFIDENCE,
)
from .models import (
    CodePatternValue,
    ExtractedKnowledge,
    FaqValue,
    KeyDecisionValue,
    KnowledgeType,
    Message,
    MessageRole,
    ProjectContextValue,
    Session,
    UserPreferenceValue,
)

logger = logging.getLogger(__name__)

# Relative, Windows, quoted, backticked and absolute Unix paths
PATH_PATTERNS = [
    re.compile(r"[\w\-./]+\.[a-z]+", re.I),
    re.compile(r"[A-Za-z]:\\[\\/]?[\w\-./\\]+", re.I),
    re.compile(r"[\"']([^\"'\n]+\.[a-z]+)[\"']", re.I),
    re.compile(r"`([^`\n]+\.[a-z]+)`", re.I),
    re.compile(r"/[\w\-./]+\.[a-z]+", re.I),
]

FILE_TYPES = {
    "ts": "typescript",
    "tsx": "typescript-react",
    "js": "javascript",
    "jsx": "javascript-react",
    "json": "json",
    "md": "markdown",
    "css": "stylesheet",
    "scss": "stylesheet",
    "html": "html",
    "vue": "vue",
    "py": "python",
    "rs": "rust",
    "go": "go",
}

DECISION_KEYWORDS = (
    "决定", "决策", "选择", "使用", "采用",
    "decided", "chose", "choosing", "selected", "adopted",
)
_DECISION_RE = re.compile(r"(?:使用|采用|选择|decided to|chose to)\s*([^.。\n]+)", re.I)
_REASON_RE = re.compile(r"(?:因为|由于|原因是|because|reason)\s*([^.。\n]+)", re.I)

CODE_PATTERNS = [
    re.compile(r"import\s+.+?\s+from\s+['\"][^'\"]+['\"]"),
    re.compile(r"function\s+\w+\s*\([^)]*\)"),
    re.compile(r"const\s+\w+\s*=\s*\([^)]*\)\s*=>"),
    re.compile(r"class\s+\w+(?:\s+extends\s+\w+)?"),
    re.compile(r"interface\s+\w+"),
    re.compile(r"type\s+\w+\s*="),
    re.compile(r"export\s+(?:default\s+)?(?:const|function|class|interface|type)\s+\w+"),
]

_QUESTION_RE = re.compile(r"[？?]|怎么|如何|什么|为什么|何时|哪里|what|how|why|when|where", re.I)
_KEY_UNSAFE_RE = re.compile(r"[^\w一-龥]")


def generate_key(text: str, max_length: int = KNOWLEDGE_KEY_MAX_CHARS) -> str:
    return _KEY_UNSAFE_RE.sub("_", text)[:max_length]


def file_type(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return FILE_TYPES.get(ext, "unknown")


def extract_file_paths(content: str) -> list[str]:
    found: dict[str, None] = {}
    for pattern in PATH_PATTERNS:
        for match in pattern.findall(content):
            found[match] = None
    return [
        p for p in found if "http" not in p and len(p) > 3 and "." in p
    ]


def contains_decision(content: str) -> bool:
    lowered = content.lower()
    return any(keyword in lowered for keyword in DECISION_KEYWORDS)


def parse_decision(content: str) -> dict[str, Optional[str]]:
    """Topic / decision / reason pulled out of a decision sentence."""
    decision = _DECISION_RE.search(content)
    reason = _REASON_RE.search(content)
    chosen = decision.group(1).strip() if decision else None
    return {
        "topic": chosen,
        "decision": chosen,
        "reason": reason.group(1).strip() if reason else None,
    }


def extract_code_patterns(content: str) -> list[str]:
    found: dict[str, None] = {}
    for pattern in CODE_PATTERNS:
        for match in pattern.finditer(content):
            found[match.group(0)] = None
    return list(found)


def pattern_context(content: str, pattern: str) -> str:
    index = content.find(pattern)
    if index < 0:
        return ""
    start = max(0, index - PATTERN_CONTEXT_CHARS)
    end = min(len(content), index + len(pattern) + PATTERN_CONTEXT_CHARS)
    return content[start:end]


def contains_question(content: str) -> bool:
    return _QUESTION_RE.search(content) is not None


class KnowledgeExtractor:
    """Mines long-term memory candidates from sessions and their messages."""

    def extract_project_knowledge(
        self, session: Session, messages: list[Message]
    ) -> list[ExtractedKnowledge]:
        knowledge = (
            self.extract_project_structure(session, messages)
            + self.extract_key_decisions(session, messages)
            + self.extract_code_patterns(session, messages)
        )
        logger.debug(
            "Extracted %d project knowledge items from session %s", len(knowledge), session.id
        )
        return knowledge

    def extract_project_structure(
        self, session: Session, messages: list[Message]
    ) -> list[ExtractedKnowledge]:
        paths: dict[str, None] = {}
        for message in messages:
            for path in extract_file_paths(message.content):
                paths[path] = None
        return [
            ExtractedKnowledge(
                type=KnowledgeType.PROJECT_CONTEXT,
                key=f"file:{path}",
                value=ProjectContextValue(path=path, file_type=file_type(path)),
                confidence=PROJECT_CONTEXT_CONFIDENCE,
                session_id=session.id,
                workspace_path=session.workspace_path,
            )
            for path in paths
        ]

    def extract_key_decisions(
        self, session: Session, messages: list[Message]
    ) -> list[ExtractedKnowledge]:
        decisions = []
        for message in messages:
            if not contains_decision(message.content):
                continue
            info = parse_decision(message.content)
            decisions.append(
                ExtractedKnowledge(
                    type=KnowledgeType.KEY_DECISION,
                    key=f"decision:{generate_key(info['topic'] or message.content)}",
                    value=KeyDecisionValue(
                        content=message.content, timestamp=message.timestamp, **info
                    ),
                    confidence=KEY_DECISION_CONFIDENCE,
                    session_id=session.id,
                    workspace_path=session.workspace_path,
                )
            )
        return decisions

    def extract_code_patterns(
        self, session: Session, messages: list[Message]
    ) -> list[ExtractedKnowledge]:
        patterns: dict[str, ExtractedKnowledge] = {}
        for message in messages:
            for pattern in extract_code_patterns(message.content):
                key = f"pattern:{pattern[:KNOWLEDGE_KEY_MAX_CHARS]}"
                if key in patterns:
                    continue
                patterns[key] = ExtractedKnowledge(
                    type=KnowledgeType.CODE_PATTERN,
                    key=key,
                    value=CodePatternValue(
                        pattern=pattern, context=pattern_context(message.content, pattern)
                    ),
                    confidence=CODE_PATTERN_CONFIDENCE,
                    session_id=session.id,
                    workspace_path=session.workspace_path,
                )
        return list(patterns.values())

    # ── Cross-session preferences ──

    def extract_user_preferences(self, sessions: list[Session]) -> list[ExtractedKnowledge]:
        if not sessions:
            return []
        preferences = (
            self.analyze_engine_usage(sessions)
            + self.analyze_time_patterns(sessions)
            + self.analyze_workspace_usage(sessions)
        )
        logger.debug(
            "Extracted %d preferences from %d sessions", len(preferences), len(sessions)
        )
        return preferences

    def analyze_engine_usage(self, sessions: list[Session]) -> list[ExtractedKnowledge]:
        usage = Counter(s.engine_id for s in sessions)
        total = len(sessions)
        return [
            ExtractedKnowledge(
                type=KnowledgeType.USER_PREFERENCE,
                key=f"engine_usage:{engine}",
                value=UserPreferenceValue(
                    preference="engine", value=engine, count=count, ratio=count / total
                ),
                confidence=ENGINE_PREFERENCE_CONFIDENCE,
            )
            for engine, count in usage.most_common()
        ]

    def analyze_time_patterns(self, sessions: list[Session]) -> list[ExtractedKnowledge]:
        hours = Counter(s.created_at.hour for s in sessions)
        days = Counter(s.created_at.weekday() for s in sessions)
        results = []
        for key, preference, counts in (
            ("peak_usage_hour", "hour", hours),
            ("peak_usage_day", "day_of_week", days),
        ):
            peak, count = counts.most_common(1)[0]
            results.append(
                ExtractedKnowledge(
                    type=KnowledgeType.USER_PREFERENCE,
                    key=key,
                    value=UserPreferenceValue(preference=preference, value=peak, count=count),
                    confidence=TIME_PREFERENCE_CONFIDENCE,
                )
            )
        return results

    def analyze_workspace_usage(self, sessions: list[Session]) -> list[ExtractedKnowledge]:
        usage = Counter(s.workspace_path for s in sessions if s.workspace_path)
        return [
            ExtractedKnowledge(
                type=KnowledgeType.USER_PREFERENCE,
                key=f"workspace_usage:{workspace}",
                value=UserPreferenceValue(preference="workspace", value=workspace, count=count),
                confidence=WORKSPACE_PREFERENCE_CONFIDENCE,
                workspace_path=workspace,
            )
            for workspace, count in usage.most_common()
        ]

    # ── FAQ ──

    def extract_faq(self, session: Session, messages: list[Message]) -> list[ExtractedKnowledge]:
        ordered = sorted(messages, key=lambda m: m.timestamp)
        faqs = []
        for question, answer in zip(ordered, ordered[1:]):
            if question.role != MessageRole.USER or answer.role != MessageRole.ASSISTANT:
                continue
            if not contains_question(question.content):
                continue
            faqs.append(
                ExtractedKnowledge(
                    type=KnowledgeType.FAQ,
                    key=f"faq:{generate_key(question.content)}",
                    value=FaqValue(
                        question=question.content,
                        answer=answer.content,
                        session_id=session.id,
                        timestamp=question.timestamp,
                    ),
                    confidence=FAQ_CONFIDENCE,
                    session_id=session.id,
                    workspace_path=session.workspace_path,
                )
            )
        return faqs
