"""
Named constants for every tunable heuristic in the engine.

Algorithm code imports from here; retuning a ratio or breakpoint never
touches the algorithms themselves.
"""

# ── Token estimation ──
# A CJK ideograph costs ~1.5 tokens, any other character ~0.5 tokens.
CJK_TOKENS_PER_CHAR = 1.5
OTHER_TOKENS_PER_CHAR = 0.5
CJK_CHAR_PATTERN = r"[\u4e00-\u9fa5]"

# Flat costs used where content cannot be measured
TOOL_CALL_TOKENS = 100
FOLDER_ENTRY_TOKENS = 100
PROJECT_META_TOKENS = 200
UNKNOWN_ENTRY_TOKENS = 100

# A summary line costs more than plain prose once re-injected into a prompt
SUMMARY_TOKEN_MULTIPLIER = 1.5

# ── Context priorities ──
MIN_PRIORITY = 0
MAX_PRIORITY = 5

DEFAULT_SOURCE_PRIORITIES: dict[str, int] = {
    "user_selection": 5,
    "ide": 4,
    "diagnostics": 4,
    "semantic_related": 3,
    "project": 2,
    "workspace": 2,
    "history": 1,
}

MENTIONED_FILE_BOOST = 1

# ── Context budget ──
DEFAULT_CONTEXT_WINDOW = 128_000
DEFAULT_SYSTEM_RESERVED = 2_000
DEFAULT_USER_MESSAGE_RESERVED = 4_000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300

# Prompt rendering
MAX_RENDERED_DIAGNOSTICS = 10

# ── Message scoring ──
DEFAULT_SCORE_WEIGHTS: dict[str, int] = {
    "content": 40,
    "role": 15,
    "time": 15,
    "length": 10,
    "tools": 10,
    "user": 10,
}
DEFAULT_SCORE_THRESHOLDS: dict[str, int] = {"high": 70, "medium": 40, "low": 20}

ROLE_SCORES: dict[str, int] = {
    "user": 100,
    "assistant": 80,
    "system": 60,
    "tool": 40,
    "tool_group": 30,
}
UNKNOWN_ROLE_SCORE = 20

# Time decay: (age in hours, score) breakpoints, linear between them
TIME_DECAY_BREAKPOINTS: list[tuple[float, float]] = [
    (1, 100),
    (24, 80),
    (168, 60),
    (720, 40),
    (2160, 20),
]
TIME_DECAY_FLOOR = 20

# Length curve: (chars, score) breakpoints, peaking between 500 and 2000 chars
LENGTH_SHORT_CHARS = 100
LENGTH_MEDIUM_CHARS = 500
LENGTH_IDEAL_CHARS = 2000
LENGTH_DECAY_SPAN = 3000
LENGTH_SHORT_SCORE = 20
LENGTH_MEDIUM_SCORE = 60
LENGTH_IDEAL_SCORE = 100
LENGTH_LONG_FLOOR = 80

# Content dimension bonuses
KEYWORD_TECHNICAL_MIN = 5
KEYWORD_ACTION_MIN = 3
KEYWORD_TECHNICAL_BONUS = 10
KEYWORD_ACTION_BONUS = 5
KEYWORD_QUESTION_BONUS = 5
CODE_BLOCK_BONUS = 15
ERROR_BONUS = 10
FIX_BONUS = 10
FUNCTION_DEFINITION_BONUS = 10
DATA_STRUCTURE_BONUS = 5

# Tool dimension
TOOL_CALL_COUNT_SCORE = 10
TOOL_CALL_COUNT_CAP = 30
TOOL_DIVERSITY_SCORE = 5
TOOL_DIVERSITY_CAP = 20
TOOL_ERROR_BONUS = 10
TOOL_LARGE_OUTPUT_CHARS = 500
TOOL_LARGE_OUTPUT_BONUS = 5
TOOL_MESSAGE_SCORE = 30
TOOL_GROUP_MESSAGE_SCORE = 50

# User interaction dimension
QUESTION_SCORE = 30
COMMAND_SCORE = 20
FEEDBACK_SCORE = 20
CONFIRMATION_SCORE = 10
ANSWER_SCORE = 30
EXPLANATION_SCORE = 20

# Rule engine category weights and per-role multipliers
RULE_CATEGORY_WEIGHTS: dict[str, float] = {
    "technical": 1.0,
    "problem_solving": 1.2,
    "decision_making": 1.3,
    "user_preference": 1.5,
}
RULE_ROLE_MULTIPLIERS: dict[str, float] = {
    "user": 1.2,
    "assistant": 1.0,
    "system": 0.8,
    "tool": 0.5,
    "tool_group": 0.6,
}

# ── Compression ──
DEFAULT_IMPORTANCE_SCORE = 50
PROTECTED_IMPORTANCE_SCORE = 70
SUMMARY_MESSAGE_MAX_CHARS = 1000
TOOL_OUTPUT_MAX_CHARS = 500
CHINESE_LANGUAGE_RATIO = 0.3
FALLBACK_KEY_POINT = "No key points could be extracted"

# ── Long-term memory ──
PROJECT_CONTEXT_CONFIDENCE = 0.9
KEY_DECISION_CONFIDENCE = 0.7
CODE_PATTERN_CONFIDENCE = 0.6
FAQ_CONFIDENCE = 0.8
ENGINE_PREFERENCE_CONFIDENCE = 0.9
TIME_PREFERENCE_CONFIDENCE = 0.7
WORKSPACE_PREFERENCE_CONFIDENCE = 0.8
DEFAULT_MEMORY_CONFIDENCE = 0.5

KNOWLEDGE_KEY_MAX_CHARS = 50
PATTERN_CONTEXT_CHARS = 50

# Relevance ranking
RELEVANCE_KEY_MATCH = 50
RELEVANCE_KEY_WORD_MATCH = 10
RELEVANCE_VALUE_MATCH = 30
RELEVANCE_HIT_WEIGHT = 2
RELEVANCE_HIT_CAP = 20
RELEVANCE_CONFIDENCE_WEIGHT = 10
RELEVANCE_RECENT_DAYS = 7
RELEVANCE_RECENT_BONUS = 10
RELEVANCE_MONTH_DAYS = 30
RELEVANCE_MONTH_BONUS = 5

# Reminders
REMIND_MIN_HITS = 5
REMIND_RECENT_DAYS = 30
REMIND_POPULAR_HITS = 10
REMINDER_PREVIEW_CHARS = 50

DEFAULT_SEARCH_LIMIT = 10
