"""
Message importance scoring.

Six dimensions, each scored 0-100 and weighted by ``ScorerConfig.weights``
(summing to 100):

- content: rule engine + keyword density + structural markers
- role: fixed ranking user > assistant > system > tool > tool_group
- time: piecewise-linear decay with age
- length: bell curve peaking between 500 and 2000 characters
- tools: number, diversity and failures of the message's tool calls
- user: question / command / feedback heuristics (user turns),
  answer / explanation heuristics (assistant turns)

Scoring is a pure function of the message and ``now``.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..config import ScorerConfig
from ..constants import (
    ANSWER_SCORE,
    CODE_BLOCK_BONUS,
    COMMAND_SCORE,
    CONFIRMATION_SCORE,
    DATA_STRUCTURE_BONUS,
    ERROR_BONUS,
    EXPLANATION_SCORE,
    FEEDBACK_SCORE,
    FIX_BONUS,
    FUNCTION_DEFINITION_BONUS,
    KEYWORD_ACTION_BONUS,
    KEYWORD_ACTION_MIN,
    KEYWORD_QUESTION_BONUS,
    KEYWORD_TECHNICAL_BONUS,
    KEYWORD_TECHNICAL_MIN,
    LENGTH_DECAY_SPAN,
    LENGTH_IDEAL_CHARS,
    LENGTH_IDEAL_SCORE,
    LENGTH_LONG_FLOOR,
    LENGTH_MEDIUM_CHARS,
    LENGTH_MEDIUM_SCORE,
    LENGTH_SHORT_CHARS,
    LENGTH_SHORT_SCORE,
    QUESTION_SCORE,
    ROLE_SCORES,
    TIME_DECAY_BREAKPOINTS,
    TIME_DECAY_FLOOR,
    TOOL_CALL_COUNT_CAP,
    TOOL_CALL_COUNT_SCORE,
    TOOL_DIVERSITY_CAP,
    TOOL_DIVERSITY_SCORE,
    TOOL_ERROR_BONUS,
    TOOL_GROUP_MESSAGE_SCORE,
    TOOL_LARGE_OUTPUT_BONUS,
    TOOL_LARGE_OUTPUT_CHARS,
    TOOL_MESSAGE_SCORE,
    UNKNOWN_ROLE_SCORE,
)
from ..utils import age_hours
from .models import Message, MessageRole
from .scoring_rules import KeywordAnalyzer, ScoreRuleEngine

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_FUNCTION_RE = re.compile(r"function\s+\w+|const\s+\w+\s*=\s*\(|=>\s*{|def\s+\w+\s*\(")
_ERROR_RE = re.compile(r"error|错误|exception|失败|fail", re.I)
_FIX_RE = re.compile(r"修复|fix|solve|解决|patch", re.I)
_DATA_STRUCTURE_RE = re.compile(r"interface|type|class|struct|enum")
_QUESTION_RE = re.compile(r"\?|？|怎么|如何|what|how|why|when|where", re.I)
_COMMAND_RE = re.compile(r"^\s*(请|帮我|can you|could you|please)", re.I)
_FEEDBACK_RE = re.compile(r"不对|是的|正确|对的|wrong|good|bad", re.I)
_CONFIRMATION_RE = re.compile(r"好的|可以|\bok\b|确认|confirm", re.I)
_ANSWER_RE = re.compile(r"答案是|the answer is|you can|you should|here is|here's", re.I)
_EXPLANATION_RE = re.compile(r"因为|原因是|解释|explain|reason|because", re.I)


@dataclass
class ScoreBreakdown:
    content: float
    role: float
    time: float
    length: float
    tools: float
    user: float


@dataclass
class ScoreResult:
    total: int
    breakdown: ScoreBreakdown
    level: str


class MessageScorer:
    """Six-dimension importance scorer; see module docstring."""

    def __init__(self, config: Optional[ScorerConfig] = None):
        self.config = config or ScorerConfig()
        self.rule_engine = ScoreRuleEngine()
        self.keywords = KeywordAnalyzer()

    def score(self, message: Message, now: Optional[datetime] = None) -> ScoreResult:
        breakdown = ScoreBreakdown(
            content=self.score_content(message),
            role=self.score_role(message),
            time=self.score_time(message, now),
            length=self.score_length(message),
            tools=self.score_tools(message),
            user=self.score_user_interaction(message),
        )
        weights = self.config.weights
        weighted = sum(
            getattr(breakdown, name) * weight / 100 for name, weight in weights.items()
        )
        total = max(0, min(100, round(weighted)))
        return ScoreResult(total=total, breakdown=breakdown, level=self.level(total))

    def score_batch(
        self, messages: list[Message], now: Optional[datetime] = None
    ) -> dict[str, ScoreResult]:
        return {m.id: self.score(m, now) for m in messages}

    def level(self, total: int) -> str:
        thresholds = self.config.thresholds
        if total >= thresholds["high"]:
            return HIGH
        if total >= thresholds["medium"]:
            return MEDIUM
        return LOW

    # ── Dimensions ──

    def score_content(self, message: Message) -> float:
        content = message.content
        score = self.rule_engine.score(content, message.role)

        analysis = self.keywords.analyze(content)
        if analysis.technical > KEYWORD_TECHNICAL_MIN:
            score += KEYWORD_TECHNICAL_BONUS
        if analysis.action > KEYWORD_ACTION_MIN:
            score += KEYWORD_ACTION_BONUS
        if analysis.question > 0:
            score += KEYWORD_QUESTION_BONUS

        if _CODE_BLOCK_RE.search(content):
            score += CODE_BLOCK_BONUS
        if _ERROR_RE.search(content):
            score += ERROR_BONUS
        if _FIX_RE.search(content):
            score += FIX_BONUS
        if _FUNCTION_RE.search(content):
            score += FUNCTION_DEFINITION_BONUS
        if _DATA_STRUCTURE_RE.search(content):
            score += DATA_STRUCTURE_BONUS
        return min(100.0, score)

    @staticmethod
    def score_role(message: Message) -> float:
        return ROLE_SCORES.get(MessageRole(message.role).value, UNKNOWN_ROLE_SCORE)

    @staticmethod
    def score_time(message: Message, now: Optional[datetime] = None) -> float:
        age = age_hours(message.timestamp, now)
        first_hours, first_score = TIME_DECAY_BREAKPOINTS[0]
        if age < first_hours:
            return first_score
        for (h0, s0), (h1, s1) in zip(TIME_DECAY_BREAKPOINTS, TIME_DECAY_BREAKPOINTS[1:]):
            if age < h1:
                return s0 + (age - h0) / (h1 - h0) * (s1 - s0)
        return TIME_DECAY_FLOOR

    @staticmethod
    def score_length(message: Message) -> float:
        length = len(message.content)
        if length < LENGTH_SHORT_CHARS:
            return LENGTH_SHORT_SCORE
        if length < LENGTH_MEDIUM_CHARS:
            return LENGTH_SHORT_SCORE + (length - LENGTH_SHORT_CHARS) / (
                LENGTH_MEDIUM_CHARS - LENGTH_SHORT_CHARS
            ) * (LENGTH_MEDIUM_SCORE - LENGTH_SHORT_SCORE)
        if length < LENGTH_IDEAL_CHARS:
            return LENGTH_MEDIUM_SCORE + (length - LENGTH_MEDIUM_CHARS) / (
                LENGTH_IDEAL_CHARS - LENGTH_MEDIUM_CHARS
            ) * (LENGTH_IDEAL_SCORE - LENGTH_MEDIUM_SCORE)
        return max(
            LENGTH_LONG_FLOOR,
            LENGTH_IDEAL_SCORE
            - (length - LENGTH_IDEAL_CHARS) / LENGTH_DECAY_SPAN
            * (LENGTH_IDEAL_SCORE - LENGTH_LONG_FLOOR),
        )

    @staticmethod
    def score_tools(message: Message) -> float:
        score = 0.0
        if message.role == MessageRole.ASSISTANT and message.tool_calls:
            calls = message.tool_calls
            score += min(TOOL_CALL_COUNT_CAP, len(calls) * TOOL_CALL_COUNT_SCORE)
            score += min(TOOL_DIVERSITY_CAP, len({c.name for c in calls}) * TOOL_DIVERSITY_SCORE)
            for call in calls:
                if call.failed:
                    score += TOOL_ERROR_BONUS
                if len(call.output or "") > TOOL_LARGE_OUTPUT_CHARS:
                    score += TOOL_LARGE_OUTPUT_BONUS
        elif message.role == MessageRole.TOOL:
            score += TOOL_MESSAGE_SCORE
        elif message.role == MessageRole.TOOL_GROUP:
            score += TOOL_GROUP_MESSAGE_SCORE
        return min(100.0, score)

    @staticmethod
    def score_user_interaction(message: Message) -> float:
        content = message.content
        score = 0.0
        if message.role == MessageRole.USER:
            if _QUESTION_RE.search(content):
                score += QUESTION_SCORE
            if _COMMAND_RE.search(content):
                score += COMMAND_SCORE
            if _FEEDBACK_RE.search(content):
                score += FEEDBACK_SCORE
            if _CONFIRMATION_RE.search(content):
                score += CONFIRMATION_SCORE
        elif message.role == MessageRole.ASSISTANT:
            if _ANSWER_RE.search(content):
                score += ANSWER_SCORE
            if _EXPLANATION_RE.search(content):
                score += EXPLANATION_SCORE
        return min(100.0, score)
