"""
Tests for message importance scoring.
"""

import pytest

from conftest import NOW, hours_ago, make_message
from context_memory.config import ScorerConfig
from context_memory.memory.models import MessageRole, ToolCall
from context_memory.memory.scorer import HIGH, LOW, MEDIUM, MessageScorer
from context_memory.memory.scoring_rules import (
    TECHNICAL,
    KeywordAnalyzer,
    ScoreRuleEngine,
    ScoringRule,
    extract_words,
)


@pytest.fixture
def scorer():
    return MessageScorer()


# ── Totals and levels ──


class TestMessageScorer:
    def test_plain_greeting(self, scorer):
        result = scorer.score(make_message(content="hello", timestamp=NOW), now=NOW)
        # role 100*15% + time 100*15% + length 20*10%
        assert result.total == 32
        assert result.level == LOW
        assert result.breakdown.content == 0
        assert result.breakdown.tools == 0

    def test_total_always_in_range(self, scorer):
        rich = (
            "I decided to fix the error because the solution is to compare options.\n"
            "```python\ndef run(x):\n    return fetch(x)\n```\n"
            "We must always check the constraint. How do we deploy?"
        ) * 5
        messages = [
            make_message(content=rich, timestamp=NOW),
            make_message(role=MessageRole.TOOL, content="", timestamp=hours_ago(10_000)),
            make_message(role=MessageRole.ASSISTANT, content="ok", timestamp=hours_ago(3)),
        ]
        for msg in messages:
            result = scorer.score(msg, now=NOW)
            assert 0 <= result.total <= 100
            assert 0 <= result.breakdown.content <= 100

    def test_level_thresholds(self, scorer):
        assert scorer.level(70) == HIGH
        assert scorer.level(69) == MEDIUM
        assert scorer.level(40) == MEDIUM
        assert scorer.level(39) == LOW

    def test_custom_weights(self):
        scorer = MessageScorer(
            ScorerConfig(weights={"content": 0, "role": 100, "time": 0, "length": 0, "tools": 0, "user": 0})
        )
        msg = make_message(role=MessageRole.SYSTEM, content="boot", timestamp=NOW)
        assert scorer.score(msg, now=NOW).total == 60

    def test_score_batch_keyed_by_id(self, scorer):
        messages = [make_message(content=f"m{i}", timestamp=NOW) for i in range(3)]
        results = scorer.score_batch(messages, now=NOW)
        assert set(results) == {m.id for m in messages}


# ── Dimensions ──


class TestDimensions:
    def test_role_ordering(self, scorer):
        scores = [
            scorer.score_role(make_message(role=role))
            for role in (
                MessageRole.USER,
                MessageRole.ASSISTANT,
                MessageRole.SYSTEM,
                MessageRole.TOOL,
                MessageRole.TOOL_GROUP,
            )
        ]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == 100

    def test_time_decay_breakpoints(self, scorer):
        def at(hours):
            return scorer.score_time(make_message(timestamp=hours_ago(hours)), NOW)

        assert at(0) == 100
        assert at(24) == 80
        assert at(96) == pytest.approx(70)
        assert at(168) == 60
        assert at(10_000) == 20

    def test_time_decay_is_monotonic(self, scorer):
        ages = [0, 0.5, 1, 5, 24, 50, 168, 400, 720, 1500, 2160, 5000]
        scores = [scorer.score_time(make_message(timestamp=hours_ago(h)), NOW) for h in ages]
        assert scores == sorted(scores, reverse=True)

    def test_length_curve(self, scorer):
        def at(length):
            return scorer.score_length(make_message(content="x" * length))

        assert at(50) == 20
        assert at(300) == pytest.approx(40)
        assert at(2000) == 100
        assert at(5000) == 80
        assert at(20_000) == 80

    def test_assistant_tool_calls(self, scorer):
        msg = make_message(
            role=MessageRole.ASSISTANT,
            content="running",
            tool_calls=[
                ToolCall(name="bash", output="ok"),
                ToolCall(name="bash", error="exit 1", status="failed"),
            ],
        )
        # 2 calls, 1 distinct tool, 1 failure
        assert scorer.score_tools(msg) == 20 + 5 + 10

    def test_tool_role_scores(self, scorer):
        assert scorer.score_tools(make_message(role=MessageRole.TOOL)) == 30
        assert scorer.score_tools(make_message(role=MessageRole.TOOL_GROUP)) == 50
        assert scorer.score_tools(make_message(role=MessageRole.USER)) == 0

    def test_user_interaction(self, scorer):
        question = make_message(content="Can you explain why this breaks?")
        assert scorer.score_user_interaction(question) == 30 + 20

        answer = make_message(role=MessageRole.ASSISTANT, content="Here is the patch, because the loop was off")
        assert scorer.score_user_interaction(answer) == 30 + 20

        tool = make_message(role=MessageRole.TOOL, content="why?")
        assert scorer.score_user_interaction(tool) == 0

    def test_technical_content_scores_higher(self, scorer):
        chat = make_message(content="thanks")
        technical = make_message(content="Fix the error:\n```python\ndef load():\n    pass\n```")
        assert scorer.score_content(technical) > scorer.score_content(chat)


# ── Rule engine ──


class TestScoreRuleEngine:
    def test_role_multiplier(self):
        engine = ScoreRuleEngine()
        content = "```py\nx\n```"
        assert engine.score(content, MessageRole.ASSISTANT) == pytest.approx(30)
        assert engine.score(content, MessageRole.USER) == pytest.approx(36)

    def test_no_match(self):
        assert ScoreRuleEngine().score("hello there", MessageRole.USER) == 0

    def test_capped_at_100(self):
        content = (
            "I decided to fix the error because we prefer this; must compare the "
            "trade-off, the solution is a workaround.\n```js\nfunction go() {}\n```"
        )
        assert ScoreRuleEngine().score(content, MessageRole.USER) == 100

    def test_add_and_reset_rules(self):
        engine = ScoreRuleEngine()
        engine.add_rule(TECHNICAL, ScoringRule("magic", 40, lambda c: "magic" in c))
        assert engine.score("magic", MessageRole.ASSISTANT) == pytest.approx(40)
        engine.reset_rules()
        assert engine.score("magic", MessageRole.ASSISTANT) == 0


# ── Keywords ──


class TestKeywordAnalyzer:
    def test_extract_words(self):
        assert extract_words("使用Python构建") == ["Python", "使用", "构建"]
        assert extract_words("a 的 b") == ["a", "b"]

    def test_analyze(self):
        analysis = KeywordAnalyzer().analyze("How to create a python function?")
        assert analysis.technical == 2
        assert analysis.action == 1
        assert analysis.question == 1
        assert analysis.keywords == ["How", "create", "python", "function"]

    def test_density(self):
        analyzer = KeywordAnalyzer()
        assert analyzer.density("") == 0
        assert analyzer.density("How to create a python function?") == pytest.approx(4 / 6)

    def test_add_keywords(self):
        analyzer = KeywordAnalyzer()
        analyzer.add_keywords("technical", ["Langchain"])
        assert analyzer.analyze("langchain rocks").technical == 1
