"""
Rule engine and keyword analyzer feeding the content dimension of the
message scorer.

Rules are grouped in four categories. A category scores the sum of the
weights of its matching rules; the category score is then multiplied by
the category weight and by the role multiplier of the message, and the
sum over categories is capped at 100.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..constants import RULE_CATEGORY_WEIGHTS, RULE_ROLE_MULTIPLIERS
from .models import MessageRole

TECHNICAL = "technical"
PROBLEM_SOLVING = "problem_solving"
DECISION_MAKING = "decision_making"
USER_PREFERENCE = "user_preference"


@dataclass
class ScoringRule:
    name: str
    weight: int
    matcher: Callable[[str], bool]
    description: str = ""


def _pattern(regex: str, flags: int = 0) -> Callable[[str], bool]:
    compiled = re.compile(regex, flags)
    return lambda content: compiled.search(content) is not None


def default_rules() -> dict[str, list[ScoringRule]]:
    return {
        TECHNICAL: [
            ScoringRule("code_block", 30, _pattern(r"```[\s\S]*?```"), "fenced code block"),
            ScoringRule(
                "function_definition",
                20,
                _pattern(r"function\s+\w+|const\s+\w+\s*=\s*\(|export\s+(const|function|class)|def\s+\w+\s*\("),
                "function definition",
            ),
            ScoringRule(
                "type_definition", 15, _pattern(r"interface\s+\w+|type\s+\w+\s*="), "type definition"
            ),
            ScoringRule("api_usage", 15, _pattern(r"fetch\(|axios\.|\.get\(|\.post\("), "API call"),
            ScoringRule(
                "data_structure", 10, _pattern(r"Map\(|Set\(|Array\.|Object\.keys"), "data structure"
            ),
        ],
        PROBLEM_SOLVING: [
            ScoringRule(
                "error_mention", 25, _pattern(r"error|错误|exception|失败|fail|bug", re.I)
            ),
            ScoringRule("fix_action", 25, _pattern(r"修复|fix|solve|解决|patch|debug", re.I)),
            ScoringRule(
                "solution_pattern",
                20,
                _pattern(r"解决方法是|解决方案|the solution|fixed by|can be solved"),
            ),
            ScoringRule(
                "troubleshooting", 15, _pattern(r"排查|诊断|troubleshoot|diagnose|check")
            ),
            ScoringRule(
                "workaround", 15, _pattern(r"变通|workaround|alternative|instead|临时方案")
            ),
        ],
        DECISION_MAKING: [
            ScoringRule(
                "decision_keywords", 30, _pattern(r"决定|选择|采用|decided|chose|adopt|使用", re.I)
            ),
            ScoringRule("comparison", 25, _pattern(r"比较|对比|compare|versus|vs|或者|either")),
            ScoringRule(
                "trade_off", 20, _pattern(r"权衡|取舍|trade.?off|pros and cons|优缺点", re.I)
            ),
            ScoringRule("reasoning", 15, _pattern(r"因为|由于|原因是|because|reason|therefore")),
            ScoringRule(
                "alternative", 10, _pattern(r"替代|或者|也可以|alternative|option|instead")
            ),
        ],
        USER_PREFERENCE: [
            ScoringRule(
                "preference_statement",
                30,
                _pattern(r"我喜欢|我习惯|prefer|like to|usually|always"),
            ),
            ScoringRule(
                "habit_pattern", 20, _pattern(r"一般|通常|习惯|normally|typically|generally")
            ),
            ScoringRule("requirement", 25, _pattern(r"需要|要求|must|should|require|need")),
            ScoringRule("goal_statement", 15, _pattern(r"目标是|想要|goal|want to|aim to|target")),
            ScoringRule("constraint", 10, _pattern(r"限制|约束|不能|constraint|cannot|limit")),
        ],
    }


class ScoreRuleEngine:
    def __init__(self, rules: Optional[dict[str, list[ScoringRule]]] = None):
        self.rules = rules or default_rules()

    def add_rule(self, category: str, rule: ScoringRule):
        self.rules.setdefault(category, []).append(rule)

    def reset_rules(self):
        self.rules = default_rules()

    def score(self, content: str, role: MessageRole) -> float:
        multiplier = RULE_ROLE_MULTIPLIERS.get(MessageRole(role).value, 1.0)
        total = 0.0
        for category, rules in self.rules.items():
            category_score = sum(r.weight for r in rules if r.matcher(content))
            total += category_score * RULE_CATEGORY_WEIGHTS.get(category, 1.0) * multiplier
        return min(100.0, total)


# ── Keyword analysis ──

TECHNICAL_KEYWORDS = frozenset(
    """
    function class interface type async await promise array object string
    number boolean null undefined map set json xml html css javascript
    typescript python react vue angular node express koa nest database sql
    nosql mongodb mysql postgresql redis api rest graphql grpc websocket git
    github gitlab docker kubernetes ci cd test jest mocha cypress selenium
    pytest webpack vite rollup babel ts
    函数 类 接口 类型 异步 数组 对象 数据库 前端 后端 全栈 测试 部署 构建 编译 运行
    """.split()
)

ACTION_KEYWORDS = frozenset(
    """
    create update delete insert select find build compile run execute deploy
    test add remove modify change replace swap send receive fetch post get
    put patch import export require include install uninstall upgrade
    downgrade
    创建 更新 删除 插入 查找 搜索 构建 编译 运行 执行 部署 测试 添加 移除 修改 替换
    交换 发送 接收 获取 请求 导入 导出 安装 卸载 升级
    """.split()
)

QUESTION_KEYWORDS = frozenset(
    """
    what how why when where who which can could would should is are do does
    problem issue error bug fail wrong help support assist guide explain
    什么 怎么 如何 为什么 何时 哪里 谁 能否 可以 应该 是否 问题 错误 失败 帮助 支持
    解释 说明
    """.split()
)

_ENGLISH_WORD_RE = re.compile(r"[a-zA-Z]+")
_CJK_WORD_RE = re.compile(r"[一-龥]{2,}")


@dataclass
class KeywordAnalysis:
    technical: int = 0
    action: int = 0
    question: int = 0
    keywords: list[str] = field(default_factory=list)


def extract_words(content: str) -> list[str]:
    """English words plus runs of two or more CJK characters."""
    return _ENGLISH_WORD_RE.findall(content) + _CJK_WORD_RE.findall(content)


class KeywordAnalyzer:
    def __init__(self):
        self.technical = set(TECHNICAL_KEYWORDS)
        self.action = set(ACTION_KEYWORDS)
        self.question = set(QUESTION_KEYWORDS)

    def add_keywords(self, kind: str, keywords: list[str]):
        target = {"technical": self.technical, "action": self.action, "question": self.question}[kind]
        target.update(k.lower() for k in keywords)

    def analyze(self, content: str) -> KeywordAnalysis:
        result = KeywordAnalysis()
        seen: dict[str, None] = {}
        for word in extract_words(content):
            lower = word.lower()
            hit = False
            if lower in self.technical:
                result.technical += 1
                hit = True
            if lower in self.action:
                result.action += 1
                hit = True
            if lower in self.question:
                result.question += 1
                hit = True
            if hit:
                seen[word] = None
        result.keywords = list(seen)
        return result

    def density(self, content: str) -> float:
        words = extract_words(content)
        if not words:
            return 0.0
        analysis = self.analyze(content)
        return (analysis.technical + analysis.action + analysis.question) / len(words)
