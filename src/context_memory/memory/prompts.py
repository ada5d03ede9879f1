"""
Summary prompt templates (Chinese and English).

The prompt is a system instruction followed by a user instruction holding
the formatted transcript and the length / key point constraints.
"""

import json
import re

from ..config import CompressionConfig
from ..constants import (
    CHINESE_LANGUAGE_RATIO,
    CJK_CHAR_PATTERN,
    SUMMARY_MESSAGE_MAX_CHARS,
    TOOL_OUTPUT_MAX_CHARS,
)
from .models import Message, MessageRole

ZH = "zh"
EN = "en"

SYSTEM_PROMPTS = {
    ZH: """你是一个专业的对话摘要专家。你的任务是将一段长对话压缩为精炼的摘要。

# 要求
1. 准确性：必须保留所有关键信息，不能遗漏重要内容
2. 简洁性：用最少的话表达完整的意思
3. 结构化：使用清晰的层次结构（问题 → 解决方案 → 结果）
4. 可读性：使用自然语言，避免不必要的技术术语

# 输出格式
你的输出必须是有效的 JSON：
{
  "summary": "摘要内容（100-300字）",
  "keyPoints": ["关键点1", "关键点2", "关键点3"]
}

# 关键点提取建议
- 用户的问题或需求
- 提供的解决方案或建议
- 重要的决策点
- 生成的代码或配置
- 遇到的错误和解决方法
- 待办事项或下一步计划""",
    EN: """You are a professional conversation summarizer. Your task is to compress a long conversation into a concise summary.

# Requirements
1. Accuracy: preserve all key information without omissions
2. Conciseness: express complete ideas with minimal words
3. Structure: use a clear hierarchy (problem -> solution -> result)
4. Readability: use natural language, avoid jargon unless necessary

# Output Format
Your output must be valid JSON:
{
  "summary": "Summary content (50-150 words)",
  "keyPoints": ["Key point 1", "Key point 2", "Key point 3"]
}

# Key Points Extraction
- User's questions or requirements
- Solutions or suggestions provided
- Important decision points
- Generated code or configuration
- Errors encountered and fixes
- Action items or next steps""",
}

ROLE_LABELS = {
    ZH: {
        MessageRole.USER: "用户",
        MessageRole.ASSISTANT: "助手",
        MessageRole.SYSTEM: "系统",
        MessageRole.TOOL: "工具",
        MessageRole.TOOL_GROUP: "工具组",
    },
    EN: {
        MessageRole.USER: "User",
        MessageRole.ASSISTANT: "Assistant",
        MessageRole.SYSTEM: "System",
        MessageRole.TOOL: "Tool",
        MessageRole.TOOL_GROUP: "Tool group",
    },
}

TRUNCATED_MARKERS = {ZH: "\n...(内容过长，已截断)", EN: "\n...(truncated)"}

_CJK_RE = re.compile(CJK_CHAR_PATTERN)


def message_text(message: Message) -> str:
    """Plain text of a message, tool calls included."""
    parts = [message.content] if message.content else []
    for call in message.tool_calls:
        parts.append(f"[tool: {call.name}] status: {call.status}")
        if call.input:
            parts.append(json.dumps(call.input, ensure_ascii=False))
        if call.output:
            output = call.output
            if len(output) > TOOL_OUTPUT_MAX_CHARS:
                output = output[:TOOL_OUTPUT_MAX_CHARS] + TRUNCATED_MARKERS[EN]
            parts.append(output)
        if call.error:
            parts.append(f"error: {call.error}")
    return "\n".join(parts)


def detect_language(messages: list[Message]) -> str:
    text = " ".join(message_text(m) for m in messages)
    if not text:
        return EN
    ratio = len(_CJK_RE.findall(text)) / len(text)
    return ZH if ratio > CHINESE_LANGUAGE_RATIO else EN


def format_transcript(messages: list[Message], language: str = EN) -> str:
    blocks = []
    for index, message in enumerate(messages, start=1):
        content = message_text(message)
        if len(content) > SUMMARY_MESSAGE_MAX_CHARS:
            content = content[:SUMMARY_MESSAGE_MAX_CHARS] + TRUNCATED_MARKERS[language]
        role = ROLE_LABELS[language][message.role]
        blocks.append(f"[{index}] {message.timestamp:%H:%M} {role}:\n{content}")
    return "\n\n---\n\n".join(blocks)


def _user_prompt(messages: list[Message], config: CompressionConfig, language: str) -> str:
    transcript = format_transcript(messages, language)
    if language == ZH:
        tools = "保留所有工具调用的关键信息" if config.preserve_tools else "可以省略工具调用细节"
        errors = "保留所有错误信息和解决方案" if config.preserve_errors else "可以省略错误信息"
        return f"""请将以下对话压缩为摘要：

# 对话内容
{transcript}

# 限制条件
- 摘要长度：{config.min_summary_length}-{config.max_summary_length} 字
- 关键点数量：最多 {config.max_key_points} 个
- {tools}
- {errors}

请输出 JSON 格式的摘要。"""

    tools = (
        "Preserve key information from all tool calls"
        if config.preserve_tools
        else "Omit tool call details"
    )
    errors = (
        "Preserve all error messages and solutions"
        if config.preserve_errors
        else "Omit error messages"
    )
    return f"""Please summarize the following conversation:

# Conversation Content
{transcript}

# Constraints
- Summary length: {config.min_summary_length // 2}-{config.max_summary_length // 2} words
- Key points: maximum {config.max_key_points} items
- {tools}
- {errors}

Please output the summary in JSON format."""


def build_summary_prompt(
    messages: list[Message], config: CompressionConfig, language: str
) -> str:
    return f"{SYSTEM_PROMPTS[language]}\n\n{_user_prompt(messages, config, language)}"
