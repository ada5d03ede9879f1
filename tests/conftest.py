"""
Shared fixtures.

The ``src`` directory is put on ``sys.path`` so the tests import
``context_memory`` without an editable install. Time-dependent tests pass
the fixed ``NOW`` instant explicitly.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from context_memory.memory.models import Message, MessageRole, Session  # noqa: E402
from context_memory.memory.repositories import create_in_memory_repositories  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def hours_ago(hours: float) -> datetime:
    return NOW - timedelta(hours=hours)


def make_message(session_id="s1", role=MessageRole.USER, content="hello", **kwargs) -> Message:
    return Message(session_id=session_id, role=role, content=content, **kwargs)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repos():
    return create_in_memory_repositories()


@pytest.fixture
async def session(repos):
    s = Session(id="s1", title="test", workspace_path="/ws", engine_id="claude-code")
    await repos.sessions.create(s)
    return s
