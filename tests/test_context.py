"""
Tests for configuration, token budgeting and context-entry selection.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from context_memory.config import (
    MODEL_CONTEXT_WINDOWS,
    CompressionConfig,
    ContextConfig,
    MemoryConfig,
    ScorerConfig,
)
from context_memory.context import (
    BuildPromptOptions,
    ContextEntry,
    ContextFilter,
    ContextManager,
    ContextQueryRequest,
    ContextSource,
    ContextType,
    MemoryContextStore,
    PriorityManager,
    PromptFormat,
)
from context_memory.context.formatting import format_markdown
from context_memory.context.models import (
    ChangeType,
    ContextMetadata,
    Diagnostic,
    DiagnosticsContent,
    DiagnosticsSummary,
    FileContent,
    FolderContent,
    ProjectMetaContent,
    SymbolContent,
    UserMessageContent,
)
from context_memory.errors import ValidationError
from context_memory.memory.models import Message, MessageRole, ToolCall
from context_memory.token_budget import (
    DROP_REASON_TOKEN_LIMIT,
    TokenBudgetController,
    estimate_message_tokens,
    estimate_tokens,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def file_entry(
    entry_id,
    priority=None,
    tokens=100,
    path=None,
    source=ContextSource.IDE,
    created_at=T0,
    workspace_id=None,
    **kwargs,
):
    return ContextEntry(
        id=entry_id,
        source=source,
        type=ContextType.FILE,
        content=FileContent(path=path or f"src/{entry_id}.py", content="x = 1", language="python"),
        priority=priority,
        estimated_tokens=tokens,
        created_at=created_at,
        metadata=ContextMetadata(workspace_id=workspace_id),
        **kwargs,
    )


# ── Config Tests ──


class TestConfig:
    def test_default_values(self):
        config = MemoryConfig()
        assert config.database_url == ""
        assert config.context.context_window == 0
        assert config.compression.max_tokens == 10_000
        assert config.compression.max_message_count == 100
        assert config.compression.max_age_hours == 168
        assert config.scorer.thresholds["high"] == 70

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTEXT_WINDOW", "50000")
        monkeypatch.setenv("COMPRESSION_MAX_TOKENS", "2000")
        monkeypatch.setenv("COMPRESSION_IN_BACKGROUND", "false")
        monkeypatch.setenv("ENGINE_MODEL_DEEPSEEK", "deepseek-reasoner")
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/test")
        config = MemoryConfig.from_env(dotenv=False)
        assert config.context.context_window == 50000
        assert config.compression.max_tokens == 2000
        assert config.compression.compress_in_background is False
        assert config.engine_models["deepseek"] == "deepseek-reasoner"
        assert config.database_url == "postgresql://localhost/test"

    def test_get_context_window_explicit(self):
        config = ContextConfig(context_window=50000)
        assert config.get_context_window("any-model") == 50000

    def test_get_context_window_auto_detect(self):
        config = ContextConfig()
        assert config.get_context_window("claude-sonnet-4-5-20250929") == 200_000
        assert config.get_context_window("gpt-4o") == 128_000
        assert config.get_context_window("deepseek-chat") == MODEL_CONTEXT_WINDOWS["deepseek-chat"]

    def test_get_context_window_fallback(self):
        assert ContextConfig().get_context_window("unknown-model") == 128_000
        assert ContextConfig().get_context_window() == 128_000

    def test_invalid_configs_rejected(self):
        with pytest.raises(ValidationError):
            ContextConfig(context_window=-1)
        with pytest.raises(ValidationError):
            CompressionConfig(target_token_ratio=1.5)
        with pytest.raises(ValidationError):
            CompressionConfig(min_summary_length=600, max_summary_length=500)
        with pytest.raises(ValidationError):
            ScorerConfig(weights={"content": 50})
        with pytest.raises(ValidationError):
            ScorerConfig(thresholds={"high": 30, "medium": 40})


# ── Token Budget Tests ──


class TestTokenEstimation:
    def test_empty(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0

    def test_latin_text(self):
        assert estimate_tokens("abcd") == 2
        assert estimate_tokens("abc") == 2

    def test_cjk_text(self):
        assert estimate_tokens("你好") == 3
        assert estimate_tokens("你好ab") == 4

    def test_message_tokens_use_stored_count(self):
        msg = Message(session_id="s", role=MessageRole.USER, content="x" * 1000, tokens=10)
        assert estimate_message_tokens(msg) == 10

    def test_message_tokens_add_tool_calls(self):
        msg = Message(
            session_id="s",
            role=MessageRole.ASSISTANT,
            content="abcd",
            tool_calls=[ToolCall(name="read_file"), ToolCall(name="bash")],
        )
        assert estimate_message_tokens(msg) == 2 + 200


class TestTokenBudgetController:
    def test_available(self):
        config = ContextConfig(context_window=10_000, system_reserved=2_000, user_message_reserved=4_000)
        assert TokenBudgetController(config).available == 4_000

    def test_available_never_negative(self):
        config = ContextConfig(context_window=1_000, system_reserved=2_000, user_message_reserved=4_000)
        assert TokenBudgetController(config).available == 0

    def test_first_rejection_drops_the_rest(self):
        entries = [
            file_entry("a", priority=5, tokens=100),
            file_entry("b", priority=3, tokens=100),
            file_entry("c", priority=3, tokens=50),
        ]
        result = TokenBudgetController().select_within_budget(entries, 150)
        assert [e.id for e in result.selected] == ["a"]
        # "c" would fit, but admission stops at the first rejection
        assert [d.id for d in result.dropped] == ["b", "c"]
        assert all(d.reason == DROP_REASON_TOKEN_LIMIT for d in result.dropped)
        assert result.used_tokens == 100

    def test_recency_breaks_priority_ties(self):
        old = file_entry("old", priority=3, tokens=10, created_at=T0 - timedelta(hours=1))
        new = file_entry("new", priority=3, tokens=10, created_at=T0)
        result = TokenBudgetController().select_within_budget([old, new], 10)
        assert [e.id for e in result.selected] == ["new"]
        assert [d.id for d in result.dropped] == ["old"]

    def test_selection_partitions_input(self):
        entries = [
            file_entry(f"e{i}", priority=i % 6, tokens=37 * (i + 1), created_at=T0 - timedelta(minutes=i))
            for i in range(20)
        ]
        budget = 1_500
        result = TokenBudgetController().select_within_budget(entries, budget)
        selected_ids = [e.id for e in result.selected]
        dropped_ids = [d.id for d in result.dropped]
        assert sorted(selected_ids + dropped_ids) == sorted(e.id for e in entries)
        assert not set(selected_ids) & set(dropped_ids)
        assert sum(e.estimated_tokens for e in result.selected) <= budget

    def test_negative_budget_selects_nothing(self):
        result = TokenBudgetController().select_within_budget([file_entry("a", tokens=1)], -50)
        assert result.selected == []
        assert [d.id for d in result.dropped] == ["a"]


# ── Entry validation ──


class TestContextEntry:
    def test_content_must_match_type(self):
        with pytest.raises(ValidationError):
            ContextEntry(
                id="x",
                source=ContextSource.IDE,
                type=ContextType.SYMBOL,
                content=FileContent(path="a.py"),
            )

    def test_priority_out_of_range(self):
        with pytest.raises(ValidationError):
            file_entry("x", priority=6)

    def test_unknown_source(self):
        with pytest.raises(ValidationError):
            file_entry("x", source="clipboard")

    def test_last_accessed_defaults_to_created(self):
        entry = file_entry("x")
        assert entry.last_accessed_at == entry.created_at


# ── Store Tests ──


class TestMemoryContextStore:
    @pytest.mark.asyncio
    async def test_upsert_emits_add_then_update(self):
        store = MemoryContextStore()
        events = []
        store.on_change(events.append)
        await store.upsert(file_entry("a"))
        await store.upsert(file_entry("a"))
        assert [e.type for e in events] == [ChangeType.ADD, ChangeType.UPDATE]
        assert events[0].entry_id == "a"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        store = MemoryContextStore()
        handler = MagicMock()
        unsubscribe = store.on_change(handler)
        unsubscribe()
        await store.upsert(file_entry("a"))
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_store(self):
        store = MemoryContextStore()
        store.on_change(MagicMock(side_effect=RuntimeError("boom")))
        await store.upsert(file_entry("a"))
        assert await store.get("a") is not None

    @pytest.mark.asyncio
    async def test_get_touches_entry(self):
        store = MemoryContextStore()
        await store.upsert(file_entry("a"))
        entry = await store.get("a")
        assert entry.access_count == 1
        assert entry.last_accessed_at != entry.created_at

    @pytest.mark.asyncio
    async def test_remove_by_filter(self):
        store = MemoryContextStore()
        await store.upsert_many([
            file_entry("a", source=ContextSource.IDE, workspace_id="w1"),
            file_entry("b", source=ContextSource.PROJECT, workspace_id="w1"),
            file_entry("c", source=ContextSource.IDE, workspace_id="w2"),
        ])
        removed = await store.remove_by_filter(
            ContextFilter(source=ContextSource.IDE, workspace_id="w1")
        )
        assert removed == 1
        assert sorted(e.id for e in await store.get_all()) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_empty_filter_removes_nothing(self):
        store = MemoryContextStore()
        await store.upsert(file_entry("a"))
        assert await store.remove_by_filter(ContextFilter()) == 0
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_remove_by_expiry(self):
        store = MemoryContextStore()
        await store.upsert_many([
            file_entry("soon", expires_at=T0 + timedelta(hours=1)),
            file_entry("later", expires_at=T0 + timedelta(days=2)),
            file_entry("never"),
        ])
        removed = await store.remove_by_filter(ContextFilter(expired_before=T0 + timedelta(days=1)))
        assert removed == 1
        assert sorted(e.id for e in await store.get_all()) == ["later", "never"]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        store = MemoryContextStore()
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await store.upsert_many([file_entry("gone", expires_at=past), file_entry("kept")])
        assert await store.cleanup_expired() == 1
        assert [e.id for e in await store.get_all()] == ["kept"]

    @pytest.mark.asyncio
    async def test_clear_emits_once(self):
        store = MemoryContextStore()
        events = []
        await store.upsert_many([file_entry("a"), file_entry("b")])
        store.on_change(events.append)
        await store.clear()
        await store.clear()
        assert [e.type for e in events] == [ChangeType.CLEAR]

    @pytest.mark.asyncio
    async def test_stats(self):
        store = MemoryContextStore()
        await store.upsert_many([
            file_entry("a", priority=5, tokens=10, created_at=T0 - timedelta(hours=2)),
            file_entry("b", priority=2, tokens=30, source=ContextSource.PROJECT, created_at=T0),
        ])
        stats = await store.get_stats()
        assert stats.total_entries == 2
        assert stats.total_tokens == 40
        assert stats.by_source["ide"] == 1
        assert stats.by_source["history"] == 0
        assert stats.by_type["file"] == 2
        assert stats.by_priority[5] == 1
        assert stats.oldest_entry == T0 - timedelta(hours=2)
        assert stats.newest_entry == T0


# ── Priority Tests ──


class TestPriorityManager:
    def test_defaults_cover_every_source(self):
        manager = PriorityManager()
        for source in ContextSource:
            assert 0 <= manager.get_default_priority(source) <= 5
        assert manager.get_default_priority(ContextSource.USER_SELECTION) == 5
        assert manager.get_default_priority(ContextSource.HISTORY) == 1

    def test_current_file_gets_max_priority(self):
        entry = file_entry("a", priority=1, path="src/app.py")
        [adjusted] = PriorityManager().adjust_priorities(
            [entry], ContextQueryRequest(current_file="src/app.py")
        )
        assert adjusted.priority == 5
        assert entry.priority == 1

    def test_mentioned_file_boost_is_capped(self):
        low = file_entry("low", priority=2, path="a.py")
        top = file_entry("top", priority=5, path="b.py")
        adjusted = PriorityManager().adjust_priorities(
            [low, top], ContextQueryRequest(mentioned_files=["a.py", "b.py"])
        )
        assert [e.priority for e in adjusted] == [3, 5]
        assert low.priority == 2


# ── Manager Tests ──


class TestContextManager:
    @pytest.mark.asyncio
    async def test_upsert_fills_defaults(self):
        manager = ContextManager()
        entry = ContextEntry(
            id="a",
            source=ContextSource.IDE,
            type=ContextType.FILE,
            content=FileContent(path="a.py", content="abcd" * 10),
        )
        await manager.upsert(entry)
        stored = await manager.get("a")
        assert stored.priority == 4
        assert stored.estimated_tokens == 20

    @pytest.mark.asyncio
    async def test_folder_gets_flat_estimate(self):
        manager = ContextManager()
        await manager.upsert(
            ContextEntry(
                id="f",
                source=ContextSource.WORKSPACE,
                type=ContextType.FOLDER,
                content=FolderContent(path="src", file_count=3),
            )
        )
        assert (await manager.get("f")).estimated_tokens == 100

    @pytest.mark.asyncio
    async def test_query_respects_budget(self):
        manager = ContextManager()
        await manager.upsert_many([file_entry(f"e{i}", priority=i % 6, tokens=100) for i in range(10)])
        result = await manager.query(ContextQueryRequest(max_tokens=500, reserved_tokens=100))
        assert result.total_tokens <= 400
        assert len(result.entries) == 4
        assert len(result.entries) + len(result.dropped_entries) == 10

    @pytest.mark.asyncio
    async def test_query_filters(self):
        manager = ContextManager()
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await manager.upsert_many([
            file_entry("w1", priority=3, workspace_id="w1"),
            file_entry("w2", priority=3, workspace_id="w2"),
            file_entry("expired", priority=3, workspace_id="w1", expires_at=past),
            file_entry("low", priority=0, workspace_id="w1"),
        ])
        result = await manager.query(ContextQueryRequest(workspace_id="w1", min_priority=1))
        assert [e.id for e in result.entries] == ["w1"]
        assert result.summary.file_count == 1
        assert result.summary.workspace_ids == ["w1"]
        assert result.summary.languages == ["python"]

    @pytest.mark.asyncio
    async def test_query_boosts_current_file(self):
        manager = ContextManager()
        await manager.upsert_many([
            file_entry("a", priority=4, tokens=100, path="a.py"),
            file_entry("b", priority=1, tokens=100, path="b.py"),
        ])
        result = await manager.query(ContextQueryRequest(max_tokens=100, current_file="b.py"))
        assert [e.id for e in result.entries] == ["b"]
        assert result.entries[0].priority == 5
        assert (await manager.get("b")).priority == 1

    @pytest.mark.asyncio
    async def test_query_never_raises(self):
        store = MagicMock()
        store.get_all = AsyncMock(side_effect=RuntimeError("store down"))
        result = await ContextManager(store=store).query()
        assert result.entries == []
        assert result.total_tokens == 0

    @pytest.mark.asyncio
    async def test_query_with_unknown_type_filter_is_empty(self):
        manager = ContextManager()
        await manager.upsert(file_entry("a"))
        result = await manager.query(ContextQueryRequest(types=["bogus"]))
        assert result.entries == []
        assert result.dropped_entries == []

    @pytest.mark.asyncio
    async def test_get_by_type(self):
        manager = ContextManager()
        await manager.upsert_many([
            file_entry("a"),
            ContextEntry(
                id="m",
                source=ContextSource.HISTORY,
                type=ContextType.USER_MESSAGE,
                content=UserMessageContent(content="hi"),
            ),
        ])
        assert [e.id for e in await manager.get_by_type(ContextType.USER_MESSAGE)] == ["m"]

    @pytest.mark.asyncio
    async def test_build_prompt_markdown(self):
        manager = ContextManager()
        await manager.upsert_many([
            ContextEntry(
                id="meta",
                source=ContextSource.PROJECT,
                type=ContextType.PROJECT_META,
                content=ProjectMetaContent(name="demo", project_type="python", languages=["python"]),
            ),
            file_entry("a", path="src/a.py"),
            ContextEntry(
                id="sym",
                source=ContextSource.SEMANTIC_RELATED,
                type=ContextType.SYMBOL,
                content=SymbolContent(name="run", kind="function"),
            ),
            ContextEntry(
                id="diag",
                source=ContextSource.DIAGNOSTICS,
                type=ContextType.DIAGNOSTICS,
                content=DiagnosticsContent(
                    items=[Diagnostic(path="src/a.py", line=3, message="undefined name")],
                    summary=DiagnosticsSummary(errors=1),
                ),
            ),
        ])
        prompt = await manager.build_prompt()
        assert "## Project" in prompt
        assert "### `src/a.py`" in prompt
        assert "## Related Symbols" in prompt
        assert "undefined name" in prompt

        no_diagnostics = await manager.build_prompt(BuildPromptOptions(include_diagnostics=False))
        assert "## Diagnostics" not in no_diagnostics

    @pytest.mark.asyncio
    async def test_build_prompt_is_idempotent(self):
        manager = ContextManager()
        await manager.upsert_many([file_entry(f"e{i}", priority=i % 6) for i in range(5)])
        for fmt in PromptFormat:
            options = BuildPromptOptions(format=fmt, max_tokens=300)
            assert await manager.build_prompt(options) == await manager.build_prompt(options)

    @pytest.mark.asyncio
    async def test_build_prompt_concise(self):
        manager = ContextManager()
        await manager.upsert(file_entry("a", path="a.py", tokens=12))
        prompt = await manager.build_prompt(BuildPromptOptions(format=PromptFormat.CONCISE))
        assert prompt == "File: a.py (12 tokens)"

    def test_markdown_rejects_mismatched_file_content(self):
        entry = file_entry("a")
        entry.content = FolderContent(path="src", file_count=1)
        with pytest.raises(ValidationError):
            format_markdown([entry], BuildPromptOptions())

    @pytest.mark.asyncio
    async def test_start_and_dispose(self):
        manager = ContextManager(ContextConfig(cleanup_interval_seconds=3600))
        manager.start()
        assert manager._cleanup_task is not None
        await manager.dispose()
        assert manager._cleanup_task is None
