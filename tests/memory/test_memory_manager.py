"""MemoryManager 测试"""

import asyncio

import pytest

from chatloom.errors import InvalidArgument, NotFound, UpstreamFailure
from chatloom.memory import MemoryManager, SUMMARY_PROMPT, importance_for
from chatloom.model_client import ChatResponse


@pytest.fixture
def manager(store, memory_store, mock_generator, config):
    return MemoryManager(store, memory_store, mock_generator, config)


class TestTrigger:
    """摘要触发条件"""

    def test_below_threshold(self, manager, store, chain):
        chain(store, 1, 19)
        assert manager.needs_summarization(1) is False

    def test_at_threshold(self, manager, store, chain):
        chain(store, 1, 20)
        assert manager.needs_summarization(1) is True

    def test_deleted_turns_not_counted(self, manager, store, chain):
        turns = chain(store, 1, 20)
        store.soft_delete_turn(1, turns[-1].id)
        assert manager.needs_summarization(1) is False


class TestSummarize:
    """摘要生成"""

    @pytest.mark.asyncio
    async def test_sliding_window_scenario(self, manager, store, chain, mock_generator):
        """测试：25 条消息 -> 摘要 1-20 -> 剩 5 条不再触发"""
        turns = chain(store, 1, 25)
        assert manager.needs_summarization(1) is True

        memory = await manager.summarize(1, "Alice")

        assert memory is not None
        assert memory.kind == "summary"
        assert memory.covers_turn_range == (turns[0].id, turns[19].id)
        assert memory.importance == 10
        assert memory.meta["turn_count"] == 20
        assert memory.meta["persona_name"] == "Alice"
        assert memory.created_by == "auto"
        assert manager.needs_summarization(1) is False

    @pytest.mark.asyncio
    async def test_next_run_starts_after_previous_end(self, manager, store, chain):
        turns = chain(store, 1, 45)

        first = await manager.summarize(1, "Alice")
        second = await manager.summarize(1, "Alice")
        third = await manager.summarize(1, "Alice")

        assert first.covers_turn_range == (turns[0].id, turns[19].id)
        assert second.covers_turn_range == (turns[20].id, turns[39].id)
        assert third.covers_turn_range == (turns[40].id, turns[44].id)
        assert third.importance == importance_for(5) == 6

    @pytest.mark.asyncio
    async def test_prompt_and_options(self, manager, store, chain, mock_generator, config):
        chain(store, 1, 2)

        await manager.summarize(1, "Alice")

        system_prompt, messages, options = mock_generator.generate.call_args.args
        assert system_prompt is None
        prompt = messages[0]["content"]
        assert 'named "Alice"' in prompt
        assert "User: message 1" in prompt
        assert "Alice: message 2" in prompt
        assert options.model == config.summary_model
        assert options.temperature == 0.3

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self, manager, mock_generator):
        assert await manager.summarize(1, "Alice") is None
        mock_generator.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_generation_failure_is_swallowed(self, manager, store, memory_store, chain, mock_generator):
        """测试：生成失败不抛出，也不推进水位"""
        chain(store, 1, 20)
        mock_generator.generate.side_effect = UpstreamFailure("model down")

        assert await manager.summarize(1, "Alice") is None
        assert memory_store.list(1) == []
        assert manager.summary_watermark(1) is None
        assert manager.needs_summarization(1) is True

    @pytest.mark.asyncio
    async def test_timeout_is_swallowed(self, manager, store, chain, mock_generator, config):
        chain(store, 1, 20)
        config.summary_timeout = 0.05

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return ChatResponse(content="too late")

        mock_generator.generate.side_effect = slow

        assert await manager.summarize(1, "Alice") is None
        assert mock_generator.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_summary_is_skipped(self, manager, store, chain, mock_generator):
        chain(store, 1, 20)
        mock_generator.generate.return_value = ChatResponse(content="   ")

        assert await manager.summarize(1, "Alice") is None

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_overlap(self, manager, store, chain, mock_generator):
        """测试：同一房间并发摘要时范围互不重叠"""
        turns = chain(store, 1, 25)

        async def slow(*args, **kwargs):
            await asyncio.sleep(0.05)
            return ChatResponse(content="summary")

        mock_generator.generate.side_effect = slow

        first, second = await asyncio.gather(manager.summarize(1, "Alice"), manager.summarize(1, "Alice"))

        assert first.covers_turn_range == (turns[0].id, turns[19].id)
        assert second.covers_turn_range == (turns[20].id, turns[24].id)

    @pytest.mark.asyncio
    async def test_only_if_needed_rechecks_inside_lock(self, manager, store, memory_store, chain, mock_generator):
        chain(store, 1, 25)

        async def slow(*args, **kwargs):
            await asyncio.sleep(0.05)
            return ChatResponse(content="summary")

        mock_generator.generate.side_effect = slow

        results = await asyncio.gather(
            manager.summarize(1, "Alice", only_if_needed=True),
            manager.summarize(1, "Alice", only_if_needed=True),
        )

        assert results[1] is None
        assert len(memory_store.list(1, kind="summary")) == 1
        assert mock_generator.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_watermark_survives_cleanup(self, manager, store, chain):
        """测试：清理掉摘要后不会重复摘要已覆盖的消息"""
        chain(store, 1, 25)
        await manager.summarize(1, "Alice")

        manager.cleanup(1, keep_count=0)

        assert manager.list(1) == []
        assert manager.needs_summarization(1) is False


class TestCleanup:
    """记忆清理"""

    def test_keep_top_ranked(self, manager, memory_store):
        """测试：[9,7,7,3,1] 保留 2 条，同分取较新的"""
        ids = {}
        for label, importance in [("a", 9), ("b", 7), ("c", 7), ("d", 3), ("e", 1)]:
            ids[label] = memory_store.add(1, "summary", label, importance=importance).id

        deleted = manager.cleanup(1, keep_count=2)

        assert deleted == 3
        assert [m.id for m in manager.list(1)] == [ids["a"], ids["c"]]

    def test_user_memories_survive(self, manager, memory_store):
        memory_store.add(1, "summary", "auto", importance=9)
        note = manager.create(1, "remember me", importance=1)

        manager.cleanup(1, keep_count=0)

        assert [m.id for m in manager.list(1)] == [note.id]

    def test_facts_and_notes_survive(self, manager, memory_store):
        """测试：自动抽取的事实排在保留数之外也不删除"""
        top = memory_store.add(1, "summary", "recent", importance=9)
        fact = memory_store.add(1, "fact", "User is a nurse", importance=6, created_by="auto")
        note = memory_store.add(1, "user_note", "auto note", importance=2, created_by="auto")
        memory_store.add(1, "summary", "old", importance=3)

        assert manager.cleanup(1, keep_count=1) == 1

        assert [m.id for m in manager.list(1)] == [top.id, fact.id, note.id]

    def test_default_keep_count(self, manager, memory_store, config):
        for i in range(config.memory_keep_count + 3):
            memory_store.add(1, "summary", f"s{i}")

        assert manager.cleanup(1) == 3

    def test_negative_keep_count(self, manager):
        with pytest.raises(InvalidArgument):
            manager.cleanup(1, keep_count=-1)


class TestManualMemories:
    """手动记忆"""

    def test_create_validates(self, manager):
        with pytest.raises(InvalidArgument):
            manager.create(1, "x", kind="diary")
        with pytest.raises(InvalidArgument):
            manager.create(1, "x", importance=0)
        with pytest.raises(InvalidArgument):
            manager.create(1, "   ")

    def test_create_and_update(self, manager):
        memory = manager.create(1, "likes tea", kind="fact", importance=6)
        assert memory.created_by == "user"

        updated = manager.update(memory.id, room_id=1, content="likes green tea", importance=8)

        assert updated.content == "likes green tea"
        assert updated.importance == 8
        assert updated.kind == "fact"

    def test_room_mismatch(self, manager):
        memory = manager.create(1, "note")

        with pytest.raises(NotFound):
            manager.get(memory.id, room_id=2)
        with pytest.raises(NotFound):
            manager.delete(memory.id, room_id=2)

    def test_list_by_kind(self, manager, memory_store):
        memory_store.add(1, "summary", "s")
        manager.create(1, "n")

        assert [m.kind for m in manager.list(1, kind="summary")] == ["summary"]
        with pytest.raises(InvalidArgument):
            manager.list(1, kind="bogus")

    def test_clear(self, manager, store, memory_store, chain):
        chain(store, 1, 1)
        store.set_summary_watermark(1, 5)
        memory_store.add(1, "summary", "s", range_start=1, range_end=5)

        assert manager.clear(1) == 1
        assert manager.summary_watermark(1) is None


class TestFactExtraction:
    """事实抽取"""

    @pytest.mark.asyncio
    async def test_facts_are_deduplicated(self, manager, mock_generator):
        mock_generator.generate.return_value = ChatResponse(
            content='{"facts": ["User likes cats", "user likes cats.", "User is a nurse"]}'
        )

        first = await manager.extract_facts(1, "I'm a nurse and I love cats", "Nice!")
        second = await manager.extract_facts(1, "I'm a nurse and I love cats", "Nice!")

        assert [m.content for m in first] == ["User likes cats", "User is a nurse"]
        assert all(m.kind == "fact" and m.importance == 6 for m in first)
        assert second == []

    @pytest.mark.asyncio
    async def test_extraction_failure_returns_empty(self, manager, mock_generator):
        mock_generator.generate.side_effect = UpstreamFailure("down")

        assert await manager.extract_facts(1, "hi", "hello") == []

    @pytest.mark.asyncio
    async def test_prompt_mentions_both_sides(self, manager, mock_generator):
        mock_generator.generate.return_value = ChatResponse(content='{"facts": []}')

        await manager.extract_facts(1, "my name is Kim", "Hi Kim")

        system_prompt, messages, options = mock_generator.generate.call_args.args
        assert "User: my name is Kim" in messages[0]["content"]
        assert "AI: Hi Kim" in messages[0]["content"]
        assert options.extra == {"response_format": {"type": "json_object"}}


def test_prompt_template_fields():
    assert "{persona_name}" in SUMMARY_PROMPT
    assert "{conversation}" in SUMMARY_PROMPT
