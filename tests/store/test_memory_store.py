"""MemoryStore 单元测试"""

import pytest

from chatloom.errors import NotFound, StoreFailure


class TestMemoryStore:

    def test_ranked_by_importance_then_recency(self, memory_store):
        """测试：按重要度降序，同重要度新的在前"""
        a = memory_store.add(1, "summary", "old seven", importance=7)
        b = memory_store.add(1, "summary", "nine", importance=9)
        c = memory_store.add(1, "summary", "new seven", importance=7)

        assert [m.id for m in memory_store.list(1)] == [b.id, c.id, a.id]

    def test_filters(self, memory_store):
        memory_store.add(1, "summary", "s", importance=8)
        memory_store.add(1, "fact", "f", importance=3)
        memory_store.add(2, "fact", "other room", importance=9)

        assert [m.content for m in memory_store.list(1, kind="fact")] == ["f"]
        assert [m.content for m in memory_store.list(1, min_importance=5)] == ["s"]
        assert len(memory_store.list(1, limit=1)) == 1

    def test_metadata_round_trip(self, memory_store):
        memory = memory_store.add(1, "summary", "s", range_start=1, range_end=20,
                                  metadata={"turn_count": 20})

        loaded = memory_store.get(memory.id)
        assert loaded.covers_turn_range == (1, 20)
        assert loaded.to_dict()["metadata"] == {"turn_count": 20}

    def test_update_skips_none(self, memory_store):
        memory = memory_store.add(1, "user_note", "note", importance=4)

        updated = memory_store.update(memory.id, content=None, importance=8)

        assert updated.content == "note"
        assert updated.importance == 8

    def test_delete_missing(self, memory_store):
        with pytest.raises(NotFound):
            memory_store.delete(42)

    def test_importance_constraint(self, memory_store):
        """测试：数据库约束拒绝越界重要度"""
        with pytest.raises(StoreFailure):
            memory_store.add(1, "fact", "x", importance=11)

    def test_latest_summary_by_range(self, memory_store):
        memory_store.add(1, "summary", "first", range_start=1, range_end=20)
        memory_store.add(1, "summary", "second", range_start=21, range_end=40)
        memory_store.add(1, "user_note", "note")

        assert memory_store.latest_summary(1).content == "second"
        assert memory_store.latest_summary(2) is None

    def test_delete_many_and_room(self, memory_store):
        ids = [memory_store.add(1, "fact", f"f{i}").id for i in range(3)]
        memory_store.add(2, "fact", "keep")

        assert memory_store.delete_many(ids[:2]) == 2
        assert memory_store.delete_room(1) == 1
        assert len(memory_store.list(2)) == 1
