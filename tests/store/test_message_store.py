"""MessageStore 单元测试"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from chatloom.errors import Conflict, InvalidArgument, NotFound
from chatloom.store import RoomLocks, RoomState


class TestAppend:
    """消息追加"""

    def test_first_turn_is_main_root(self, store):
        """测试：空房间的第一条消息是 main 上的根"""
        turn = store.append_to_active_path(1, "user", "hello")

        assert turn.parent_id is None
        assert turn.tag == "main"
        assert turn.sequence_number == 1
        assert turn.is_active is True

    def test_append_links_to_active_leaf(self, store, chain):
        """测试：新消息挂在活动叶子下，序号递增"""
        turns = chain(store, 1, 3)

        assert [t.parent_id for t in turns] == [None, turns[0].id, turns[1].id]
        assert [t.sequence_number for t in turns] == [1, 2, 3]

    def test_sequence_is_per_room(self, store, chain):
        """测试：不同房间的序号互不影响"""
        chain(store, 1, 3)
        other = store.append_to_active_path(2, "user", "hi")

        assert other.sequence_number == 1

    def test_unknown_role_rejected(self, store):
        """测试：非法角色"""
        with pytest.raises(InvalidArgument):
            store.append_to_active_path(1, "tool", "x")

    def test_append_child_to_non_leaf_is_inactive(self, store, chain):
        """测试：父消息不是活动叶子时，新子消息不激活"""
        turns = chain(store, 1, 3)

        child = store.append_child(1, turns[0].id, "assistant", "alternative")

        assert child.is_active is False
        assert child.parent_id == turns[0].id
        assert [t.id for t in store.active_turns(1)] == [t.id for t in turns]

    def test_append_child_to_leaf_is_active(self, store, chain):
        """测试：挂在活动叶子下的子消息成为新叶子"""
        turns = chain(store, 1, 1)

        child = store.append_child(1, turns[0].id, "assistant", "reply")

        assert child.is_active is True
        assert store.active_leaf(1).id == child.id

    def test_replaced_turn_with_children_is_kept(self, store, chain):
        r1, r2, r3 = chain(store, 1, 3)

        store.append_child(1, r1.id, "assistant", "alt", replaces=r2.id)

        assert store.get_turn(r2.id).id == r2.id
        assert store.get_turn(r3.id).parent_id == r2.id

    def test_append_child_missing_parent(self, store):
        """测试：父消息不存在"""
        with pytest.raises(NotFound):
            store.append_child(1, 999, "assistant", "x")

    def test_concurrent_appends_get_unique_sequences(self, store):
        """测试：并发追加时序号唯一且活动路径连续"""
        def send(i):
            return store.append_to_active_path(7, "user", f"m{i}")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(send, range(20)))

        seqs = sorted(t.sequence_number for t in results)
        assert seqs == list(range(1, 21))

        active = store.active_turns(7)
        assert len(active) == 20
        assert active[0].parent_id is None
        for prev, cur in zip(active, active[1:]):
            assert cur.parent_id == prev.id


class TestDelete:
    """软删除"""

    def test_soft_delete_leaf(self, store, chain):
        """测试：删除叶子后查询不到，但保留审计记录"""
        turns = chain(store, 1, 2)

        store.soft_delete_turn(1, turns[1].id)

        assert [t.id for t in store.list_turns(1)] == [turns[0].id]
        assert len(store.list_turns(1, include_deleted=True)) == 2
        with pytest.raises(NotFound):
            store.get_turn(turns[1].id)

    def test_cannot_delete_turn_with_children(self, store, chain):
        """测试：有子消息的消息不能单独删除"""
        turns = chain(store, 1, 2)

        with pytest.raises(InvalidArgument):
            store.soft_delete_turn(1, turns[0].id)

    def test_soft_delete_room_keeps_counter(self, store, chain):
        """测试：重置房间后新消息是新的根，序号继续递增"""
        chain(store, 1, 4)

        assert store.soft_delete_room(1) == 4
        assert store.active_turns(1) == []

        turn = store.append_to_active_path(1, "user", "again")
        assert turn.parent_id is None
        assert turn.sequence_number == 5


class TestQueries:
    """读取"""

    def test_count_turns_after_id(self, store, chain):
        turns = chain(store, 1, 5)

        assert store.count_turns(1) == 5
        assert store.count_turns(1, after_id=turns[2].id) == 2

    def test_turns_from(self, store, chain):
        turns = chain(store, 1, 6)

        window = store.turns_from(1, turns[2].id, 2)

        assert [t.id for t in window] == [turns[2].id, turns[3].id]

    def test_get_turn_room_mismatch(self, store, chain):
        turns = chain(store, 1, 1)

        with pytest.raises(NotFound):
            store.get_turn(turns[0].id, room_id=2)


class TestRoomState:
    """房间状态：摘要水位与分支版本号"""

    def test_watermark_only_moves_forward(self, store, chain):
        chain(store, 1, 1)
        store.set_summary_watermark(1, 20)
        store.set_summary_watermark(1, 10)

        assert store.get_room_state(1).summary_watermark == 20

        store.clear_summary_watermark(1)
        assert store.get_room_state(1).summary_watermark is None

    def test_watermark_races_first_append(self, store):
        """测试：新房间首次写水位与首次追加并发时只建一条房间状态"""
        rooms = list(range(100, 110))

        def mark(room):
            store.set_summary_watermark(room, 5)

        def send(room):
            return store.append_to_active_path(room, "user", "first")

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(fn, room) for room in rooms for fn in (mark, send)]
            for future in futures:
                future.result()

        with store.db.session_scope() as session:
            for room in rooms:
                states = session.query(RoomState).filter(RoomState.room_id == room).all()
                assert len(states) == 1
                assert states[0].summary_watermark == 5
                assert states[0].next_sequence == 2

    def test_bump_version(self, store, chain):
        """测试：分支事务提交后版本号加一"""
        chain(store, 1, 1)
        before = store.get_room_state(1).branch_version

        with store.room_transaction(1, bump_version=True):
            pass

        assert store.get_room_state(1).branch_version == before + 1

    def test_version_mismatch_raises_conflict_and_rolls_back(self, store, chain):
        """测试：事务期间版本号被改动时抛出 Conflict 并回滚"""
        turns = chain(store, 1, 2)

        with pytest.raises(Conflict):
            with store.room_transaction(1, bump_version=True) as session:
                leaf = session.get(type(turns[1]), turns[1].id)
                leaf.is_active = False
                (session.query(RoomState)
                 .filter(RoomState.room_id == 1)
                 .update({RoomState.branch_version: RoomState.branch_version + 5},
                         synchronize_session=False))

        assert store.active_leaf(1).id == turns[1].id
        assert store.get_room_state(1).branch_version == 0

    def test_lock_timeout_raises_conflict(self):
        """测试：房间锁被其他线程持有时超时抛出 Conflict"""
        locks = RoomLocks(timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(1):
                acquired.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(2)
            with pytest.raises(Conflict):
                with locks.hold(1):
                    pass
            # 其他房间不受影响
            with locks.hold(2):
                pass
        finally:
            release.set()
            thread.join()
