"""消息树纯算法测试"""

import pytest

from chatloom.branching import tree
from chatloom.errors import InvalidArgument, NotFound
from chatloom.store import Turn


def T(id, parent=None, tag="main", seq=None, active=False, role="user"):
    return Turn(id=id, room_id=1, role=role, content=f"t{id}", parent_id=parent,
                branch_tag=tag, sequence_number=seq or id, is_active=active, is_deleted=False)


class TestPaths:

    def test_path_to_root_is_root_first(self):
        turns = [T(1), T(2, 1), T(3, 2)]
        assert tree.path_to_root(3, tree.index_turns(turns)) == [1, 2, 3]

    def test_missing_start(self):
        with pytest.raises(NotFound):
            tree.path_to_root(9, tree.index_turns([T(1)]))

    def test_dangling_parent_truncates(self):
        """测试：祖先已删除时路径从最近的存活祖先开始"""
        turns = [T(2, 1), T(3, 2)]
        assert tree.path_to_root(3, tree.index_turns(turns)) == [2, 3]

    def test_contiguous_path(self):
        assert tree.is_contiguous_path([]) is True
        assert tree.is_contiguous_path([T(1), T(2, 1), T(3, 2)]) is True
        # 缺口
        assert tree.is_contiguous_path([T(1), T(3, 2)]) is False
        # 不从根开始
        assert tree.is_contiguous_path([T(2, 1), T(3, 2)]) is False
        # 同一父消息下两个活动子消息
        assert tree.is_contiguous_path([T(1), T(2, 1), T(3, 1)]) is False


class TestTags:

    def test_validate_tag(self):
        assert tree.validate_tag(" alt ") == "alt"
        assert tree.validate_tag("분기-1") == "분기-1"
        for bad in (None, "", "   ", "a/b", "x" * 51, "-leading"):
            with pytest.raises(InvalidArgument):
                tree.validate_tag(bad)

    def test_next_branch_tag_fills_lowest_gap(self):
        assert tree.next_branch_tag([]) == "branch-1"
        assert tree.next_branch_tag(["main", "branch-1", "branch-3"]) == "branch-2"

    def test_branch_leaf_treats_null_as_main(self):
        turns = [T(1, tag=None), T(2, 1, tag="alt"), T(3, 1, tag=None)]
        assert tree.branch_leaf(turns, "main").id == 3
        assert tree.branch_leaf(turns, "alt").id == 2
        assert tree.branch_leaf(turns, "none") is None

    def test_group_branches(self):
        turns = [T(1, active=True), T(2, 1, tag="alt"), T(3, 2, tag="alt")]
        branches = {b.tag: b for b in tree.group_branches(turns)}

        assert branches["main"].turn_count == 1
        assert branches["main"].is_active is True
        assert branches["alt"].turn_count == 2
        assert branches["alt"].last_turn_id == 3
        assert branches["alt"].is_active is False


class TestBuildTree:

    def test_children_in_sequence_order(self):
        turns = [T(1), T(4, 1, seq=4), T(2, 1, seq=2), T(3, 2, seq=3)]
        roots = tree.build_tree(turns)

        assert len(roots) == 1
        assert [c.turn_id for c in roots[0].children] == [2, 4]
        assert [c.turn_id for c in roots[0].children[0].children] == [3]

    def test_to_dict_nests(self):
        roots = tree.build_tree([T(1), T(2, 1)])
        data = roots[0].to_dict()
        assert data["children"][0]["turn_id"] == 2


class TestDeletePlan:

    def test_leaf_only_branch_is_tombstoned(self):
        turns = [T(1), T(2, 1, tag="alt"), T(3, 2, tag="alt")]
        plan = tree.plan_branch_delete(turns, "alt")

        assert plan.tombstone_ids == [2, 3]
        assert plan.retag == {}

    def test_shared_trunk_is_retagged(self):
        """测试：被其他分支使用的祖先改用最早存活子消息的标签"""
        turns = [T(1, tag="alt"), T(2, 1, tag="alt"), T(3, 2, tag="main"), T(4, 2, tag="alt")]
        plan = tree.plan_branch_delete(turns, "alt")

        assert plan.tombstone_ids == [4]
        assert plan.retag == {1: "main", 2: "main"}

    def test_retag_propagates_through_chain(self):
        turns = [T(1), T(2, 1, tag="alt"), T(3, 2, tag="alt"), T(4, 3, tag="b")]
        plan = tree.plan_branch_delete(turns, "alt")

        assert plan.tombstone_ids == []
        assert plan.retag == {2: "b", 3: "b"}
