"""分支管理器

分支是按 branch_tag 分组的派生视图。所有改变活动路径的操作都在
MessageStore.room_transaction(bump_version=True) 中完成：
读取房间消息、内存中计算、整体写回，中途失败整体回滚。
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import InvalidArgument, NotFound
from ..store.message_store import MessageStore
from ..store.models import MAIN_BRANCH, Turn
from ..utils.logger import logger
from . import tree
from .models import Branch, TreeNode


class BranchManager:
    """分支操作：列出、分叉、切换、删除、兄弟消息、消息树"""

    def __init__(self, store: MessageStore):
        self.store = store

    # ---- 内部工具 ----

    @staticmethod
    def _activate_path(session: Session, turns: List[Turn], path_ids: List[int],
                       stamp_tag: Optional[str] = None) -> None:
        """只激活 path_ids，其余未删除消息全部置为非活动

        已删除消息在删除时就已是非活动状态。
        """
        on_path = set(path_ids)
        for turn in turns:
            turn.is_active = turn.id in on_path
            if stamp_tag is not None and turn.id in on_path:
                turn.branch_tag = stamp_tag
        session.flush()

    # ---- 只读 ----

    def active_branch_turns(self, room_id: int) -> List[Turn]:
        """活动路径，根在前"""
        return self.store.active_turns(room_id)

    def active_leaf(self, room_id: int) -> Optional[Turn]:
        return self.store.active_leaf(room_id)

    def list_branches(self, room_id: int) -> List[Branch]:
        return tree.group_branches(self.store.list_turns(room_id))

    def resolve_path_to_root(self, room_id: int, turn_id: int) -> List[int]:
        """从根到 turn_id 的 id 列表"""
        turns = self.store.list_turns(room_id)
        return tree.path_to_root(turn_id, tree.index_turns(turns))

    def siblings(self, room_id: int, turn_id: int) -> List[Turn]:
        """同父消息的所有未删除消息（含自身），按序号升序"""
        turns = self.store.list_turns(room_id)
        by_id = tree.index_turns(turns)
        target = by_id.get(turn_id)
        if target is None:
            raise NotFound(f"turn {turn_id} not found in room {room_id}",
                           {"room_id": room_id, "turn_id": turn_id})
        return tree.children_map(turns).get(target.parent_id, [])

    def build_tree(self, room_id: int) -> List[TreeNode]:
        return tree.build_tree(self.store.list_turns(room_id))

    def verify_active_path(self, room_id: int) -> bool:
        """活动集合是否为一条连续的根到叶子路径"""
        ok = tree.is_contiguous_path(self.store.active_turns(room_id))
        if not ok:
            logger.warning(f"房间 {room_id} 的活动路径不连续")
        return ok

    # ---- 写操作 ----

    def fork(self, room_id: int, parent_turn_id: int, tag: Optional[str] = None) -> str:
        """从 parent_turn_id 分叉出新分支并激活

        根到 parent 的整条路径被激活并改用新标签，下一条消息挂在 parent 之下。
        """
        desired = tree.validate_tag(tag) if tag is not None else None

        with self.store.room_transaction(room_id, bump_version=True) as session:
            turns = self.store.list_turns(room_id, session=session)
            by_id = tree.index_turns(turns)
            if parent_turn_id not in by_id:
                raise NotFound(f"turn {parent_turn_id} not found in room {room_id}",
                               {"room_id": room_id, "turn_id": parent_turn_id})

            existing = {t.tag for t in turns}
            if desired is None:
                desired = tree.next_branch_tag(existing)
            elif desired in existing:
                raise InvalidArgument(f"branch {desired!r} already exists", {"tag": desired})

            path = tree.path_to_root(parent_turn_id, by_id)
            self._activate_path(session, turns, path, stamp_tag=desired)

        logger.info(f"房间 {room_id} 从消息 {parent_turn_id} 分叉出分支 {desired}，路径长度 {len(path)}")
        return desired

    def switch(self, room_id: int, tag: str) -> List[int]:
        """激活 tag 下序号最大的消息所在的根路径，返回激活的 id 列表"""
        tag = tree.validate_tag(tag)
        with self.store.room_transaction(room_id, bump_version=True) as session:
            turns = self.store.list_turns(room_id, session=session)
            leaf = tree.branch_leaf(turns, tag)
            if leaf is None:
                raise NotFound(f"branch {tag!r} not found in room {room_id}",
                               {"room_id": room_id, "tag": tag})
            path = tree.path_to_root(leaf.id, tree.index_turns(turns))
            self._activate_path(session, turns, path)

        logger.info(f"房间 {room_id} 切换到分支 {tag}，叶子消息 {leaf.id}")
        return path

    def delete(self, room_id: int, tag: str) -> int:
        """删除分支，返回墓碑化的消息数

        仍被其他分支使用的祖先消息保留并改标签。
        删除了活动叶子时切回 main；main 不存在则房间进入无活动路径状态。
        """
        tag = tree.validate_tag(tag)
        if tag == MAIN_BRANCH:
            raise InvalidArgument("the main branch cannot be deleted", {"tag": tag})

        with self.store.room_transaction(room_id, bump_version=True) as session:
            turns = self.store.list_turns(room_id, session=session)
            if not any(t.tag == tag for t in turns):
                raise NotFound(f"branch {tag!r} not found in room {room_id}",
                               {"room_id": room_id, "tag": tag})

            plan = tree.plan_branch_delete(turns, tag)
            doomed = set(plan.tombstone_ids)
            lost_active_leaf = False
            for turn in turns:
                if turn.id in doomed:
                    lost_active_leaf = lost_active_leaf or bool(turn.is_active)
                    turn.is_deleted = True
                    turn.is_active = False
                elif turn.id in plan.retag:
                    turn.branch_tag = plan.retag[turn.id]
            session.flush()

            switched = False
            if lost_active_leaf:
                survivors = [t for t in turns if t.id not in doomed]
                main_leaf = tree.branch_leaf(survivors, MAIN_BRANCH)
                if main_leaf is not None:
                    path = tree.path_to_root(main_leaf.id, tree.index_turns(survivors))
                    self._activate_path(session, survivors, path)
                    switched = True
                else:
                    self._activate_path(session, survivors, [])

        logger.info(
            f"房间 {room_id} 删除分支 {tag}: 墓碑 {len(plan.tombstone_ids)} 条，"
            f"保留并改标签 {len(plan.retag)} 条" + ("，已切回 main" if switched else "")
        )
        return len(plan.tombstone_ids)

    def prepare_regeneration(self, room_id: int, reply_id: int) -> Turn:
        """为重新生成准备活动路径，返回被回复的用户消息

        旧回复只置为非活动，仍然保留；新回复写入时再由 append_child(replaces=...) 决定是否删除。
        """
        with self.store.room_transaction(room_id, bump_version=True) as session:
            turns = self.store.list_turns(room_id, session=session)
            by_id = tree.index_turns(turns)
            reply = by_id.get(reply_id)
            if reply is None:
                raise NotFound(f"turn {reply_id} not found in room {room_id}",
                               {"room_id": room_id, "turn_id": reply_id})
            if reply.role != "assistant":
                raise InvalidArgument(f"turn {reply_id} is not an assistant reply", {"turn_id": reply_id})
            if reply.parent_id is None or reply.parent_id not in by_id:
                raise InvalidArgument(f"turn {reply_id} has no user turn to answer", {"turn_id": reply_id})

            prompt = by_id[reply.parent_id]
            path = tree.path_to_root(prompt.id, by_id)
            self._activate_path(session, turns, path)

        logger.info(f"房间 {room_id} 准备重新生成回复 {reply_id}")
        return prompt

    def restore(self, room_id: int, turn_id: int) -> List[int]:
        """重新激活 turn_id 所在的根路径，重新生成失败时回到原来的活动叶子"""
        with self.store.room_transaction(room_id, bump_version=True) as session:
            turns = self.store.list_turns(room_id, session=session)
            path = tree.path_to_root(turn_id, tree.index_turns(turns))
            self._activate_path(session, turns, path)

        logger.info(f"房间 {room_id} 活动路径恢复到消息 {turn_id}")
        return path
