"""消息树算法

全部是纯函数：输入一次性加载的房间消息列表，内部建邻接表，
不做逐级回查数据库。
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from ..errors import InvalidArgument, NotFound
from ..store.models import Turn
from ..utils.logger import logger
from .models import Branch, DeletePlan, TreeNode

TAG_PATTERN = re.compile(r"^[\w][\w .\-]{0,49}$")
AUTO_TAG_PREFIX = "branch-"


def validate_tag(tag: Optional[str]) -> str:
    """校验分支名（1-50 字符，字母数字、空格、点、横线、下划线）"""
    if tag is None:
        raise InvalidArgument("branch tag is required")
    cleaned = tag.strip()
    if not TAG_PATTERN.match(cleaned):
        raise InvalidArgument(f"malformed branch tag: {tag!r}", {"tag": tag})
    return cleaned


def index_turns(turns: Iterable[Turn]) -> Dict[int, Turn]:
    return {t.id: t for t in turns}


def children_map(turns: Iterable[Turn]) -> Dict[Optional[int], List[Turn]]:
    """parent_id -> 子消息列表（按 sequence_number 升序）"""
    children: Dict[Optional[int], List[Turn]] = {}
    for turn in sorted(turns, key=lambda t: t.sequence_number):
        children.setdefault(turn.parent_id, []).append(turn)
    return children


def path_to_root(turn_id: int, by_id: Dict[int, Turn]) -> List[int]:
    """从 turn_id 沿父指针回溯到根，返回根在前的 id 列表（含自身）"""
    if turn_id not in by_id:
        raise NotFound(f"turn {turn_id} not found", {"turn_id": turn_id})

    path: List[int] = []
    seen = set()
    current: Optional[int] = turn_id
    while current is not None:
        if current in seen:
            raise InvalidArgument(f"cycle detected at turn {current}", {"turn_id": current})
        node = by_id.get(current)
        if node is None:
            logger.warning(f"消息 {path[0] if path else turn_id} 的祖先 {current} 不存在或已删除，路径在此截断")
            break
        seen.add(current)
        path.append(current)
        current = node.parent_id
    path.reverse()
    return path


def group_branches(turns: Iterable[Turn]) -> List[Branch]:
    """按标签分组，按最早创建时间升序"""
    groups: Dict[str, List[Turn]] = {}
    for turn in turns:
        groups.setdefault(turn.tag, []).append(turn)

    branches = []
    for tag, members in groups.items():
        members.sort(key=lambda t: t.sequence_number)
        branches.append(Branch(
            tag=tag,
            turn_count=len(members),
            last_turn_id=members[-1].id,
            earliest_created_at=min((m.created_at for m in members if m.created_at), default=None),
            is_active=any(m.is_active for m in members),
        ))
    branches.sort(key=lambda b: (b.earliest_created_at is None, b.earliest_created_at, b.last_turn_id))
    return branches


def next_branch_tag(existing: Iterable[str]) -> str:
    """最小的未占用 branch-N，N 从 1 开始"""
    taken = set(existing)
    counter = 1
    while f"{AUTO_TAG_PREFIX}{counter}" in taken:
        counter += 1
    return f"{AUTO_TAG_PREFIX}{counter}"


def branch_leaf(turns: Iterable[Turn], tag: str) -> Optional[Turn]:
    """标签下序号最大的消息；main 同时匹配空标签"""
    leaf = None
    for turn in turns:
        if turn.tag != tag:
            continue
        if leaf is None or turn.sequence_number > leaf.sequence_number:
            leaf = turn
    return leaf


def is_contiguous_path(active: Sequence[Turn]) -> bool:
    """活动集合是否是一条从根开始、无断点无分叉的链

    空集合视为合法（房间没有活动路径）。
    """
    if not active:
        return True
    ordered = sorted(active, key=lambda t: t.sequence_number)
    if ordered[0].parent_id is not None:
        return False
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.parent_id != prev.id:
            return False
    return True


def build_tree(turns: Sequence[Turn]) -> List[TreeNode]:
    """构建消息森林；父消息不在集合中的节点作为根返回"""
    ordered = sorted(turns, key=lambda t: t.sequence_number)
    nodes: Dict[int, TreeNode] = {}
    for t in ordered:
        nodes[t.id] = TreeNode(
            turn_id=t.id,
            role=t.role,
            content=t.content,
            parent_id=t.parent_id,
            branch_tag=t.tag,
            is_active=bool(t.is_active),
            sequence_number=t.sequence_number,
            created_at=t.created_at,
        )

    roots: List[TreeNode] = []
    for t in ordered:
        node = nodes[t.id]
        parent = nodes.get(t.parent_id) if t.parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def plan_branch_delete(turns: Sequence[Turn], tag: str) -> DeletePlan:
    """计算删除某标签时要墓碑化的消息

    仍是其他分支祖先的消息保留，改用其最早存活子消息的标签。
    子消息序号总是大于父消息，按序号倒序处理即可自底向上。
    """
    tagged = sorted((t for t in turns if t.tag == tag), key=lambda t: t.sequence_number, reverse=True)
    tagged_ids = {t.id for t in tagged}
    children = children_map(turns)

    survivors: Dict[int, str] = {}
    tombstones: List[int] = []
    for turn in tagged:
        alive = [c for c in children.get(turn.id, [])
                 if c.id not in tagged_ids or c.id in survivors]
        if alive:
            first = alive[0]
            survivors[turn.id] = survivors.get(first.id, first.tag)
        else:
            tombstones.append(turn.id)

    return DeletePlan(tombstone_ids=sorted(tombstones), retag=survivors)
