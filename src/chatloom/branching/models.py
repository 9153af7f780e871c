"""分支视图数据模型"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Branch:
    """按 branch_tag 分组得到的派生分支，不单独存储"""
    tag: str
    turn_count: int
    last_turn_id: int
    earliest_created_at: Optional[datetime]
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "turn_count": self.turn_count,
            "last_turn_id": self.last_turn_id,
            "earliest_created_at": self.earliest_created_at.isoformat() if self.earliest_created_at else None,
            "is_active": self.is_active,
        }


@dataclass
class TreeNode:
    """消息树节点，children 按 sequence_number 升序"""
    turn_id: int
    role: str
    content: str
    parent_id: Optional[int]
    branch_tag: str
    is_active: bool
    sequence_number: int
    created_at: Optional[datetime]
    children: List["TreeNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "role": self.role,
            "content": self.content,
            "parent_id": self.parent_id,
            "branch_tag": self.branch_tag,
            "is_active": self.is_active,
            "sequence_number": self.sequence_number,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class DeletePlan:
    """删除分支的执行计划"""
    tombstone_ids: List[int]
    retag: Dict[int, str]
