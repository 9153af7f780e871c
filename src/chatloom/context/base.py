"""上下文组装策略基础接口"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .utils import CharRatioEstimator, TokenEstimator


@dataclass
class TurnSnapshot:
    """活动路径上的一条消息（与数据库会话解耦）"""
    id: int
    role: str
    content: str

    @classmethod
    def from_turn(cls, turn) -> "TurnSnapshot":
        return cls(id=turn.id, role=turn.role, content=turn.content)


@dataclass
class MemorySnapshot:
    """一条记忆，按 (importance desc, created_at desc) 排好序传入"""
    id: int
    kind: str
    content: str
    importance: int

    @classmethod
    def from_memory(cls, memory) -> "MemorySnapshot":
        return cls(id=memory.id, kind=memory.kind, content=memory.content, importance=memory.importance)


@dataclass
class ContextEntry:
    """生成调用的一条输入"""
    role: str
    content: str
    kind: str = "turn"  # memory | turn | new_message
    turn_id: Optional[int] = None

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ContextRequest:
    """组装上下文所需的全部输入

    turns 是活动路径（根在前），memories 已按排名排序。
    """
    turns: List[TurnSnapshot]
    memories: List[MemorySnapshot]
    budget: int
    new_message: str
    max_recent: int = 10
    include_memories: bool = True
    estimator: TokenEstimator = field(default_factory=CharRatioEstimator)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def tokens(self, text: str) -> int:
        return self.estimator.estimate(text)

    @property
    def available(self) -> int:
        """扣除新消息后留给历史和记忆的预算"""
        return max(0, self.budget - self.tokens(self.new_message))

    def new_message_entry(self) -> ContextEntry:
        return ContextEntry(role="user", content=self.new_message, kind="new_message")


@dataclass
class PolicyMetadata:
    """策略元数据"""
    name: str
    version: str
    description: str


class ContextPolicy(ABC):
    """上下文组装策略接口

    build() 必须是纯函数：只读 request，不访问存储，不产生副作用。
    """

    @abstractmethod
    def build(self, request: ContextRequest) -> List[ContextEntry]:
        pass

    @abstractmethod
    def get_metadata(self) -> PolicyMetadata:
        pass
