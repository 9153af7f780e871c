"""存储层数据模型"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, JSON, ForeignKey,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

MAIN_BRANCH = "main"

ROLES = ("user", "assistant")
MEMORY_KINDS = ("summary", "fact", "entity", "event", "user_note")
MEMORY_CREATORS = ("auto", "user")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Turn(Base):
    """房间里的一条消息，通过 parent_id 组成消息树"""

    __tablename__ = "turns"
    __table_args__ = (
        UniqueConstraint("room_id", "sequence_number", name="uq_turns_room_sequence"),
        Index("ix_turns_room_active", "room_id", "is_active"),
        Index("ix_turns_room_tag", "room_id", "branch_tag"),
    )

    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    parent_id = Column(Integer, ForeignKey("turns.id"), nullable=True)
    branch_tag = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    tokens_used = Column(Integer, nullable=False, default=0)
    cost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def tag(self) -> str:
        """branch_tag 为空时视为 main"""
        return self.branch_tag or MAIN_BRANCH

    def to_dict(self):
        return {
            "id": self.id,
            "room_id": self.room_id,
            "role": self.role,
            "content": self.content,
            "sequence_number": self.sequence_number,
            "parent_id": self.parent_id,
            "branch_tag": self.tag,
            "is_active": bool(self.is_active),
            "is_deleted": bool(self.is_deleted),
            "tokens_used": self.tokens_used or 0,
            "cost": self.cost or 0,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (f"<Turn id={self.id} room={self.room_id} seq={self.sequence_number} "
                f"parent={self.parent_id} tag={self.tag} active={self.is_active}>")


class Memory(Base):
    """房间级持久记忆：自动摘要或用户笔记"""

    __tablename__ = "memories"
    __table_args__ = (
        CheckConstraint("importance >= 1 AND importance <= 10", name="ck_memories_importance"),
        Index("ix_memories_room_rank", "room_id", "importance", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    importance = Column(Integer, nullable=False, default=5)
    range_start = Column(Integer, nullable=True)
    range_end = Column(Integer, nullable=True)
    # "metadata" 是声明式基类的保留属性名
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_by = Column(String(16), nullable=False, default="auto")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    @property
    def covers_turn_range(self):
        if self.range_start is None or self.range_end is None:
            return None
        return (self.range_start, self.range_end)

    def to_dict(self):
        return {
            "id": self.id,
            "room_id": self.room_id,
            "kind": self.kind,
            "content": self.content,
            "importance": self.importance,
            "covers_turn_range": list(self.covers_turn_range) if self.covers_turn_range else None,
            "metadata": dict(self.meta or {}),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RoomState(Base):
    """每个房间一行：序号计数器、分支版本号、摘要水位"""

    __tablename__ = "room_states"

    room_id = Column(Integer, primary_key=True, autoincrement=False)
    next_sequence = Column(Integer, nullable=False, default=1)
    branch_version = Column(Integer, nullable=False, default=0)
    summary_watermark = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
